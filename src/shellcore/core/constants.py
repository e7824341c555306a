"""Shared defaults for shellcore.

Centralizes the numbers that several modules agree on so that the config
layer, the retry wrapper and the transaction manager cannot drift apart.
"""

import tempfile
from pathlib import Path

ENV_PREFIX = "SHELLCORE_"

# Retry defaults
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_DELAY_MS = 1000
DEFAULT_BACKOFF_FACTOR = 2.0

# Process execution
DEFAULT_EXEC_TIMEOUT_MS = 30_000
DRY_RUN_STDOUT = "[DRY RUN]"

# Pipeline
DEFAULT_PARALLEL = 4
DEFAULT_PIPELINE_PARALLEL = 1

# Path cache
DEFAULT_CACHE_MAX_SIZE = 1000
DEFAULT_CACHE_TTL_SECONDS = 60.0

# Path validation
MAX_PATH_LENGTH = 4096

# Transaction backups
BACKUP_DIR_NAME = "shellcore-backups"


def default_backup_root() -> Path:
    """Return the default root directory for transaction backups."""
    return Path(tempfile.gettempdir()) / BACKUP_DIR_NAME
