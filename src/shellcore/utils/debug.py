"""Debug utility for shellcore.

Provides a single debug() function that can be toggled via the
SHELLCORE_DEBUG environment variable. The filesystem and process
primitives use it for low-level tracing; orchestration layers log
through structlog instead.

Usage:
    from shellcore.utils.debug import debug

    debug(f"Copied {src} -> {dst}")

Environment:
    SHELLCORE_DEBUG: Set to '1', 'true', 'yes' (case-insensitive) to enable
                     debug output. Any other value or unset disables it.
"""

import os
import sys
from typing import Any

# Determine if debug mode is enabled at module import time
_DEBUG_ENABLED = os.environ.get("SHELLCORE_DEBUG", "").lower() in (
    "1",
    "true",
    "yes",
)


def is_debug_enabled() -> bool:
    """Return True when SHELLCORE_DEBUG was set at import time."""
    return _DEBUG_ENABLED


def debug(msg: Any) -> None:
    """Print debug message to stderr if SHELLCORE_DEBUG is enabled.

    Args:
        msg: Message to print. Will be converted to string.

    Note:
        The environment variable is read once at module import time.
        Changing it afterwards has no effect unless the module is reloaded.
    """
    if _DEBUG_ENABLED:
        print(f"[DEBUG] {msg}", file=sys.stderr)
