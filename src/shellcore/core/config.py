"""Runtime configuration for shellcore.

ShellConfig is a validated pydantic model. load_config() layers values from
`SHELLCORE_*` environment variables under explicit keyword overrides, so a
deployment can tune defaults without code changes:

    SHELLCORE_RETRIES=2 SHELLCORE_PARALLEL=8 python script.py
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator

from shellcore.core.constants import (
    DEFAULT_CACHE_MAX_SIZE,
    DEFAULT_CACHE_TTL_SECONDS,
    DEFAULT_EXEC_TIMEOUT_MS,
    DEFAULT_PARALLEL,
    DEFAULT_RETRY_DELAY_MS,
    ENV_PREFIX,
    default_backup_root,
)
from shellcore.core.retry import RetryOptions

_TRUTHY = ("1", "true", "yes", "on")


class ShellConfig(BaseModel):
    """Configuration shared by a Shell and everything it constructs.

    Attributes:
        silent: Suppress echoing of command output
        verbose: List steps and undone records in `shellcore apply`
        timeout_ms: Default timeout for process execution
        retries: Extra attempts after a failed primitive (0 disables retry)
        retry_delay_ms: Initial backoff delay for primitive retries
        parallel: Default concurrency for Shell.parallel
        backup_dir: Root directory for transaction backups
        cache_max_size: Maximum number of entries in the path cache
        cache_ttl_seconds: Lifetime of a path cache entry
        cwd: Working directory for process execution (None = inherit)
    """

    silent: bool = True
    verbose: bool = False
    timeout_ms: int = Field(default=DEFAULT_EXEC_TIMEOUT_MS, gt=0)
    retries: int = Field(default=0, ge=0)
    retry_delay_ms: int = Field(default=DEFAULT_RETRY_DELAY_MS, ge=0)
    parallel: int = Field(default=DEFAULT_PARALLEL, ge=1)
    backup_dir: Path = Field(default_factory=default_backup_root)
    cache_max_size: int = Field(default=DEFAULT_CACHE_MAX_SIZE, ge=1)
    cache_ttl_seconds: float = Field(default=DEFAULT_CACHE_TTL_SECONDS, gt=0)
    cwd: Path | None = None

    @field_validator("backup_dir", "cwd", mode="before")
    @classmethod
    def expand_user(cls, value: Any) -> Any:
        if isinstance(value, str | Path):
            return Path(value).expanduser()
        return value

    def retry_options(self) -> RetryOptions | None:
        """Return the retry policy for primitives, or None if disabled."""
        if self.retries <= 0:
            return None
        return RetryOptions(attempts=self.retries + 1, delay_ms=self.retry_delay_ms)


def _env_overrides() -> dict[str, Any]:
    values: dict[str, Any] = {}
    for name, field in ShellConfig.model_fields.items():
        raw = os.getenv(f"{ENV_PREFIX}{name.upper()}")
        if raw is None or raw == "":
            continue
        if field.annotation is bool:
            values[name] = raw.strip().lower() in _TRUTHY
        else:
            values[name] = raw
    return values


def load_config(**overrides: Any) -> ShellConfig:
    """Build a ShellConfig from environment variables plus explicit overrides.

    Args:
        **overrides: Field values that take precedence over the environment

    Returns:
        Validated ShellConfig

    Raises:
        pydantic.ValidationError: If any value is out of range
    """
    values = _env_overrides()
    values.update({k: v for k, v in overrides.items() if v is not None})
    return ShellConfig(**values)
