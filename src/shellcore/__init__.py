"""shellcore: transactional filesystem scripting and bounded-concurrency pipelines.

The module-level transaction() and pipeline() helpers run against a
default Shell created on first use from environment configuration.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TypeVar

from shellcore.cache.path_cache import CacheConfig, PathCache
from shellcore.core.config import ShellConfig, load_config
from shellcore.core.errors import (
    ErrorCode,
    OperationCancelledError,
    PluginError,
    RestoreFailure,
    RollbackError,
    ShellCoreError,
    ShellError,
    classify,
)
from shellcore.core.pipeline import FilePipeline, ItemResult, Pipeline, PipelineConfig
from shellcore.core.retry import RetryOptions, with_retry
from shellcore.core.schemas import (
    BackupRecord,
    CommandResult,
    FileInfo,
    OperationKind,
    OperationRecord,
    TransactionState,
    TransactionSummary,
)
from shellcore.core.transaction import (
    Transaction,
    TransactionalShell,
    TransactionManager,
    TransactionOptions,
)
from shellcore.plugins.manager import PluginManager, ShellPlugin
from shellcore.shell import Shell, create_shell

__version__ = "0.1.0"

T = TypeVar("T")

_default_shell: Shell | None = None


def get_default_shell() -> Shell:
    """Return the process-wide default Shell, creating it on first use."""
    global _default_shell
    if _default_shell is None:
        _default_shell = Shell()
    return _default_shell


async def transaction(
    callback: Callable[[TransactionalShell], Awaitable[T] | T],
    options: TransactionOptions | None = None,
) -> T:
    """Run callback as a transaction on the default Shell."""
    return await get_default_shell().transaction(callback, options)


def pipeline(config: PipelineConfig | None = None) -> Pipeline:
    """Start a pipeline bound to the default Shell's plugins."""
    return get_default_shell().pipeline(config)


__all__ = [
    "BackupRecord",
    "CacheConfig",
    "CommandResult",
    "ErrorCode",
    "FileInfo",
    "FilePipeline",
    "ItemResult",
    "OperationCancelledError",
    "OperationKind",
    "OperationRecord",
    "PathCache",
    "Pipeline",
    "PipelineConfig",
    "PluginError",
    "PluginManager",
    "RestoreFailure",
    "RetryOptions",
    "RollbackError",
    "Shell",
    "ShellConfig",
    "ShellCoreError",
    "ShellError",
    "ShellPlugin",
    "Transaction",
    "TransactionManager",
    "TransactionOptions",
    "TransactionState",
    "TransactionSummary",
    "TransactionalShell",
    "classify",
    "create_shell",
    "get_default_shell",
    "load_config",
    "pipeline",
    "transaction",
    "with_retry",
]
