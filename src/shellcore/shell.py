"""Shell facade tying the primitives, transactions, pipelines and plugins together."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping, Sequence
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

import structlog

from shellcore.cache.path_cache import CacheConfig, PathCache
from shellcore.core.config import ShellConfig, load_config
from shellcore.core.pipeline import FilePipeline, ItemResult, Pipeline, PipelineConfig
from shellcore.core.schemas import CommandResult, FileInfo
from shellcore.core.transaction import (
    TransactionalShell,
    TransactionManager,
    TransactionOptions,
)
from shellcore.fs.fs_ops import FileSystemOperations
from shellcore.plugins.manager import PluginManager, ShellPlugin
from shellcore.process.proc_ops import ProcessOperations

T = TypeVar("T")

ParallelCommand = str | Mapping[str, Any]


class Shell:
    """Entry point for scripting filesystem and process work.

    One Shell owns one PathCache, shared by reference with its filesystem
    primitives, process primitives and file pipelines.

    Args:
        config: Runtime configuration (defaults to load_config())
        logger: Optional structlog logger instance
    """

    def __init__(self, config: ShellConfig | None = None, logger: Any = None) -> None:
        self.config = config or load_config()
        self._logger = logger or structlog.get_logger(__name__)
        self.cache = PathCache(
            CacheConfig(
                max_size=self.config.cache_max_size,
                ttl_seconds=self.config.cache_ttl_seconds,
            )
        )
        self.fs = FileSystemOperations(cache=self.cache, retry=self.config.retry_options())
        self.process = ProcessOperations(
            silent=self.config.silent,
            timeout_ms=self.config.timeout_ms,
            cwd=self.config.cwd,
            cache=self.cache,
        )
        self.plugins = PluginManager(self, logger=self._logger)
        self.transactions = TransactionManager(
            self.fs,
            self.process,
            backup_root=self.config.backup_dir,
            logger=self._logger,
        )

    def __repr__(self) -> str:
        return f"Shell(parallel={self.config.parallel}, silent={self.config.silent})"

    # Filesystem

    async def copy(self, src: str | Path, dst: str | Path, **options: Any) -> None:
        await self.fs.copy(src, dst, **options)

    async def move(self, src: str | Path, dst: str | Path) -> None:
        await self.fs.move(src, dst)

    async def mkdir(self, path: str | Path, **options: Any) -> None:
        await self.fs.mkdir(path, **options)

    async def remove(self, path: str | Path, **options: Any) -> None:
        await self.fs.remove(path, **options)

    async def touch(
        self,
        path: str | Path,
        *,
        atime: datetime | None = None,
        mtime: datetime | None = None,
    ) -> None:
        await self.fs.touch(path, atime=atime, mtime=mtime)

    async def write_file(self, path: str | Path, content: str | bytes, **options: Any) -> None:
        await self.fs.write_file(path, content, **options)

    async def read_file(self, path: str | Path, **options: Any) -> str | bytes:
        return await self.fs.read_file(path, **options)

    async def exists(self, path: str | Path) -> bool:
        return await self.fs.exists(path)

    async def stat(self, path: str | Path, **options: Any) -> FileInfo:
        return await self.fs.stat(path, **options)

    # Processes

    async def exec(self, command: str, **options: Any) -> CommandResult:
        return await self.process.exec(command, **options)

    async def spawn(
        self, command: str, args: Sequence[str] = (), **options: Any
    ) -> CommandResult:
        return await self.process.spawn(command, args, **options)

    async def which(self, command: str) -> str | None:
        return await self.process.which(command)

    async def parallel(
        self,
        commands: Sequence[ParallelCommand],
        *,
        concurrency: int | None = None,
        fail_fast: bool = False,
    ) -> list[CommandResult] | list[ItemResult]:
        """Run several commands with bounded concurrency.

        Args:
            commands: Shell command lines, or mappings with "command" and
                optional "args" (run via spawn) and "options"
            concurrency: Maximum commands in flight (defaults to
                config.parallel)
            fail_fast: Treat a non-zero exit as a failure, stop launching
                and raise it once in-flight commands finish

        Returns:
            CommandResults in input order when fail_fast, otherwise one
            ItemResult per command (value is the CommandResult, error is
            set for commands that could not run)
        """
        limit = concurrency or self.config.parallel

        async def run(cmd: ParallelCommand) -> CommandResult:
            if isinstance(cmd, str):
                return await self.process.exec(cmd, check=fail_fast)
            options = dict(cmd.get("options") or {})
            options.setdefault("check", fail_fast)
            return await self.process.spawn(
                cmd["command"], list(cmd.get("args") or ()), **options
            )

        pipeline = Pipeline(
            PipelineConfig(parallel=limit, continue_on_error=not fail_fast),
            logger=self._logger,
        ).transform(run, name="parallel")
        return await pipeline.execute(list(commands))

    # Composition

    async def transaction(
        self,
        callback: Callable[[TransactionalShell], Awaitable[T] | T],
        options: TransactionOptions | None = None,
    ) -> T:
        return await self.transactions.transaction(callback, options)

    def pipeline(self, config: PipelineConfig | None = None) -> Pipeline:
        return Pipeline(config, plugins=self.plugins, logger=self._logger)

    def file_pipeline(self, config: PipelineConfig | None = None) -> FilePipeline:
        return FilePipeline(self.fs, config, plugins=self.plugins, logger=self._logger)

    def find(self, pattern: str | Sequence[str], *, root: str | Path | None = None) -> FilePipeline:
        return self.file_pipeline().find(pattern, root=root)

    # Plugins

    def use(self, plugin: ShellPlugin) -> Shell:
        self.plugins.use(plugin)
        return self

    def unuse(self, plugin_name: str) -> Shell:
        self.plugins.unuse(plugin_name)
        return self

    async def run_command(self, name: str, *args: Any, **kwargs: Any) -> Any:
        """Run a plugin-registered command."""
        return await self.plugins.execute_command(name, *args, **kwargs)

    # Utilities

    def clear_cache(self) -> None:
        self.cache.clear()
        self._logger.debug("shell.cache_cleared")

    def get_stats(self) -> dict[str, Any]:
        return {
            "cache": self.cache.get_stats(),
            "plugins": [plugin.name for plugin in self.plugins.list_plugins()],
            "active_transactions": len(self.transactions.active_transactions()),
            "config": self.config.model_dump(mode="json"),
        }


def create_shell(config: ShellConfig | None = None, **overrides: Any) -> Shell:
    """Create a Shell from an explicit config or from env + overrides."""
    return Shell(config or load_config(**overrides))
