"""Bounded-concurrency pipeline executor.

A Pipeline is an ordered chain of stages applied to every input item:
filters drop items, transforms replace them. Items run through the chain
independently on a sliding window of at most `parallel` in-flight items,
and results come back in input order whatever the completion order was.

    results = await (
        Pipeline(PipelineConfig(parallel=3))
        .filter(lambda x: x % 2 == 0)
        .transform(fetch, retry=RetryOptions(attempts=3))
        .execute(range(10))
    )
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import AsyncIterable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

import structlog

from shellcore.core.constants import DEFAULT_PIPELINE_PARALLEL
from shellcore.core.errors import PluginError, ShellError
from shellcore.core.progress import ProgressReporter
from shellcore.core.retry import RetryOptions, with_retry
from shellcore.core.schemas import FileInfo
from shellcore.fs.paths import create_path_matcher

if TYPE_CHECKING:  # pragma: no cover - typing only
    from shellcore.fs.fs_ops import FileSystemOperations
    from shellcore.plugins.manager import PluginManager

StageKind = Literal["source", "filter", "transform", "limit"]
PipelineProgress = Callable[[int, int], Any]

_DROPPED = object()


@dataclass
class Stage:
    """One step of a pipeline."""

    kind: StageKind
    name: str
    fn: Callable[..., Any] | None = None
    retry: RetryOptions | None = None
    count: int | None = None


@dataclass
class PipelineConfig:
    """Execution settings.

    Attributes:
        parallel: Maximum number of items in flight at once
        continue_on_error: Return per-item ItemResults instead of raising
            the first failure
        on_progress: Called as (completed, total) after each item settles
    """

    parallel: int = DEFAULT_PIPELINE_PARALLEL
    continue_on_error: bool = False
    on_progress: PipelineProgress | None = None

    def __post_init__(self) -> None:
        if self.parallel < 1:
            raise ShellError.invalid_operation(
                f"Invalid parallelism: {self.parallel}. Must be at least 1.",
                "pipeline",
                parallel=self.parallel,
            )


@dataclass(frozen=True)
class ItemResult:
    """Outcome for one input item under continue_on_error."""

    index: int
    value: Any = None
    error: BaseException | None = field(default=None)

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class _Survivor:
    index: int
    value: Any = None
    error: BaseException | None = None


async def _call(fn: Callable[..., Any], *args: Any) -> Any:
    result = fn(*args)
    if inspect.isawaitable(result):
        return await result
    return result


class Pipeline:
    """Chainable builder and executor for filter/transform stages.

    Args:
        config: Execution settings (defaults to sequential, fail-fast)
        plugins: PluginManager used to resolve filters and transforms
            referenced by name
        logger: Optional structlog logger instance
    """

    def __init__(
        self,
        config: PipelineConfig | None = None,
        *,
        plugins: PluginManager | None = None,
        logger: Any = None,
    ) -> None:
        self.config = config or PipelineConfig()
        self._plugins = plugins
        self._logger = logger or structlog.get_logger(__name__)
        self._stages: list[Stage] = []

    @property
    def stages(self) -> list[Stage]:
        return list(self._stages)

    def _add(self, stage: Stage) -> Pipeline:
        self._stages.append(stage)
        return self

    def _require_plugins(self, kind: str, name: str) -> PluginManager:
        if self._plugins is None:
            raise PluginError(
                f"Cannot resolve {kind} '{name}': no plugin manager attached",
                f"pipeline.{kind}",
                details={"name": name},
            )
        return self._plugins

    def source(self, fn: Callable[[], Any], *, name: str = "source") -> Pipeline:
        """Supply input when execute() is called without one."""
        self._stages = [s for s in self._stages if s.kind != "source"]
        return self._add(Stage(kind="source", name=name, fn=fn))

    def filter(
        self,
        predicate: Callable[[Any], Any] | str,
        *args: Any,
        name: str | None = None,
    ) -> Pipeline:
        if isinstance(predicate, str):
            filter_name = predicate
            plugins = self._require_plugins("filter", filter_name)
            # Unknown names fail here rather than on the first item
            plugins.get_filter(filter_name)
            predicate = partial(_plugin_filter, plugins, filter_name, args)
            name = name or filter_name
        return self._add(
            Stage(kind="filter", name=name or f"filter-{len(self._stages)}", fn=predicate)
        )

    def transform(
        self,
        fn: Callable[[Any], Any] | str,
        *args: Any,
        retry: RetryOptions | None = None,
        name: str | None = None,
    ) -> Pipeline:
        """Add a transform; `retry` wraps each item's call in with_retry."""
        if isinstance(fn, str):
            plugin_name = fn
            fn = self._require_plugins("transform", plugin_name).get_transformer(
                plugin_name, *args
            )
            name = name or plugin_name
        return self._add(
            Stage(
                kind="transform",
                name=name or f"transform-{len(self._stages)}",
                fn=fn,
                retry=retry,
            )
        )

    def limit(self, count: int) -> Pipeline:
        """Pass on only the first `count` items that reach this stage, in input order."""
        if count < 0:
            raise ShellError.invalid_operation(
                f"Invalid limit: {count}", "pipeline.limit", count=count
            )
        return self._add(Stage(kind="limit", name=f"limit-{count}", count=count))

    def parallel(self, concurrency: int) -> Pipeline:
        self.config = PipelineConfig(
            parallel=concurrency,
            continue_on_error=self.config.continue_on_error,
            on_progress=self.config.on_progress,
        )
        return self

    def progress(self, callback: PipelineProgress) -> Pipeline:
        self.config.on_progress = callback
        return self

    async def _resolve_input(self, input: Any) -> list[Any]:
        if input is None:
            source = next((s for s in self._stages if s.kind == "source"), None)
            if source is None or source.fn is None:
                return []
            input = await _call(source.fn)

        if isinstance(input, str | bytes | Path):
            return [input]
        if isinstance(input, AsyncIterable):
            return [item async for item in input]
        if isinstance(input, Iterable):
            return list(input)
        return [input]

    async def _run_item(self, value: Any, stages: Sequence[Stage]) -> Any:
        for stage in stages:
            if stage.fn is None:
                continue
            if stage.kind == "filter":
                if not await _call(stage.fn, value):
                    return _DROPPED
            elif stage.kind == "transform":
                if stage.retry is not None:
                    value = await with_retry(
                        partial(_call, stage.fn, value),
                        stage.retry,
                        operation_name=stage.name,
                    )
                else:
                    value = await _call(stage.fn, value)
        return value

    def _segments(self) -> list[tuple[list[Stage], int | None]]:
        """Split the chain at each limit stage into (stages, cap) runs."""
        segments: list[tuple[list[Stage], int | None]] = []
        current: list[Stage] = []
        for stage in self._stages:
            if stage.kind == "limit":
                segments.append((current, stage.count))
                current = []
            elif stage.kind != "source":
                current.append(stage)
        segments.append((current, None))
        return segments

    async def _run_segment(
        self,
        batch: list[tuple[int, Any]],
        stages: list[Stage],
        cap: int | None,
        settle: Callable[[int], None],
        log: Any,
        *,
        final: bool,
    ) -> list[_Survivor]:
        """Run (index, value) pairs through stages on the sliding window.

        Returns the survivors in input order, cut to cap. Once the first
        `cap` survivors are known no further items are launched, so stages
        after a limit never see the items it cuts.
        """
        parallel = self.config.parallel
        continue_on_error = self.config.continue_on_error
        outcomes: list[_Survivor | None] = [None] * len(batch)
        pending = iter(enumerate(batch))
        in_flight: dict[asyncio.Task[Any], int] = {}
        failure: BaseException | None = None
        prefix = 0
        prefix_survivors = 0

        def launch() -> None:
            while failure is None and len(in_flight) < parallel:
                if cap is not None and prefix_survivors >= cap:
                    return
                try:
                    position, (_, value) = next(pending)
                except StopIteration:
                    return
                in_flight[asyncio.ensure_future(self._run_item(value, stages))] = position

        launch()
        try:
            while in_flight:
                done, _ = await asyncio.wait(
                    in_flight, return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    position = in_flight.pop(task)
                    index = batch[position][0]
                    error = task.exception()
                    if error is None:
                        value = task.result()
                        outcomes[position] = _Survivor(index, value)
                        if final or value is _DROPPED:
                            settle(1)
                    elif continue_on_error:
                        outcomes[position] = _Survivor(index, error=error)
                        settle(1)
                        log.warning("pipeline.item_failed", index=index, error=str(error))
                    elif failure is None:
                        failure = error
                        log.warning(
                            "pipeline.item_failed",
                            index=index,
                            error=str(error),
                            in_flight=len(in_flight),
                        )
                while prefix < len(outcomes):
                    settled = outcomes[prefix]
                    if settled is None:
                        break
                    if settled.value is not _DROPPED:
                        prefix_survivors += 1
                    prefix += 1
                launch()
        except asyncio.CancelledError:
            for task in in_flight:
                task.cancel()
            raise

        if failure is not None:
            raise failure

        survivors = [o for o in outcomes if o is not None and o.value is not _DROPPED]
        if cap is not None:
            cut = survivors[cap:]
            unsettled = sum(o is None for o in outcomes) + sum(s.error is None for s in cut)
            if unsettled:
                log.debug("pipeline.limit", cap=cap, skipped=unsettled)
                settle(unsettled)
            survivors = survivors[:cap]
        return survivors

    async def execute(self, input: Any = None) -> list[Any]:
        """Run every item through the stage chain.

        Stages run in declared order; a limit keeps the first `count` items
        that reach it (in input order) and the stages after it only see
        those.

        Args:
            input: Iterable, async iterable or single item; when None the
                source stage supplies the input. str, bytes and Path count
                as single items.

        Returns:
            Surviving values in input order, or an ItemResult per
            surviving item when continue_on_error is set

        Raises:
            Exception: The first item failure, unchanged, in fail-fast mode.
                Items already in flight finish before it is raised.
        """
        items = await self._resolve_input(input)
        total = len(items)
        reporter = ProgressReporter(self.config.on_progress, self._logger)
        log = self._logger.bind(items=total, parallel=self.config.parallel)
        log.debug("pipeline.execute", stages=[s.name for s in self._stages])

        completed = 0

        def settle(count: int) -> None:
            nonlocal completed
            for _ in range(count):
                completed += 1
                reporter.emit(completed, total)

        segments = self._segments()
        batch = list(enumerate(items))
        failed: list[_Survivor] = []
        survivors: list[_Survivor] = []
        for position, (stages, cap) in enumerate(segments):
            survivors = await self._run_segment(
                batch, stages, cap, settle, log, final=position == len(segments) - 1
            )
            failed.extend(s for s in survivors if s.error is not None)
            batch = [(s.index, s.value) for s in survivors if s.error is None]

        if not self.config.continue_on_error:
            return [s.value for s in survivors]

        finished = sorted(
            [*failed, *(s for s in survivors if s.error is None)], key=lambda s: s.index
        )
        return [ItemResult(index=s.index, value=s.value, error=s.error) for s in finished]


async def _plugin_filter(
    plugins: PluginManager, name: str, args: tuple[Any, ...], item: Any
) -> bool:
    return bool(await _call(plugins.apply_filter, name, item, *args))


class FilePipeline(Pipeline):
    """Pipeline over filesystem paths.

    stat() calls go through the FileSystemOperations' shared path cache,
    so chaining several filters costs one stat per path.
    """

    def __init__(
        self,
        fs: FileSystemOperations,
        config: PipelineConfig | None = None,
        *,
        plugins: PluginManager | None = None,
        logger: Any = None,
    ) -> None:
        super().__init__(config, plugins=plugins, logger=logger)
        self._fs = fs

    async def _stat(self, path: Any, follow_symlinks: bool = True) -> FileInfo | None:
        try:
            return await self._fs.stat(path, follow_symlinks=follow_symlinks)
        except ShellError:
            return None

    def find(self, pattern: str | Sequence[str], *, root: str | Path | None = None) -> FilePipeline:
        """Select paths matching glob pattern(s).

        With `root`, the tree under root becomes the pipeline's source and
        patterns match paths relative to it. Without it, this filters the
        input by file name.
        """
        if root is not None:
            self.source(partial(self._fs.find, root, pattern), name=f"find-{pattern}")
            return self

        matches = create_path_matcher(pattern)
        self.filter(lambda path: matches(Path(path).name), name=f"find-{pattern}")
        return self

    def filter_by_size(
        self, min_size: int | None = None, max_size: int | None = None
    ) -> FilePipeline:
        async def check(path: Any) -> bool:
            info = await self._stat(path)
            if info is None:
                return False
            if min_size is not None and info.size < min_size:
                return False
            if max_size is not None and info.size > max_size:
                return False
            return True

        self.filter(check, name="filter_by_size")
        return self

    def filter_by_type(self, kind: str | Sequence[str]) -> FilePipeline:
        """Keep files, directories, symlinks, or files with given extensions.

        Args:
            kind: 'file', 'directory' or 'symlink', or one extension
                ('txt' / '.txt'), or a list of extensions
        """
        if isinstance(kind, str) and kind in ("file", "directory", "symlink"):

            async def check(path: Any) -> bool:
                info = await self._stat(path, follow_symlinks=kind != "symlink")
                if info is None:
                    return False
                if kind == "file":
                    return info.is_file
                if kind == "directory":
                    return info.is_dir
                return info.is_symlink

            self.filter(check, name=f"filter_by_type-{kind}")
            return self

        wanted = {kind} if isinstance(kind, str) else set(kind)
        extensions = {ext.lower().lstrip(".") for ext in wanted}

        async def check_ext(path: Any) -> bool:
            info = await self._stat(path)
            if info is None or not info.is_file:
                return False
            return Path(path).suffix.lower().lstrip(".") in extensions

        self.filter(check_ext, name=f"filter_by_type-{','.join(sorted(extensions))}")
        return self

    def filter_by_age(
        self,
        older_than: datetime | None = None,
        newer_than: datetime | None = None,
    ) -> FilePipeline:
        """Keep paths whose mtime is before older_than and after newer_than."""
        older = older_than.astimezone() if older_than is not None else None
        newer = newer_than.astimezone() if newer_than is not None else None

        async def check(path: Any) -> bool:
            info = await self._stat(path)
            if info is None:
                return False
            if older is not None and info.mtime > older:
                return False
            if newer is not None and info.mtime < newer:
                return False
            return True

        self.filter(check, name="filter_by_age")
        return self

    def copy_to(self, destination: str | Path, **options: Any) -> FilePipeline:
        """Copy each path into destination, yielding the new path."""
        dest_dir = Path(destination)

        async def copy(path: Any) -> Path:
            target = dest_dir / Path(path).name
            await self._fs.copy(path, target, **options)
            return target

        self.transform(copy, name=f"copy_to-{destination}")
        return self

    def move_to(self, destination: str | Path) -> FilePipeline:
        dest_dir = Path(destination)

        async def move(path: Any) -> Path:
            target = dest_dir / Path(path).name
            await self._fs.move(path, target)
            return target

        self.transform(move, name=f"move_to-{destination}")
        return self

    def get_info(self) -> FilePipeline:
        self.transform(lambda path: self._fs.stat(path), name="get_info")
        return self
