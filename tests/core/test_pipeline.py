"""Tests for the bounded-concurrency pipeline executor."""

import asyncio
import os
import time
from collections.abc import AsyncIterator, Mapping
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, Mock, patch

import pytest

from shellcore.core.errors import ErrorCode, PluginError, ShellError
from shellcore.core.pipeline import FilePipeline, ItemResult, Pipeline, PipelineConfig
from shellcore.core.retry import RetryOptions
from shellcore.fs.fs_ops import FileSystemOperations
from shellcore.plugins.manager import PluginManager, ShellPlugin


class ConcurrencyTracker:
    """Async transform that records how many calls overlap."""

    def __init__(self) -> None:
        self.current = 0
        self.peak = 0
        self.started: list[int] = []

    async def __call__(self, x: int) -> int:
        self.started.append(x)
        self.current += 1
        self.peak = max(self.peak, self.current)
        try:
            await asyncio.sleep((10 - x) * 0.01)
            return x * 2
        finally:
            self.current -= 1


class TestExecution:
    """Test ordering, concurrency and input handling."""

    @pytest.mark.asyncio
    async def test_bounded_concurrency_preserves_order(self) -> None:
        """Test parallel=3 over 1..10 with later items finishing first."""
        tracker = ConcurrencyTracker()

        results = await Pipeline(PipelineConfig(parallel=3)).transform(tracker).execute(
            range(1, 11)
        )

        assert results == [2, 4, 6, 8, 10, 12, 14, 16, 18, 20]
        assert tracker.peak <= 3
        assert tracker.peak == 3

    @pytest.mark.asyncio
    async def test_default_is_sequential(self) -> None:
        tracker = ConcurrencyTracker()

        await Pipeline().transform(tracker).execute([7, 8, 9])

        assert tracker.peak == 1

    @pytest.mark.asyncio
    async def test_parallel_builder(self) -> None:
        tracker = ConcurrencyTracker()

        await Pipeline().parallel(2).transform(tracker).execute([5, 6, 7, 8])

        assert tracker.peak == 2

    def test_invalid_parallel(self) -> None:
        with pytest.raises(ShellError) as exc_info:
            PipelineConfig(parallel=0)

        assert exc_info.value.code is ErrorCode.INVALID_OPERATION

    @pytest.mark.asyncio
    async def test_filters_and_transforms_run_in_order(self) -> None:
        results = await (
            Pipeline(PipelineConfig(parallel=4))
            .filter(lambda x: x % 2 == 0)
            .transform(lambda x: x * 10)
            .filter(lambda x: x > 20)
            .execute(range(8))
        )

        assert results == [40, 60]

    @pytest.mark.asyncio
    async def test_async_filter(self) -> None:
        async def keep(x: str) -> bool:
            await asyncio.sleep(0)
            return x.startswith("a")

        results = await Pipeline().filter(keep).execute(["apple", "berry", "avocado"])

        assert results == ["apple", "avocado"]

    @pytest.mark.asyncio
    async def test_limit(self) -> None:
        results = await Pipeline().filter(lambda x: x > 2).limit(3).execute(range(10))

        assert results == [3, 4, 5]

    @pytest.mark.asyncio
    async def test_limit_cuts_before_later_stages(self) -> None:
        """Test that stages after a limit only see the items it keeps."""
        seen: list[int] = []

        def record(n: int) -> int:
            seen.append(n)
            return n * 10

        results = await Pipeline().limit(2).transform(record).execute(range(10))

        assert results == [0, 10]
        assert seen == [0, 1]

    @pytest.mark.asyncio
    async def test_limit_stops_launching_under_parallelism(self) -> None:
        started: list[int] = []

        async def keep_odd(n: int) -> bool:
            started.append(n)
            await asyncio.sleep(0.01)
            return n % 2 == 1

        results = await (
            Pipeline(PipelineConfig(parallel=2))
            .filter(keep_odd)
            .limit(2)
            .transform(lambda n: -n)
            .execute(range(20))
        )

        assert results == [-1, -3]
        assert len(started) < 20

    @pytest.mark.asyncio
    async def test_limit_zero(self) -> None:
        on_progress = Mock()

        results = await Pipeline().progress(on_progress).limit(0).execute([1, 2, 3])

        assert results == []
        assert on_progress.call_args_list[-1].args == (3, 3)

    @pytest.mark.asyncio
    async def test_limit_with_continue_on_error(self) -> None:
        def explode_on_one(n: int) -> int:
            if n == 1:
                raise ValueError("one")
            return n

        results = await (
            Pipeline(PipelineConfig(continue_on_error=True))
            .transform(explode_on_one)
            .limit(2)
            .transform(lambda n: n + 100)
            .execute([0, 1, 2, 3])
        )

        assert [r.index for r in results] == [0, 1]
        assert results[0].value == 100
        assert isinstance(results[1].error, ValueError)

    def test_negative_limit(self) -> None:
        with pytest.raises(ShellError):
            Pipeline().limit(-1)

    @pytest.mark.asyncio
    async def test_empty_input(self) -> None:
        on_progress = Mock()

        results = await Pipeline(PipelineConfig(on_progress=on_progress)).execute([])

        assert results == []
        on_progress.assert_not_called()

    @pytest.mark.asyncio
    async def test_scalar_input(self) -> None:
        results = await Pipeline().transform(str.upper).execute("hello")

        assert results == ["HELLO"]

    @pytest.mark.asyncio
    async def test_async_iterable_input(self) -> None:
        async def numbers() -> AsyncIterator[int]:
            for n in range(3):
                yield n

        results = await Pipeline().transform(lambda n: n + 1).execute(numbers())

        assert results == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_source_stage(self) -> None:
        results = await Pipeline().source(lambda: [3, 1, 2]).transform(lambda n: -n).execute()

        assert results == [-3, -1, -2]

    @pytest.mark.asyncio
    async def test_no_input_no_source(self) -> None:
        assert await Pipeline().transform(lambda n: n).execute() == []

    @pytest.mark.asyncio
    async def test_progress_reports_each_item(self) -> None:
        on_progress = Mock()

        await Pipeline().progress(on_progress).transform(lambda n: n).execute([1, 2, 3])

        calls = [call.args for call in on_progress.call_args_list]
        assert calls == [(1, 3), (2, 3), (3, 3)]


class TestFailures:
    """Test fail-fast and continue-on-error modes."""

    @pytest.mark.asyncio
    async def test_fail_fast_raises_original_and_stops_launching(self) -> None:
        """Test that the first failure stops new items but lets in-flight ones finish."""
        started: list[int] = []
        finished: list[int] = []

        async def work(x: int) -> int:
            started.append(x)
            if x == 1:
                raise ValueError("item 1 broke")
            await asyncio.sleep(0.05)
            finished.append(x)
            return x

        with pytest.raises(ValueError, match="item 1 broke"):
            await Pipeline(PipelineConfig(parallel=2)).transform(work).execute(range(10))

        assert 9 not in started
        assert len(started) <= 3
        assert set(finished) <= set(started)
        assert 0 in finished

    @pytest.mark.asyncio
    async def test_continue_on_error_returns_item_results(self) -> None:
        def work(x: int) -> int:
            if x == 2:
                raise ShellError("boom", ErrorCode.EACCES, "transform")
            return x * x

        results = await (
            Pipeline(PipelineConfig(parallel=2, continue_on_error=True))
            .transform(work)
            .execute([1, 2, 3])
        )

        assert [r.index for r in results] == [0, 1, 2]
        assert all(isinstance(r, ItemResult) for r in results)
        assert results[0].value == 1
        assert results[1].ok is False
        assert isinstance(results[1].error, ShellError)
        assert results[2].value == 9

    @pytest.mark.asyncio
    async def test_continue_on_error_skips_filtered_items(self) -> None:
        results = await (
            Pipeline(PipelineConfig(continue_on_error=True))
            .filter(lambda x: x != "skip")
            .execute(["a", "skip", "b"])
        )

        assert [(r.index, r.value) for r in results] == [(0, "a"), (2, "b")]

    @pytest.mark.asyncio
    async def test_transform_retry(self) -> None:
        attempts: dict[int, int] = {}

        def flaky(x: int) -> int:
            attempts[x] = attempts.get(x, 0) + 1
            if attempts[x] < 3:
                raise ShellError("busy", ErrorCode.EBUSY, "transform")
            return x

        with patch("shellcore.core.retry.anyio.sleep", new=AsyncMock()):
            results = await (
                Pipeline()
                .transform(flaky, retry=RetryOptions(attempts=3, delay_ms=1))
                .execute([1, 2])
            )

        assert results == [1, 2]
        assert attempts == {1: 3, 2: 3}

    @pytest.mark.asyncio
    async def test_cancellation_cancels_in_flight_items(self) -> None:
        cancelled: list[int] = []

        async def slow(x: int) -> int:
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.append(x)
                raise
            return x

        task = asyncio.ensure_future(
            Pipeline(PipelineConfig(parallel=2)).transform(slow).execute([1, 2, 3])
        )
        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.sleep(0)

        assert sorted(cancelled) == [1, 2]


class TextPlugin(ShellPlugin):
    name = "text"
    version = "1.0.0"

    @property
    def filters(self) -> Mapping[str, Any]:
        return {"min_length": lambda item, n: len(item) >= n}

    @property
    def transformers(self) -> Mapping[str, Any]:
        return {
            "upper": str.upper,
            "suffix": lambda s: (lambda item: item + s),
        }


class TestPluginStages:
    """Test filters and transforms resolved by plugin name."""

    @pytest.mark.asyncio
    async def test_named_filter_and_transformer(self) -> None:
        plugins = PluginManager()
        plugins.use(TextPlugin())

        results = await (
            Pipeline(plugins=plugins)
            .filter("min_length", 4)
            .transform("upper")
            .transform("suffix", "!")
            .execute(["ab", "abcd", "abcdef"])
        )

        assert results == ["ABCD!", "ABCDEF!"]

    def test_unknown_filter_fails_at_build_time(self) -> None:
        plugins = PluginManager()

        with pytest.raises(PluginError):
            Pipeline(plugins=plugins).filter("nope")

    def test_named_stage_without_plugins(self) -> None:
        with pytest.raises(PluginError):
            Pipeline().transform("upper")


class TestFilePipeline:
    """Test filesystem-aware pipeline stages."""

    @pytest.fixture
    def tree(self, tmp_path: Path) -> Path:
        root = tmp_path / "tree"
        (root / "docs").mkdir(parents=True)
        (root / "a.txt").write_text("x" * 10)
        (root / "b.log").write_text("y" * 2000)
        (root / "docs" / "c.txt").write_text("z" * 500)
        return root

    @pytest.mark.asyncio
    async def test_find_with_root(self, fs: FileSystemOperations, tree: Path) -> None:
        results = await FilePipeline(fs).find("**/*.txt", root=tree).execute()

        assert results == [tree / "a.txt", tree / "docs" / "c.txt"]

    @pytest.mark.asyncio
    async def test_find_filters_input_by_name(
        self, fs: FileSystemOperations, tree: Path
    ) -> None:
        paths = [tree / "a.txt", tree / "b.log", tree / "docs" / "c.txt"]

        results = await FilePipeline(fs).find("*.log").execute(paths)

        assert results == [tree / "b.log"]

    @pytest.mark.asyncio
    async def test_filter_by_size(self, fs: FileSystemOperations, tree: Path) -> None:
        results = await (
            FilePipeline(fs)
            .find("**/*", root=tree)
            .filter_by_size(min_size=100, max_size=1000)
            .execute()
        )

        assert results == [tree / "docs" / "c.txt"]

    @pytest.mark.asyncio
    async def test_filter_by_type(self, fs: FileSystemOperations, tree: Path) -> None:
        entries = [tree / "docs", tree / "a.txt", tree / "b.log"]

        dirs = await FilePipeline(fs).filter_by_type("directory").execute(entries)
        files = await FilePipeline(fs).filter_by_type("file").execute(entries)
        logs = await FilePipeline(fs).filter_by_type([".LOG"]).execute(entries)

        assert dirs == [tree / "docs"]
        assert files == [tree / "a.txt", tree / "b.log"]
        assert logs == [tree / "b.log"]

    @pytest.mark.asyncio
    async def test_filter_by_type_symlink(
        self, fs: FileSystemOperations, tree: Path
    ) -> None:
        link = tree / "link.txt"
        link.symlink_to(tree / "a.txt")

        results = await FilePipeline(fs).filter_by_type("symlink").execute(
            [tree / "a.txt", link]
        )

        assert results == [link]

    @pytest.mark.asyncio
    async def test_filter_by_age(self, fs: FileSystemOperations, tree: Path) -> None:
        old = tree / "a.txt"
        week_ago = time.time() - 7 * 86400
        os.utime(old, (week_ago, week_ago))
        cutoff = datetime.now(UTC) - timedelta(days=1)

        older = await FilePipeline(fs).filter_by_age(older_than=cutoff).execute(
            [old, tree / "b.log"]
        )
        newer = await FilePipeline(fs).filter_by_age(newer_than=cutoff).execute(
            [old, tree / "b.log"]
        )

        assert older == [old]
        assert newer == [tree / "b.log"]

    @pytest.mark.asyncio
    async def test_missing_paths_are_dropped(
        self, fs: FileSystemOperations, tree: Path
    ) -> None:
        results = await FilePipeline(fs).filter_by_size(min_size=0).execute(
            [tree / "ghost", tree / "a.txt"]
        )

        assert results == [tree / "a.txt"]

    @pytest.mark.asyncio
    async def test_copy_to_and_get_info(
        self, fs: FileSystemOperations, tree: Path, tmp_path: Path
    ) -> None:
        dest = tmp_path / "dest"
        dest.mkdir()

        infos = await (
            FilePipeline(fs, PipelineConfig(parallel=2))
            .find("*.txt", root=tree)
            .copy_to(dest)
            .get_info()
            .execute()
        )

        assert [info.path for info in infos] == [dest / "a.txt"]
        assert infos[0].size == 10
        assert (tree / "a.txt").exists()

    @pytest.mark.asyncio
    async def test_move_to(self, fs: FileSystemOperations, tree: Path, tmp_path: Path) -> None:
        dest = tmp_path / "moved"
        dest.mkdir()

        results = await FilePipeline(fs).find("*.log", root=tree).move_to(dest).execute()

        assert results == [dest / "b.log"]
        assert not (tree / "b.log").exists()

    @pytest.mark.asyncio
    async def test_limit_before_copy_to_copies_only_kept_paths(
        self, fs: FileSystemOperations, tree: Path, tmp_path: Path
    ) -> None:
        dest = tmp_path / "limited"
        dest.mkdir()

        results = await (
            FilePipeline(fs)
            .find("**/*", root=tree)
            .filter_by_type("file")
            .limit(1)
            .copy_to(dest)
            .execute()
        )

        assert len(results) == 1
        assert [p.name for p in dest.iterdir()] == [results[0].name]
