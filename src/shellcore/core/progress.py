"""Progress and event reporting for transactions and pipelines."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import structlog
from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TaskProgressColumn,
    TextColumn,
)

from shellcore.core.schemas import OperationRecord

ProgressCallback = Callable[..., Any]


class ProgressReporter:
    """Delivers progress notifications to an optional caller callback.

    Callback failures are logged and swallowed: an observer must never
    change the outcome of the work it observes.
    """

    def __init__(self, callback: ProgressCallback | None = None, logger: Any = None) -> None:
        self._callback = callback
        self._logger = logger or structlog.get_logger(__name__)

    @property
    def enabled(self) -> bool:
        return self._callback is not None

    def emit(self, *args: Any) -> None:
        if self._callback is None:
            return
        try:
            self._callback(*args)
        except Exception as exc:  # noqa: BLE001 - observer errors are not fatal
            self._logger.warning("progress.callback_failed", error=str(exc))


class RichProgressReporter:
    """Renders transaction steps on a Rich progress bar.

    Usable directly as a transaction on_progress callback:

        reporter = RichProgressReporter(total=len(steps))
        with reporter:
            await shell.transaction(run, TransactionOptions(on_progress=reporter))
    """

    def __init__(
        self,
        description: str = "Transaction",
        total: int | None = None,
        console: Console | None = None,
    ) -> None:
        self._console = console or Console()
        self._description = description
        self._total = total
        self._progress = self._create_progress()
        self._task: TaskID | None = None

    def _create_progress(self) -> Progress:
        """Create Rich progress display."""
        return Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=self._console,
            transient=False,
        )

    def __enter__(self) -> RichProgressReporter:
        self._progress.start()
        self._task = self._progress.add_task(self._description, total=self._total)
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self._progress.stop()

    def __call__(self, step: OperationRecord, total: int, current: int) -> None:
        if self._task is None:
            return
        label = step.target or step.command or ""
        self._progress.update(
            self._task,
            completed=current + 1,
            total=self._total or total,
            description=f"{self._description}: {step.kind.value} {label}",
        )
