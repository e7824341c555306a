"""Transactions over filesystem and process operations.

A transaction hands its callback a TransactionalShell. Every mutating call
made through that proxy is journaled: the Backup Store captures a
pre-image of the target first, the operation record is appended to the
undo log, and only then does the real primitive run. If the callback
raises, a primitive fails or the timeout expires, the undo log is
replayed in reverse to put every touched path back the way it was.

    manager = TransactionManager(fs, process, backup_root=Path("/tmp/bk"))

    async def work(tx: TransactionalShell) -> None:
        await tx.mkdir("out")
        await tx.copy("a.txt", "out/a.txt")

    await manager.transaction(work, TransactionOptions(timeout_ms=5000))
"""

from __future__ import annotations

import asyncio
import inspect
import time
import uuid
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar

import anyio.to_thread
import structlog

from shellcore.core.constants import DRY_RUN_STDOUT
from shellcore.core.errors import RestoreFailure, RollbackError, ShellError, classify
from shellcore.core.progress import ProgressReporter
from shellcore.core.schemas import (
    CommandResult,
    OperationKind,
    OperationRecord,
    TransactionState,
    TransactionSummary,
)
from shellcore.fs.backup import BackupStore
from shellcore.fs.fs_ops import FileSystemOperations
from shellcore.fs.paths import highest_missing_ancestor, path_exists, validate_path
from shellcore.process.proc_ops import ProcessOperations

T = TypeVar("T")

ProgressHook = Callable[[OperationRecord, int, int], Any]
RollbackHook = Callable[[OperationRecord], Any]


@dataclass
class TransactionOptions:
    """Per-transaction settings.

    Attributes:
        dry_run: Journal operations without touching the filesystem
        timeout_ms: Abort and roll back if the callback has not finished in
            time (None waits indefinitely)
        backup_dir: Override the manager's backup root for this transaction
        on_progress: Called as (record, log_length, sequence) after each
            journaled operation
        on_rollback: Called with each record just before it is undone
    """

    dry_run: bool = False
    timeout_ms: int | None = None
    backup_dir: Path | None = None
    on_progress: ProgressHook | None = None
    on_rollback: RollbackHook | None = None


def _new_transaction_id() -> str:
    return f"tx_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class Transaction:
    """State and undo log of a single transaction."""

    def __init__(self, options: TransactionOptions, backup_root: Path) -> None:
        self.id = _new_transaction_id()
        self.options = options
        self.state = TransactionState.PENDING
        self.started_at = datetime.now(UTC)
        self.ended_at: datetime | None = None
        self.backups = BackupStore(options.backup_dir or backup_root, self.id)
        self._records: list[OperationRecord] = []
        self._finalized = False
        self._failure: ShellError | None = None

    @property
    def records(self) -> list[OperationRecord]:
        return list(self._records)

    @property
    def finalized(self) -> bool:
        return self._finalized

    @property
    def failure(self) -> ShellError | None:
        """First primitive failure seen through the proxy, if any."""
        return self._failure

    @property
    def next_sequence(self) -> int:
        return len(self._records)

    def append(self, record: OperationRecord) -> None:
        if self._finalized or self.state is not TransactionState.RUNNING:
            raise ShellError.invalid_operation(
                f"Transaction {self.id} is no longer accepting operations",
                f"transaction.{record.kind.value}",
                state=self.state.value,
            )
        self._records.append(record)

    def record_failure(self, error: ShellError) -> None:
        if self._failure is None and not self._finalized:
            self._failure = error

    def finalize(self) -> None:
        self._finalized = True

    def result(self) -> TransactionSummary:
        ended = self.ended_at or datetime.now(UTC)
        return TransactionSummary(
            id=self.id,
            state=self.state,
            records=self.records,
            dry_run=self.options.dry_run,
            started_at=self.started_at,
            ended_at=self.ended_at,
            duration_ms=int((ended - self.started_at).total_seconds() * 1000),
        )


class TransactionalShell:
    """Operation proxy handed to a transaction callback.

    Calls are serialized: if the callback gathers several of them, they
    still run one after another in the order they acquired the lock.
    """

    def __init__(
        self,
        transaction: Transaction,
        fs: FileSystemOperations,
        process: ProcessOperations,
        reporter: ProgressReporter,
    ) -> None:
        self._tx = transaction
        self._fs = fs
        self._process = process
        self._reporter = reporter
        self._lock = asyncio.Lock()

    @property
    def id(self) -> str:
        return self._tx.id

    @property
    def state(self) -> TransactionState:
        return self._tx.state

    @property
    def records(self) -> list[OperationRecord]:
        return self._tx.records

    def _ensure_active(self, kind: OperationKind) -> None:
        if self._tx.finalized:
            raise ShellError.invalid_operation(
                f"Transaction {self._tx.id} has already finished",
                f"transaction.{kind.value}",
                state=self._tx.state.value,
            )

    async def _journal(
        self,
        kind: OperationKind,
        run: Callable[[], Awaitable[T]],
        *,
        target: Path | None = None,
        source: Path | None = None,
        command: str | None = None,
        dry_result: T,
    ) -> T:
        async with self._lock:
            self._ensure_active(kind)
            tx = self._tx
            sequence = tx.next_sequence
            pre_existed = target is not None and await anyio.to_thread.run_sync(
                path_exists, target
            )
            fields: dict[str, Any] = {
                "sequence": sequence,
                "kind": kind,
                "target": str(target) if target is not None else None,
                "source": str(source) if source is not None else None,
                "command": command,
                "pre_existed": pre_existed,
            }

            if tx.options.dry_run:
                record = OperationRecord(**fields, executed=False)
                tx.append(record)
                self._reporter.emit(record, len(tx.records), sequence)
                return dry_result

            try:
                if kind is OperationKind.MKDIR and target is not None:
                    created = await anyio.to_thread.run_sync(highest_missing_ancestor, target)
                    fields["created_root"] = str(created) if created else None
                elif target is not None and kind.reversible:
                    fields["backup"] = await tx.backups.capture(target, sequence)
                if kind is OperationKind.MOVE and source is not None:
                    fields["source_backup"] = await tx.backups.capture(
                        source, sequence, "_src"
                    )
            except ShellError as exc:
                tx.record_failure(exc)
                raise

            # Finalized while the pre-image was being copied
            self._ensure_active(kind)

            record = OperationRecord(**fields)
            tx.append(record)

            try:
                result = await run()
            except Exception as exc:
                error = classify(exc, kind.value, fields["target"])
                tx.record_failure(error)
                if error is exc:
                    raise
                raise error from exc

            self._reporter.emit(record, len(tx.records), sequence)
            return result

    async def copy(self, src: str | Path, dst: str | Path, **options: Any) -> None:
        source = validate_path(src, "copy")
        dest = validate_path(dst, "copy")
        await self._journal(
            OperationKind.COPY,
            lambda: self._fs.copy(source, dest, **options),
            target=dest,
            source=source,
            dry_result=None,
        )

    async def move(self, src: str | Path, dst: str | Path) -> None:
        source = validate_path(src, "move")
        dest = validate_path(dst, "move")
        await self._journal(
            OperationKind.MOVE,
            lambda: self._fs.move(source, dest),
            target=dest,
            source=source,
            dry_result=None,
        )

    async def mkdir(self, path: str | Path, **options: Any) -> None:
        target = validate_path(path, "mkdir")
        await self._journal(
            OperationKind.MKDIR,
            lambda: self._fs.mkdir(target, **options),
            target=target,
            dry_result=None,
        )

    async def remove(self, path: str | Path, **options: Any) -> None:
        target = validate_path(path, "remove")
        await self._journal(
            OperationKind.REMOVE,
            lambda: self._fs.remove(target, **options),
            target=target,
            dry_result=None,
        )

    async def touch(self, path: str | Path, **options: Any) -> None:
        target = validate_path(path, "touch")
        await self._journal(
            OperationKind.TOUCH,
            lambda: self._fs.touch(target, **options),
            target=target,
            dry_result=None,
        )

    async def write_file(
        self, path: str | Path, content: str | bytes, **options: Any
    ) -> None:
        target = validate_path(path, "write_file")
        await self._journal(
            OperationKind.WRITE_FILE,
            lambda: self._fs.write_file(target, content, **options),
            target=target,
            dry_result=None,
        )

    async def exec(self, command: str, **options: Any) -> CommandResult:
        """Run a shell command. Its effects cannot be rolled back."""
        return await self._journal(
            OperationKind.EXEC,
            lambda: self._process.exec(command, **options),
            command=command,
            dry_result=CommandResult(command=command, stdout=DRY_RUN_STDOUT),
        )

    async def spawn(
        self, command: str, args: Sequence[str] = (), **options: Any
    ) -> CommandResult:
        display = " ".join([command, *args])
        return await self._journal(
            OperationKind.SPAWN,
            lambda: self._process.spawn(command, args, **options),
            command=display,
            dry_result=CommandResult(command=display, stdout=DRY_RUN_STDOUT),
        )

    async def read_file(self, path: str | Path, **options: Any) -> str | bytes:
        return await self._fs.read_file(path, **options)

    async def exists(self, path: str | Path) -> bool:
        return await self._fs.exists(path)


def _consume_outcome(task: asyncio.Task[Any]) -> None:
    # A timed-out callback keeps running; collect its late exception so
    # asyncio does not report it as never retrieved.
    if not task.cancelled():
        task.exception()


class TransactionManager:
    """Runs callbacks as transactions and tracks the active ones.

    Args:
        fs: Filesystem primitives the proxy delegates to
        process: Process primitives the proxy delegates to
        backup_root: Directory holding each transaction's backup directory
        logger: Optional structlog logger instance
    """

    def __init__(
        self,
        fs: FileSystemOperations,
        process: ProcessOperations,
        *,
        backup_root: Path,
        logger: Any = None,
    ) -> None:
        self._fs = fs
        self._process = process
        self.backup_root = Path(backup_root)
        self._logger = logger or structlog.get_logger(__name__)
        self._active: dict[str, Transaction] = {}

    def get_transaction(self, transaction_id: str) -> Transaction | None:
        return self._active.get(transaction_id)

    def active_transactions(self) -> list[Transaction]:
        return list(self._active.values())

    async def transaction(
        self,
        callback: Callable[[TransactionalShell], Awaitable[T] | T],
        options: TransactionOptions | None = None,
    ) -> T:
        """Run callback inside a transaction.

        Args:
            callback: Receives the TransactionalShell; may be sync or async
            options: Transaction settings

        Returns:
            The callback's return value once the transaction has committed

        Raises:
            ShellError: TIMEOUT when the callback overran timeout_ms
            RollbackError: The callback failed and some steps could not be
                restored; the filesystem is inconsistent
            Exception: Whatever the callback raised, after a clean rollback
        """
        opts = options or TransactionOptions()
        tx = Transaction(opts, self.backup_root)
        log = self._logger.bind(transaction_id=tx.id)
        proxy = TransactionalShell(
            tx, self._fs, self._process, ProgressReporter(opts.on_progress, log)
        )

        self._active[tx.id] = tx
        tx.state = TransactionState.RUNNING
        log.info("transaction.begin", dry_run=opts.dry_run, timeout_ms=opts.timeout_ms)

        try:
            try:
                result = await self._run_callback(callback, proxy, opts.timeout_ms)
            except (Exception, asyncio.CancelledError) as exc:
                tx.finalize()
                await self._rollback(tx, exc, log)
                raise

            failure = tx.failure
            tx.finalize()
            if failure is not None:
                # A primitive failed but the callback swallowed the error
                await self._rollback(tx, failure, log)
                raise failure

            await self._commit(tx, log)
            return result
        finally:
            self._active.pop(tx.id, None)

    async def _run_callback(
        self,
        callback: Callable[[TransactionalShell], Awaitable[T] | T],
        proxy: TransactionalShell,
        timeout_ms: int | None,
    ) -> T:
        async def invoke() -> T:
            outcome = callback(proxy)
            if inspect.isawaitable(outcome):
                return await outcome  # type: ignore[no-any-return]
            return outcome

        if timeout_ms is None:
            return await invoke()

        task = asyncio.ensure_future(invoke())
        task.add_done_callback(_consume_outcome)
        try:
            done, _pending = await asyncio.wait({task}, timeout=timeout_ms / 1000)
        except asyncio.CancelledError:
            task.cancel()
            raise

        if task in done:
            return task.result()
        raise ShellError.timeout("transaction", timeout_ms)

    async def _commit(self, tx: Transaction, log: Any) -> None:
        try:
            await tx.backups.discard_all()
        except ShellError as exc:
            log.warning("transaction.cleanup_failed", error=str(exc))
        tx.state = TransactionState.COMMITTED
        tx.ended_at = datetime.now(UTC)
        log.info(
            "transaction.commit",
            operations=len(tx.records),
            duration_ms=tx.result().duration_ms,
        )

    async def _rollback(
        self, tx: Transaction, error: BaseException, log: Any
    ) -> None:
        """Replay the undo log in reverse.

        Raises:
            RollbackError: If any record could not be undone. Returns
                normally otherwise, leaving the caller to re-raise error.
        """
        tx.state = TransactionState.ROLLED_BACK
        on_rollback = ProgressReporter(tx.options.on_rollback, log)
        records = tx.records
        log.warning(
            "transaction.rollback",
            error=str(error),
            error_type=type(error).__name__,
            operations=len(records),
        )

        failures: list[RestoreFailure] = []
        for record in reversed(records):
            if not record.executed:
                continue
            on_rollback.emit(record)
            if not record.kind.reversible:
                log.info(
                    "transaction.rollback.skip_irreversible",
                    sequence=record.sequence,
                    kind=record.kind.value,
                    command=record.command,
                )
                continue
            try:
                await self._undo(tx.backups, record)
            except Exception as exc:
                restore_error = classify(exc, "transaction.rollback", record.target)
                failures.append(RestoreFailure(record=record, error=restore_error))
                log.error(
                    "transaction.rollback.step_failed",
                    sequence=record.sequence,
                    kind=record.kind.value,
                    target=record.target,
                    error=str(restore_error),
                )

        try:
            await tx.backups.discard_all()
        except ShellError as exc:
            log.warning("transaction.cleanup_failed", error=str(exc))
        tx.ended_at = datetime.now(UTC)

        if failures:
            tx.state = TransactionState.FAILED
            log.error("transaction.failed", failures=len(failures))
            if isinstance(error, asyncio.CancelledError):
                return
            raise RollbackError(tx.id, error, failures) from error

        log.info("transaction.rolled_back", operations=len(records))

    async def _undo(self, store: BackupStore, record: OperationRecord) -> None:
        target = Path(record.target) if record.target else None
        touched = [Path(p) for p in (record.target, record.source, record.created_root) if p]
        try:
            await self._restore(store, record, target)
        finally:
            self._fs.invalidate(*touched)

    async def _restore(
        self, store: BackupStore, record: OperationRecord, target: Path | None
    ) -> None:
        if record.kind is OperationKind.MKDIR:
            if not record.pre_existed and target is not None:
                await store.delete_path(
                    Path(record.created_root) if record.created_root else target
                )
            return

        if record.backup is not None:
            await store.restore(record.backup)
            await store.discard(record.backup)
        elif not record.pre_existed and target is not None:
            await store.delete_path(target)

        if record.source_backup is not None:
            await store.restore(record.source_backup)
            await store.discard(record.source_backup)
