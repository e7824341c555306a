"""Pydantic schemas shared by the transaction, filesystem and process layers.

These schemas define the records that flow between components:
- BackupRecord: a captured pre-image of a filesystem entity
- OperationRecord: one journaled mutation in a transaction's undo log
- TransactionSummary: the observable result of a transaction
- CommandResult: output of a process execution
- FileInfo: stat information for a path

All schemas use Pydantic v2 for validation and serialization.
"""

from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, field_serializer


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TransactionState(str, Enum):
    """Lifecycle state of a transaction.

    Attributes:
        PENDING: Created, callback not started yet
        RUNNING: Callback in progress, undo log accepting entries
        COMMITTED: Callback succeeded, backups discarded
        ROLLED_BACK: A triggering error occurred and the log was replayed
        FAILED: Rollback could not restore every entry
    """

    PENDING = "pending"
    RUNNING = "running"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


class OperationKind(str, Enum):
    """Mutating operations that a transaction journals."""

    COPY = "copy"
    MOVE = "move"
    MKDIR = "mkdir"
    REMOVE = "remove"
    TOUCH = "touch"
    WRITE_FILE = "write_file"
    EXEC = "exec"
    SPAWN = "spawn"

    @property
    def reversible(self) -> bool:
        return self not in (OperationKind.EXEC, OperationKind.SPAWN)


class BackupRecord(BaseModel):
    """A stored pre-image of a file or directory.

    Attributes:
        source_path: Original location of the entity
        backup_path: Location of the copy inside the transaction's backup dir
        is_dir: True if the entity was a directory (copied recursively)
        created_at: When the copy was taken
    """

    source_path: Path
    backup_path: Path
    is_dir: bool = False
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = {"frozen": True}

    @field_serializer("source_path", "backup_path")
    def serialize_path(self, path: Path) -> str:
        """Serialize Path to string for JSON."""
        return str(path)


class OperationRecord(BaseModel):
    """One entry of a transaction's undo log.

    Attributes:
        sequence: 0-based position in the undo log
        kind: Operation that was journaled
        target: Primary path mutated by the operation
        source: Second path for copy/move
        command: Command line for exec/spawn
        pre_existed: Whether target existed before the operation ran
        backup: Pre-image of target; None means nothing to restore
        source_backup: Pre-image of a move's source
        created_root: Outermost directory a mkdir created
        executed: False when the transaction runs in dry-run mode
    """

    sequence: int = Field(ge=0)
    kind: OperationKind
    target: str | None = None
    source: str | None = None
    command: str | None = None
    pre_existed: bool = False
    created_root: str | None = None
    backup: BackupRecord | None = None
    source_backup: BackupRecord | None = None
    executed: bool = True
    timestamp: datetime = Field(default_factory=_utcnow)

    model_config = {"frozen": True}


class TransactionSummary(BaseModel):
    """Snapshot of a transaction for reporting."""

    id: str
    state: TransactionState
    records: list[OperationRecord] = Field(default_factory=list)
    dry_run: bool = False
    started_at: datetime
    ended_at: datetime | None = None
    duration_ms: int = 0


class CommandResult(BaseModel):
    """Outcome of running a process.

    A non-zero exit code is reported through `code` and `success`, not
    raised, unless the caller asked for `check=True`.
    """

    command: str
    stdout: str = ""
    stderr: str = ""
    code: int = 0
    signal: int | None = None
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return self.code == 0


class FileInfo(BaseModel):
    """Stat information for a filesystem entry."""

    path: Path
    size: int
    is_file: bool
    is_dir: bool
    is_symlink: bool
    mode: int
    mtime: datetime
    atime: datetime

    @field_serializer("path")
    def serialize_path(self, path: Path) -> str:
        """Serialize Path to string for JSON."""
        return str(path)
