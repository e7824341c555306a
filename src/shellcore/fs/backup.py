"""Per-transaction backup store.

A BackupStore owns one private directory, `<root>/<transaction_id>`, and
keeps pre-images of files and directories there until the transaction
commits or finishes rolling back. Backups are named
`<transaction_id>_<sequence:04d><tag>_<basename>` so that every undo-log
entry gets its own copy even when the same path is captured twice.
"""

from __future__ import annotations

import errno
import os
import shutil
from pathlib import Path

import anyio.to_thread

from shellcore.core.errors import ShellError, classify
from shellcore.core.schemas import BackupRecord
from shellcore.fs.paths import path_exists
from shellcore.utils.debug import debug


def _copy_preimage(source: Path, backup: Path) -> bool:
    backup.parent.mkdir(parents=True, exist_ok=True)
    if source.is_dir() and not source.is_symlink():
        shutil.copytree(source, backup, symlinks=True)
        return True
    shutil.copy2(source, backup, follow_symlinks=False)
    return False


def _delete(path: Path) -> None:
    if not path_exists(path):
        return
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def _restore_preimage(record: BackupRecord) -> None:
    if not path_exists(record.backup_path):
        raise FileNotFoundError(
            errno.ENOENT, "Backup is missing", str(record.backup_path)
        )
    _delete(record.source_path)
    record.source_path.parent.mkdir(parents=True, exist_ok=True)
    if record.is_dir:
        shutil.copytree(record.backup_path, record.source_path, symlinks=True)
    else:
        shutil.copy2(record.backup_path, record.source_path, follow_symlinks=False)


class BackupStore:
    """Stores and restores pre-images for a single transaction.

    Args:
        root: Directory under which every transaction's backups live
        transaction_id: Owning transaction; names the private directory
    """

    def __init__(self, root: Path, transaction_id: str) -> None:
        self.root = Path(root)
        self.transaction_id = transaction_id
        self.directory = self.root / transaction_id
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _backup_path(self, path: Path, sequence: int, tag: str) -> Path:
        name = path.name or "root"
        return self.directory / f"{self.transaction_id}_{sequence:04d}{tag}_{name}"

    async def capture(
        self, path: Path, sequence: int, tag: str = ""
    ) -> BackupRecord | None:
        """Copy the current content of path into the store.

        Args:
            path: Entity about to be mutated
            sequence: Undo-log position of the operation taking the backup
            tag: Suffix distinguishing several backups for one operation
                (e.g. a move's source and destination)

        Returns:
            BackupRecord, or None when path does not exist

        Raises:
            ShellError: INVALID_OPERATION if the store was closed while the
                copy was in progress; classified OS failure otherwise
        """
        if self._closed:
            raise ShellError.invalid_operation(
                f"Backup store for {self.transaction_id} is closed",
                "backup.capture",
                path=str(path),
            )

        if not await anyio.to_thread.run_sync(path_exists, path):
            return None

        backup_path = self._backup_path(path, sequence, tag)
        try:
            is_dir = await anyio.to_thread.run_sync(_copy_preimage, path, backup_path)
        except OSError as exc:
            raise classify(exc, "backup.capture", str(path)) from exc

        if self._closed:
            # The transaction finalized while the copy was running.
            await anyio.to_thread.run_sync(_delete, backup_path)
            raise ShellError.invalid_operation(
                f"Backup store for {self.transaction_id} closed during capture",
                "backup.capture",
                path=str(path),
            )

        debug(f"Captured backup: {path} -> {backup_path}")
        return BackupRecord(source_path=path, backup_path=backup_path, is_dir=is_dir)

    async def restore(self, record: BackupRecord) -> None:
        """Replace whatever is at record.source_path with the stored pre-image.

        Raises:
            ShellError: ENOENT if the backup no longer exists
        """
        try:
            await anyio.to_thread.run_sync(_restore_preimage, record)
        except OSError as exc:
            raise classify(exc, "backup.restore", str(record.source_path)) from exc
        debug(f"Restored {record.source_path} from {record.backup_path}")

    async def discard(self, record: BackupRecord) -> None:
        try:
            await anyio.to_thread.run_sync(_delete, record.backup_path)
        except OSError as exc:
            raise classify(exc, "backup.discard", str(record.backup_path)) from exc

    async def discard_all(self) -> None:
        """Delete the private directory and refuse further captures."""
        self._closed = True
        try:
            await anyio.to_thread.run_sync(_delete, self.directory)
        except OSError as exc:
            raise classify(exc, "backup.discard_all", str(self.directory)) from exc
        debug(f"Discarded backups for {self.transaction_id}")

    async def delete_path(self, path: Path) -> None:
        """Delete a path created by the transaction (rollback of a creation)."""
        try:
            await anyio.to_thread.run_sync(_delete, path)
        except OSError as exc:
            raise classify(exc, "rollback.delete", str(path)) from exc

    def list_backups(self) -> list[Path]:
        if not self.directory.exists():
            return []
        return sorted(self.directory.iterdir(), key=os.fspath)
