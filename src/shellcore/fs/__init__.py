"""Filesystem primitives, path helpers and the transaction backup store."""

from shellcore.fs.backup import BackupStore
from shellcore.fs.fs_ops import FileSystemOperations
from shellcore.fs.paths import normalize_path, validate_path

__all__ = [
    "BackupStore",
    "FileSystemOperations",
    "normalize_path",
    "validate_path",
]
