"""Pytest configuration and fixtures for shellcore tests."""

import os
from pathlib import Path

import pytest

from shellcore.cache.path_cache import PathCache
from shellcore.core.config import ShellConfig
from shellcore.core.transaction import TransactionManager
from shellcore.fs.fs_ops import FileSystemOperations
from shellcore.process.proc_ops import ProcessOperations
from shellcore.shell import Shell


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep SHELLCORE_* variables from the developer's shell out of tests."""
    for key in list(os.environ):
        if key.startswith("SHELLCORE_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def backup_root(tmp_path: Path) -> Path:
    """Backup root kept apart from the files the tests mutate."""
    return tmp_path / ".backups"


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    """Directory the tests create and mutate files in."""
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def fs() -> FileSystemOperations:
    return FileSystemOperations(cache=PathCache())


@pytest.fixture
def process() -> ProcessOperations:
    return ProcessOperations(timeout_ms=10_000)


@pytest.fixture
def manager(
    fs: FileSystemOperations, process: ProcessOperations, backup_root: Path
) -> TransactionManager:
    return TransactionManager(fs, process, backup_root=backup_root)


@pytest.fixture
def shell(backup_root: Path) -> Shell:
    return Shell(ShellConfig(backup_dir=backup_root, timeout_ms=10_000))
