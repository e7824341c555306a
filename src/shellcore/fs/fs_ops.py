"""Asynchronous filesystem primitives.

Each primitive validates its paths before any I/O, runs the blocking work
in a worker thread, converts OSError into a classified ShellError at the
boundary and invalidates the shared path cache for whatever it mutated.
Target paths are exact: copying or moving onto an existing directory
replaces or merges into that directory rather than nesting inside it.
"""

from __future__ import annotations

import errno
import os
import shutil
from collections.abc import Callable, Sequence
from datetime import datetime
from functools import partial
from pathlib import Path
from typing import Any, TypeVar

import anyio.to_thread

from shellcore.cache.path_cache import PathCache
from shellcore.core.errors import ErrorCode, ShellError, classify
from shellcore.core.retry import RetryOptions, with_retry
from shellcore.core.schemas import FileInfo
from shellcore.fs.paths import (
    create_path_matcher,
    get_file_info,
    is_subpath,
    path_exists,
    validate_path,
)
from shellcore.utils.debug import debug

T = TypeVar("T")


def _copy_entry(src: Path, dst: Path, *, recursive: bool, follow_symlinks: bool) -> None:
    if src.is_symlink() and not follow_symlinks:
        if path_exists(dst) and not dst.is_dir():
            dst.unlink()
        os.symlink(os.readlink(src), dst)
        return

    if not path_exists(src):
        raise FileNotFoundError(errno.ENOENT, os.strerror(errno.ENOENT), str(src))

    if src.is_dir():
        if not recursive:
            raise ShellError(
                "Cannot copy directory without recursive option",
                ErrorCode.EISDIR,
                "copy",
                str(src),
            )
        shutil.copytree(src, dst, symlinks=True, dirs_exist_ok=True)
        return

    if dst.is_dir() and not dst.is_symlink():
        raise IsADirectoryError(errno.EISDIR, os.strerror(errno.EISDIR), str(dst))
    shutil.copy2(src, dst)


def _move_entry(src: Path, dst: Path) -> None:
    try:
        os.rename(src, dst)
    except OSError as e:
        if e.errno != errno.EXDEV:
            raise
        # Cross-device move: copy then remove the original
        debug(f"Cross-device move, falling back to copy: {src} -> {dst}")
        if src.is_dir() and not src.is_symlink():
            shutil.copytree(src, dst, symlinks=True)
            shutil.rmtree(src)
        else:
            shutil.copy2(src, dst, follow_symlinks=False)
            src.unlink()


def _remove_entry(path: Path, *, recursive: bool) -> None:
    if path.is_dir() and not path.is_symlink():
        if not recursive:
            raise ShellError(
                "Cannot remove directory without recursive option",
                ErrorCode.EISDIR,
                "remove",
                str(path),
            )
        shutil.rmtree(path)
    else:
        path.unlink()


def _touch_entry(path: Path, times: tuple[float, float] | None) -> None:
    path.touch(exist_ok=True)
    os.utime(path, times)


def _write_entry(path: Path, content: str | bytes, encoding: str, append: bool) -> None:
    mode = "a" if append else "w"
    if isinstance(content, bytes):
        with path.open(mode + "b") as fh:
            fh.write(content)
    else:
        with path.open(mode, encoding=encoding) as fh:
            fh.write(content)


def _read_entry(path: Path, encoding: str | None) -> str | bytes:
    if encoding is None:
        return path.read_bytes()
    return path.read_text(encoding=encoding)


def _find_entries(
    root: Path, patterns: Sequence[str], include_dirs: bool
) -> list[Path]:
    matches = create_path_matcher(patterns)
    found: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        base = Path(dirpath)
        names = sorted(filenames) + (dirnames if include_dirs else [])
        for name in names:
            candidate = base / name
            rel = candidate.relative_to(root).as_posix()
            if matches(rel):
                found.append(candidate)
    return found


class FileSystemOperations:
    """Async filesystem primitives with optional retry and path caching.

    Args:
        cache: Shared PathCache for stat() results; invalidated on mutation
        retry: Retry policy applied to every primitive (None disables retry)
    """

    def __init__(
        self,
        cache: PathCache | None = None,
        retry: RetryOptions | None = None,
    ) -> None:
        self.cache = cache
        self.retry = retry

    async def _run(
        self,
        operation: str,
        path: Path,
        fn: Callable[..., T],
        *args: Any,
    ) -> T:
        async def attempt() -> T:
            try:
                return await anyio.to_thread.run_sync(partial(fn, *args))
            except OSError as exc:
                raise classify(exc, operation, str(path)) from exc

        if self.retry is None:
            return await attempt()
        return await with_retry(attempt, self.retry, operation_name=operation)

    def invalidate(self, *paths: str | Path) -> None:
        """Drop cached lookups for paths changed outside these primitives."""
        if self.cache is None:
            return
        for path in paths:
            self.cache.invalidate_path(path)

    async def copy(
        self,
        src: str | Path,
        dst: str | Path,
        *,
        recursive: bool = True,
        overwrite: bool = True,
        follow_symlinks: bool = True,
    ) -> None:
        """Copy a file or directory tree to an exact destination path.

        Args:
            src: Source file or directory
            dst: Destination path
            recursive: Allow copying directories
            overwrite: When False, an existing destination is left untouched
            follow_symlinks: When False, a symlink source is copied as a link

        Raises:
            ShellError: INVALID_OPERATION when copying a directory into
                itself, EISDIR for a directory without recursive, or the
                classified OS failure
        """
        source = validate_path(src, "copy")
        dest = validate_path(dst, "copy")

        if is_subpath(source, dest):
            raise ShellError(
                "Cannot copy a directory into itself",
                ErrorCode.INVALID_OPERATION,
                "copy",
                str(source),
            )

        if not overwrite and await anyio.to_thread.run_sync(path_exists, dest):
            debug(f"Skipping copy, destination exists: {dest}")
            return

        await self._run(
            "copy",
            source,
            partial(_copy_entry, recursive=recursive, follow_symlinks=follow_symlinks),
            source,
            dest,
        )
        self.invalidate(dest)
        debug(f"Copied {source} -> {dest}")

    async def move(self, src: str | Path, dst: str | Path) -> None:
        """Rename src to dst, falling back to copy+remove across devices."""
        source = validate_path(src, "move")
        dest = validate_path(dst, "move")

        if source == dest:
            return

        if is_subpath(source, dest):
            raise ShellError(
                "Cannot move a directory into itself",
                ErrorCode.INVALID_OPERATION,
                "move",
                str(source),
            )

        await self._run("move", source, _move_entry, source, dest)
        self.invalidate(source, dest)
        debug(f"Moved {source} -> {dest}")

    async def mkdir(
        self, path: str | Path, *, parents: bool = True, exist_ok: bool = True
    ) -> None:
        target = validate_path(path, "mkdir")
        await self._run(
            "mkdir", target, partial(target.mkdir, parents=parents, exist_ok=exist_ok)
        )
        self.invalidate(target)
        debug(f"Created directory: {target}")

    async def remove(
        self, path: str | Path, *, recursive: bool = True, force: bool = False
    ) -> None:
        """Remove a file, symlink or directory tree.

        Args:
            path: Path to remove
            recursive: Allow removing non-empty directories
            force: Succeed silently when the path does not exist

        Raises:
            ShellError: ENOENT when missing and not forced, EISDIR for a
                directory without recursive
        """
        target = validate_path(path, "remove")

        if not await anyio.to_thread.run_sync(path_exists, target):
            if force:
                return
            raise ShellError(
                f"Path does not exist: {target}",
                ErrorCode.ENOENT,
                "remove",
                str(target),
            )

        await self._run(
            "remove", target, partial(_remove_entry, recursive=recursive), target
        )
        self.invalidate(target)
        debug(f"Removed: {target}")

    async def touch(
        self,
        path: str | Path,
        *,
        atime: datetime | None = None,
        mtime: datetime | None = None,
    ) -> None:
        """Create an empty file or update its timestamps."""
        target = validate_path(path, "touch")
        times: tuple[float, float] | None = None
        if atime is not None or mtime is not None:
            now = datetime.now().timestamp()
            times = (
                atime.timestamp() if atime else now,
                mtime.timestamp() if mtime else now,
            )
        await self._run("touch", target, _touch_entry, target, times)
        self.invalidate(target)

    async def write_file(
        self,
        path: str | Path,
        content: str | bytes,
        *,
        encoding: str = "utf-8",
        append: bool = False,
    ) -> None:
        target = validate_path(path, "write_file")
        await self._run("write_file", target, _write_entry, target, content, encoding, append)
        self.invalidate(target)
        debug(f"Wrote {len(content)} bytes/chars to {target}")

    async def read_file(
        self, path: str | Path, *, encoding: str | None = "utf-8"
    ) -> str | bytes:
        """Read a file as text, or as bytes when encoding is None."""
        target = validate_path(path, "read_file")
        return await self._run("read_file", target, _read_entry, target, encoding)

    async def exists(self, path: str | Path) -> bool:
        target = validate_path(path, "exists")
        return await anyio.to_thread.run_sync(path_exists, target)

    async def stat(self, path: str | Path, *, follow_symlinks: bool = True) -> FileInfo:
        """Stat a path, serving repeat lookups from the path cache."""
        target = validate_path(path, "stat")
        key = f"stat:{target}" if follow_symlinks else f"lstat:{target}"

        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                return cached  # type: ignore[no-any-return]

        info = await anyio.to_thread.run_sync(partial(get_file_info, target, follow_symlinks))
        if self.cache is not None:
            self.cache.set(key, info)
        return info

    async def find(
        self,
        root: str | Path,
        patterns: str | Sequence[str] = "**/*",
        *,
        include_dirs: bool = False,
    ) -> list[Path]:
        """Walk root and return entries whose relative path matches a glob.

        Results are sorted by directory, then by name, so repeated runs
        over an unchanged tree return the same order.
        """
        base = validate_path(root, "find")
        pattern_list = [patterns] if isinstance(patterns, str) else list(patterns)
        if not await anyio.to_thread.run_sync(path_exists, base):
            raise ShellError(
                f"Path does not exist: {base}", ErrorCode.ENOENT, "find", str(base)
            )
        return await self._run(
            "find", base, _find_entries, base, pattern_list, include_dirs
        )
