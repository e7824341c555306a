"""Path utilities for filesystem operations.

This module provides path normalization, validation and matching helpers
shared by the primitives, the backup store and the file pipeline.
"""

import os
import re
import stat
import unicodedata
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from pathlib import Path

from shellcore.core.constants import MAX_PATH_LENGTH
from shellcore.core.errors import ErrorCode, ShellError, classify
from shellcore.core.schemas import FileInfo

_CONTROL_CHARS = re.compile(r"[\x00-\x1f]")


def normalize_path(path: str | Path, root: Path | None = None) -> Path:
    """Normalize a path for consistent handling.

    Args:
        path: Path to normalize; a leading '~' is expanded
        root: Optional root directory for relative paths

    Returns:
        Normalized absolute path. Symlinks are not resolved so that
        operations on a link act on the link itself.
    """
    if not isinstance(path, Path):
        path = Path(path)

    path = path.expanduser()
    if not path.is_absolute():
        path = (root or Path.cwd()) / path
    path = Path(os.path.normpath(path))

    # Normalize Unicode (NFC on macOS, NFD handling)
    if os.name == "posix":
        path = Path(unicodedata.normalize("NFC", str(path)))

    return path


def validate_path(path: str | Path | None, operation: str) -> Path:
    """Validate and normalize a caller-supplied path before any I/O.

    Args:
        path: Path to validate
        operation: Operation name for error reporting

    Returns:
        Normalized absolute path

    Raises:
        ShellError: EINVAL for empty paths or control characters,
            ENAMETOOLONG when the path exceeds the platform limit
    """
    if path is None or not str(path).strip():
        raise ShellError(
            f"Invalid path for {operation}: empty path",
            ErrorCode.EINVAL,
            operation,
            str(path) if path is not None else None,
        )

    raw = str(path)
    if _CONTROL_CHARS.search(raw):
        raise ShellError(
            f"Invalid characters in path for {operation}",
            ErrorCode.EINVAL,
            operation,
            raw,
        )

    if len(raw) > MAX_PATH_LENGTH:
        raise ShellError(
            f"Path too long: {len(raw)} characters (max: {MAX_PATH_LENGTH})",
            ErrorCode.ENAMETOOLONG,
            operation,
            raw,
        )

    return normalize_path(raw)


def path_exists(path: Path) -> bool:
    """Return True if anything (including a dangling symlink) is at path."""
    return os.path.lexists(path)


def is_subpath(parent: Path, child: Path) -> bool:
    """Return True if child lies strictly inside parent."""
    parent = normalize_path(parent)
    child = normalize_path(child)
    return parent != child and child.is_relative_to(parent)


def highest_missing_ancestor(path: Path) -> Path | None:
    """Return the outermost directory that creating `path` would create.

    Args:
        path: Directory about to be created with parents=True

    Returns:
        The highest ancestor (or path itself) that does not exist yet,
        or None if path already exists
    """
    if path_exists(path):
        return None
    highest = path
    for parent in path.parents:
        if path_exists(parent):
            break
        highest = parent
    return highest


def get_file_info(path: Path, follow_symlinks: bool = True) -> FileInfo:
    """Stat a path.

    Raises:
        ShellError: Classified stat failure (ENOENT, EACCES, ...)
    """
    try:
        st = path.stat() if follow_symlinks else path.lstat()
        is_symlink = path.is_symlink()
    except OSError as exc:
        raise classify(exc, "stat", str(path)) from exc

    return FileInfo(
        path=path,
        size=st.st_size,
        is_file=stat.S_ISREG(st.st_mode),
        is_dir=stat.S_ISDIR(st.st_mode),
        is_symlink=is_symlink,
        mode=st.st_mode,
        mtime=datetime.fromtimestamp(st.st_mtime, tz=UTC),
        atime=datetime.fromtimestamp(st.st_atime, tz=UTC),
    )


def _glob_to_regex(pattern: str) -> re.Pattern[str]:
    parts: list[str] = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if pattern.startswith("**/", i):
            parts.append("(?:.*/)?")
            i += 3
            continue
        if pattern.startswith("**", i):
            parts.append(".*")
            i += 2
            continue
        if char == "*":
            parts.append("[^/]*")
        elif char == "?":
            parts.append("[^/]")
        else:
            parts.append(re.escape(char))
        i += 1
    return re.compile("^" + "".join(parts) + "$")


def create_path_matcher(patterns: str | Sequence[str]) -> Callable[[str], bool]:
    """Build a predicate matching paths against shell-style globs.

    `*` and `?` never cross a '/', while `**` matches any number of path
    segments (including none).

    Args:
        patterns: One glob or a sequence of globs

    Returns:
        Predicate returning True if any pattern matches
    """
    pattern_list = [patterns] if isinstance(patterns, str) else list(patterns)
    if not pattern_list:
        return lambda _path: False

    compiled = [_glob_to_regex(p) for p in pattern_list]

    def matches(path: str) -> bool:
        candidate = str(path).replace("\\", "/")
        return any(regex.match(candidate) for regex in compiled)

    return matches


def format_bytes(size: int) -> str:
    """Format a byte count as a human readable string (e.g. '1.5 KB')."""
    if abs(size) < 1024:
        return f"{size} B"
    value = float(size)
    for unit in ("KB", "MB", "GB", "TB", "PB"):
        value /= 1024
        if abs(value) < 1024 or unit == "PB":
            return f"{value:.1f} {unit}"
    return f"{value:.1f} PB"


def format_duration(ms: float) -> str:
    """Format a duration in milliseconds (e.g. '250ms', '1.5s', '2.0m')."""
    if ms < 1000:
        return f"{int(ms)}ms"
    if ms < 60_000:
        return f"{ms / 1000:.1f}s"
    if ms < 3_600_000:
        return f"{ms / 60_000:.1f}m"
    return f"{ms / 3_600_000:.1f}h"
