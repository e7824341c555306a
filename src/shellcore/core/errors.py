"""Typed exceptions and error classification for shellcore.

Every failure that crosses a public boundary is a ShellError carrying a
stable string code, the operation that failed, the path involved and a
recoverable flag that drives the retry wrapper. classify() turns raw
exceptions (mostly OSError from the filesystem layer) into ShellErrors.
"""

from __future__ import annotations

import asyncio
import errno as errno_module
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:  # pragma: no cover - typing only
    from shellcore.core.schemas import OperationRecord


class ErrorCode(str, Enum):
    """Stable error codes exposed on ShellError.code."""

    ENOENT = "ENOENT"
    EACCES = "EACCES"
    EPERM = "EPERM"
    EEXIST = "EEXIST"
    ENOTDIR = "ENOTDIR"
    EISDIR = "EISDIR"
    EMFILE = "EMFILE"
    ENFILE = "ENFILE"
    ENOTEMPTY = "ENOTEMPTY"
    EBUSY = "EBUSY"
    EXDEV = "EXDEV"
    ENOSPC = "ENOSPC"
    EROFS = "EROFS"
    ELOOP = "ELOOP"
    ENAMETOOLONG = "ENAMETOOLONG"
    EINVAL = "EINVAL"
    EAGAIN = "EAGAIN"
    INVALID_PATH = "INVALID_PATH"
    INVALID_OPERATION = "INVALID_OPERATION"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"
    NETWORK_ERROR = "NETWORK_ERROR"
    COMMAND_FAILED = "COMMAND_FAILED"
    PLUGIN_ERROR = "PLUGIN_ERROR"
    ROLLBACK_FAILED = "ROLLBACK_FAILED"
    UNKNOWN = "UNKNOWN"


RECOVERABLE_CODES: frozenset[ErrorCode] = frozenset(
    {
        ErrorCode.EBUSY,
        ErrorCode.EMFILE,
        ErrorCode.ENFILE,
        ErrorCode.EAGAIN,
        ErrorCode.ENOSPC,
        ErrorCode.NETWORK_ERROR,
        ErrorCode.TIMEOUT,
    }
)

_ERRNO_CODES: dict[int, ErrorCode] = {
    getattr(errno_module, code.value): code
    for code in ErrorCode
    if hasattr(errno_module, code.value)
}


def is_recoverable(code: ErrorCode | str) -> bool:
    """Return True if errors with this code are transient and retryable."""
    try:
        return ErrorCode(code) in RECOVERABLE_CODES
    except ValueError:
        return False


class ShellCoreError(Exception):
    """Base exception for all shellcore errors.

    All custom exceptions inherit from this base class so callers can
    catch everything the library raises with a single except clause.
    """

    pass


class ShellError(ShellCoreError):
    """A classified operation failure.

    Attributes:
        code: Stable error code
        operation: Name of the operation that failed (e.g. 'copy')
        path: Path involved in the failure, if any
        recoverable: True if the failure is transient and may be retried
        details: Optional structured context
        errno: Platform errno, if the failure came from the OS
        syscall: Failing syscall or primitive name, if known
        timestamp: UTC time the error was created
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode | str,
        operation: str,
        path: str | None = None,
        *,
        recoverable: bool | None = None,
        details: Any = None,
        errno: int | None = None,
        syscall: str | None = None,
    ) -> None:
        self.code = _coerce_code(code)
        self.operation = operation
        self.path = path
        self.recoverable = (
            is_recoverable(self.code) if recoverable is None else recoverable
        )
        self.details = details
        self.errno = errno
        self.syscall = syscall
        self.timestamp = datetime.now(UTC)
        super().__init__(message)

    @property
    def message(self) -> str:
        return str(self)

    def to_dict(self) -> dict[str, Any]:
        """Convert the error to a JSON-friendly dictionary."""
        result: dict[str, Any] = {
            "error": type(self).__name__,
            "message": self.message,
            "code": self.code.value,
            "operation": self.operation,
            "recoverable": self.recoverable,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.path is not None:
            result["path"] = self.path
        if self.errno is not None:
            result["errno"] = self.errno
        if self.syscall is not None:
            result["syscall"] = self.syscall
        if isinstance(self.details, dict):
            result["details"] = {k: str(v) for k, v in self.details.items()}
        return result

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(code={self.code.value!r}, "
            f"operation={self.operation!r}, path={self.path!r}, "
            f"recoverable={self.recoverable})"
        )

    @classmethod
    def timeout(
        cls, operation: str, timeout_ms: int | float, path: str | None = None
    ) -> ShellError:
        return cls(
            f"Operation '{operation}' timed out after {timeout_ms}ms",
            ErrorCode.TIMEOUT,
            operation,
            path,
            details={"timeout_ms": timeout_ms},
        )

    @classmethod
    def invalid_path(cls, path: str, operation: str, reason: str) -> ShellError:
        return cls(
            f"Invalid path for {operation}: {reason}",
            ErrorCode.INVALID_PATH,
            operation,
            path,
            details={"reason": reason},
        )

    @classmethod
    def invalid_operation(
        cls, message: str, operation: str, **details: Any
    ) -> ShellError:
        return cls(
            message,
            ErrorCode.INVALID_OPERATION,
            operation,
            details=details or None,
        )

    @classmethod
    def command_failed(cls, command: str, exit_code: int, stderr: str) -> ShellError:
        return cls(
            f"Command failed with exit code {exit_code}: {command}",
            ErrorCode.COMMAND_FAILED,
            "exec",
            details={"command": command, "exit_code": exit_code, "stderr": stderr},
        )


class OperationCancelledError(ShellError):
    """Raised when an operation is cancelled before it completes."""

    def __init__(self, operation: str, path: str | None = None) -> None:
        super().__init__(
            f"Operation '{operation}' was cancelled",
            ErrorCode.CANCELLED,
            operation,
            path,
        )


class PluginError(ShellError):
    """Raised for malformed plugin registration or failing plugin handlers."""

    def __init__(self, message: str, operation: str, details: Any = None) -> None:
        super().__init__(
            message, ErrorCode.PLUGIN_ERROR, operation, details=details
        )


@dataclass(frozen=True)
class RestoreFailure:
    """One undo-log entry that could not be reversed during rollback."""

    record: OperationRecord
    error: ShellError


class RollbackError(ShellError):
    """Raised when a transaction failed AND its rollback did not fully complete.

    The filesystem is left in an inconsistent state. The original
    triggering error and every restoration failure are preserved so the
    caller can tell which paths still need manual attention.

    Attributes:
        original_error: The error that triggered the rollback
        failures: Restoration failures, in the order they were attempted
    """

    def __init__(
        self,
        transaction_id: str,
        original_error: BaseException,
        failures: list[RestoreFailure],
    ) -> None:
        self.transaction_id = transaction_id
        self.original_error = original_error
        self.failures = list(failures)

        paths = ", ".join(
            sorted({f.record.target for f in self.failures if f.record.target})
        )
        message = (
            f"Transaction {transaction_id} failed ({original_error}) and "
            f"{len(self.failures)} rollback step(s) could not be restored"
        )
        if paths:
            message += f": {paths}"

        super().__init__(
            message,
            ErrorCode.ROLLBACK_FAILED,
            "transaction.rollback",
            recoverable=False,
            details={"transaction_id": transaction_id},
        )

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["original_error"] = str(self.original_error)
        result["failures"] = [
            {
                "sequence": f.record.sequence,
                "kind": f.record.kind.value,
                "target": f.record.target,
                "error": f.error.to_dict(),
            }
            for f in self.failures
        ]
        return result


def _coerce_code(code: ErrorCode | str) -> ErrorCode:
    if isinstance(code, ErrorCode):
        return code
    try:
        return ErrorCode(code)
    except ValueError:
        return ErrorCode.UNKNOWN


def classify(
    raw_error: BaseException, operation: str, path: str | None = None
) -> ShellError:
    """Map a raw exception to a typed ShellError.

    Args:
        raw_error: Exception raised by a primitive operation
        operation: Name of the operation that failed
        path: Path involved, used when the raw error does not carry one

    Returns:
        The same object if it is already a ShellError, otherwise a new
        ShellError with a stable code and recoverable flag. Never raises.
    """
    if isinstance(raw_error, ShellError):
        return raw_error

    try:
        return _classify(raw_error, operation, path)
    except Exception:  # noqa: BLE001 - classification must never raise
        return ShellError(
            f"Unclassifiable error during {operation}",
            ErrorCode.UNKNOWN,
            operation,
            path,
            recoverable=False,
        )


def _classify(raw_error: BaseException, operation: str, path: str | None) -> ShellError:
    message = str(raw_error) or type(raw_error).__name__

    if isinstance(raw_error, asyncio.CancelledError):
        return OperationCancelledError(operation, path)

    if isinstance(raw_error, OSError) and raw_error.errno in _ERRNO_CODES:
        code = _ERRNO_CODES[raw_error.errno]
        filename = raw_error.filename
        return ShellError(
            raw_error.strerror or message,
            code,
            operation,
            str(filename) if filename is not None else path,
            details={"exception": type(raw_error).__name__},
            errno=raw_error.errno,
            syscall=operation,
        )

    # TimeoutError and ConnectionError are OSError subclasses that often
    # carry no errno, so they are checked after the errno table.
    if isinstance(raw_error, TimeoutError):
        return ShellError(message, ErrorCode.TIMEOUT, operation, path)

    if isinstance(raw_error, ConnectionError):
        return ShellError(message, ErrorCode.NETWORK_ERROR, operation, path)

    return ShellError(
        message,
        ErrorCode.UNKNOWN,
        operation,
        path,
        recoverable=False,
        details={"exception": type(raw_error).__name__},
    )
