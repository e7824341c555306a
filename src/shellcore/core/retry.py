"""Retry-with-backoff driver shared by the primitives, the pipeline and callers.

Retries on:
- errors classified as recoverable (busy, too many open files, timeouts,
  network errors), unless a custom should_retry predicate says otherwise

Does NOT retry on:
- permission, not-found and other non-recoverable errors
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import anyio
import structlog

from shellcore.core.constants import (
    DEFAULT_BACKOFF_FACTOR,
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_RETRY_DELAY_MS,
)
from shellcore.core.errors import ShellError, classify

T = TypeVar("T")

ShouldRetry = Callable[[ShellError], bool]
OnRetry = Callable[[int, ShellError], Any]

logger = structlog.get_logger(__name__)


@dataclass
class RetryOptions:
    """Retry policy.

    Attributes:
        attempts: Total number of invocations, including the first
        delay_ms: Delay before the first retry, in milliseconds
        backoff_factor: Multiplier applied to the delay after each retry
        should_retry: Predicate deciding whether an error is retryable;
            defaults to `error.recoverable`
        on_retry: Observer called with (attempt_number, error) before each
            retry; its exceptions are logged and swallowed
    """

    attempts: int = DEFAULT_RETRY_ATTEMPTS
    delay_ms: float = DEFAULT_RETRY_DELAY_MS
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR
    should_retry: ShouldRetry | None = None
    on_retry: OnRetry | None = None


def calculate_backoff_delay(attempt: int, options: RetryOptions) -> float:
    """Calculate the delay in seconds before the retry following `attempt`.

    Args:
        attempt: Attempt number that just failed (1-indexed)
        options: Retry policy

    Returns:
        Delay in seconds: delay_ms * backoff_factor^(attempt-1) / 1000
    """
    delay_ms = options.delay_ms * (options.backoff_factor ** (attempt - 1))
    return max(delay_ms, 0.0) / 1000.0


async def _invoke(operation: Callable[[], Awaitable[T] | T]) -> T:
    result = operation()
    if inspect.isawaitable(result):
        return await result  # type: ignore[no-any-return]
    return result


async def _notify_retry(options: RetryOptions, attempt: int, error: ShellError) -> None:
    if options.on_retry is None:
        return
    try:
        outcome = options.on_retry(attempt, error)
        if inspect.isawaitable(outcome):
            await outcome
    except Exception as exc:  # noqa: BLE001 - observers must not break the loop
        logger.warning(
            "retry.on_retry_failed",
            attempt=attempt,
            error=str(exc),
        )


async def with_retry(
    operation: Callable[[], Awaitable[T] | T],
    options: RetryOptions | None = None,
    *,
    operation_name: str = "operation",
) -> T:
    """Execute an operation with automatic retry on recoverable errors.

    Args:
        operation: Zero-argument callable; may be sync or return an awaitable
        options: Retry policy (defaults: 3 attempts, 1000ms, backoff 2)
        operation_name: Name used when classifying untyped errors

    Returns:
        Result from operation()

    Raises:
        ShellError: The last classified error once attempts are exhausted,
            or immediately when should_retry rejects the error
    """
    opts = options or RetryOptions()
    if opts.attempts <= 0:
        raise ShellError.invalid_operation(
            f"Invalid retry attempts: {opts.attempts}. Must be greater than 0.",
            operation_name,
            attempts=opts.attempts,
        )

    should_retry: ShouldRetry = opts.should_retry or (lambda err: err.recoverable)

    for attempt in range(1, opts.attempts + 1):
        try:
            return await _invoke(operation)
        except Exception as exc:
            error = classify(exc, operation_name)

            if attempt >= opts.attempts or not should_retry(error):
                if error is exc:
                    raise
                raise error from exc

            delay = calculate_backoff_delay(attempt, opts)
            logger.debug(
                "retry.attempt",
                operation=operation_name,
                attempt=attempt,
                code=error.code.value,
                delay_s=delay,
            )
            await anyio.sleep(delay)
            await _notify_retry(opts, attempt, error)

    # Unreachable: the loop either returns or raises on the last attempt
    raise ShellError.invalid_operation(
        f"{operation_name} failed after {opts.attempts} attempts", operation_name
    )
