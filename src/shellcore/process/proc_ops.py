"""Process execution primitives.

exec() runs a command line through the system shell; spawn() runs an
executable with an explicit argument vector and no shell. Both return a
CommandResult: a non-zero exit code is data, not an exception, unless the
caller passes check=True or a retry policy.
"""

from __future__ import annotations

import os
import shutil
import subprocess
import sys
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from pathlib import Path

import anyio
import anyio.to_thread

from shellcore.cache.path_cache import PathCache
from shellcore.core.constants import DEFAULT_EXEC_TIMEOUT_MS
from shellcore.core.errors import ErrorCode, ShellError, classify
from shellcore.core.retry import RetryOptions, with_retry
from shellcore.core.schemas import CommandResult
from shellcore.utils.debug import debug


def _decode(data: bytes | None, encoding: str) -> str:
    if not data:
        return ""
    return data.decode(encoding, errors="replace")


class ProcessOperations:
    """Runs external commands.

    Args:
        silent: When False, echo captured stdout/stderr after each command
        timeout_ms: Default timeout per command
        cwd: Default working directory (None inherits the current one)
        retry: Retry policy; when set, non-zero exits raise and are retried
        cache: Shared PathCache used to memoize which() lookups
    """

    def __init__(
        self,
        *,
        silent: bool = True,
        timeout_ms: int = DEFAULT_EXEC_TIMEOUT_MS,
        cwd: Path | None = None,
        retry: RetryOptions | None = None,
        cache: PathCache | None = None,
    ) -> None:
        self.silent = silent
        self.timeout_ms = timeout_ms
        self.cwd = cwd
        self.retry = retry
        self.cache = cache

    async def _run(
        self,
        operation: str,
        command: str | Sequence[str],
        display: str,
        *,
        cwd: Path | None,
        env: Mapping[str, str] | None,
        input: str | bytes | None,
        timeout_ms: int | None,
        silent: bool | None,
        encoding: str,
    ) -> CommandResult:
        limit_ms = timeout_ms if timeout_ms is not None else self.timeout_ms
        merged_env = {**os.environ, **env} if env else None
        stdin = input.encode(encoding) if isinstance(input, str) else input
        started = time.monotonic()

        debug(f"{operation}: {display}")
        try:
            with anyio.fail_after(limit_ms / 1000):
                completed = await anyio.run_process(
                    command,
                    input=stdin,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    check=False,
                    cwd=cwd or self.cwd,
                    env=merged_env,
                )
        except TimeoutError as exc:
            raise ShellError.timeout(operation, limit_ms) from exc
        except FileNotFoundError as exc:
            raise ShellError(
                f"Command not found: {display}",
                ErrorCode.ENOENT,
                operation,
                details={"command": display},
                errno=exc.errno,
                syscall=operation,
            ) from exc
        except OSError as exc:
            raise classify(exc, operation) from exc

        returncode = completed.returncode
        result = CommandResult(
            command=display,
            stdout=_decode(completed.stdout, encoding),
            stderr=_decode(completed.stderr, encoding),
            code=returncode if returncode >= 0 else 128 - returncode,
            signal=-returncode if returncode < 0 else None,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

        quiet = self.silent if silent is None else silent
        if not quiet:
            if result.stdout:
                sys.stdout.write(result.stdout)
            if result.stderr:
                sys.stderr.write(result.stderr)

        debug(f"{operation} exited {result.code} in {result.duration_ms}ms: {display}")
        return result

    async def _with_policy(
        self,
        operation: str,
        run: Callable[[], Awaitable[CommandResult]],
        *,
        check: bool,
        retry: RetryOptions | None,
    ) -> CommandResult:
        policy = retry or self.retry

        async def attempt() -> CommandResult:
            result = await run()
            if (check or policy is not None) and not result.success:
                raise ShellError.command_failed(result.command, result.code, result.stderr)
            return result

        if policy is None:
            return await attempt()
        return await with_retry(attempt, policy, operation_name=operation)

    async def exec(
        self,
        command: str,
        *,
        cwd: str | Path | None = None,
        env: Mapping[str, str] | None = None,
        input: str | bytes | None = None,
        timeout_ms: int | None = None,
        silent: bool | None = None,
        check: bool = False,
        retry: RetryOptions | None = None,
        encoding: str = "utf-8",
    ) -> CommandResult:
        """Run a command line through the system shell.

        Args:
            command: Shell command line
            cwd: Working directory for this command
            env: Extra environment variables layered over os.environ
            input: Data written to the process's stdin
            timeout_ms: Per-command timeout; the process is killed on expiry
            silent: Override the instance's echo setting
            check: Raise COMMAND_FAILED on a non-zero exit
            retry: Per-call retry policy (overrides the instance default)
            encoding: Encoding for stdin/stdout/stderr

        Returns:
            CommandResult with decoded output and exit code

        Raises:
            ShellError: TIMEOUT, COMMAND_FAILED (check/retry), or
                INVALID_OPERATION for an empty command
        """
        if not command or not command.strip():
            raise ShellError.invalid_operation("Command must be a non-empty string", "exec")

        workdir = Path(cwd) if cwd is not None else None

        async def run() -> CommandResult:
            return await self._run(
                "exec",
                command,
                command,
                cwd=workdir,
                env=env,
                input=input,
                timeout_ms=timeout_ms,
                silent=silent,
                encoding=encoding,
            )

        return await self._with_policy("exec", run, check=check, retry=retry)

    async def spawn(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        cwd: str | Path | None = None,
        env: Mapping[str, str] | None = None,
        input: str | bytes | None = None,
        timeout_ms: int | None = None,
        silent: bool | None = None,
        check: bool = False,
        retry: RetryOptions | None = None,
        encoding: str = "utf-8",
    ) -> CommandResult:
        """Run an executable with an explicit argument list (no shell)."""
        if not command or not command.strip():
            raise ShellError.invalid_operation("Command must be a non-empty string", "spawn")

        argv = [command, *args]
        display = " ".join(argv)
        workdir = Path(cwd) if cwd is not None else None

        async def run() -> CommandResult:
            return await self._run(
                "spawn",
                argv,
                display,
                cwd=workdir,
                env=env,
                input=input,
                timeout_ms=timeout_ms,
                silent=silent,
                encoding=encoding,
            )

        return await self._with_policy("spawn", run, check=check, retry=retry)

    async def which(self, command: str) -> str | None:
        """Locate an executable on PATH, or return None."""
        if not command or not command.strip():
            return None

        key = f"which:{command}"
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                return cached  # type: ignore[no-any-return]

        found = await anyio.to_thread.run_sync(shutil.which, command)
        if found is not None and self.cache is not None:
            self.cache.set(key, found)
        return found
