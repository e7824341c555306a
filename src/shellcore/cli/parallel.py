"""CLI command that runs shell commands concurrently through the pipeline executor."""

from __future__ import annotations

import asyncio
import importlib
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any

from rich.console import Console

if TYPE_CHECKING:  # pragma: no cover - typing only
    import typer
    from typer import Typer as TyperType
else:  # pragma: no cover - runtime fallback for typing
    typer = importlib.import_module("typer")
    TyperType = Any

from shellcore.core.errors import ShellError
from shellcore.core.pipeline import ItemResult
from shellcore.core.schemas import CommandResult
from shellcore.shell import create_shell

app: TyperType = typer.Typer(help="Run shell commands with bounded concurrency.")


def read_commands(path: Path) -> list[str]:
    """One command per line; blank lines and '#' comments are skipped."""
    lines = path.read_text(encoding="utf-8").splitlines()
    return [line.strip() for line in lines if line.strip() and not line.lstrip().startswith("#")]


CommandsArgument = Annotated[
    Path,
    typer.Argument(help="File with one shell command per line."),
]
JobsOption = Annotated[
    int | None,
    typer.Option("--jobs", "-j", min=1, help="Maximum commands running at once."),
]
ContinueFlag = Annotated[
    bool,
    typer.Option("--continue-on-error", help="Run every command even if some fail."),
]


def parallel(
    commands_file: CommandsArgument,
    jobs: JobsOption = None,
    continue_on_error: ContinueFlag = False,
) -> None:
    """Run the commands in COMMANDS_FILE and report results in input order."""

    ui = Console()
    try:
        commands = read_commands(commands_file)
    except OSError as exc:
        typer.secho(f"Cannot read {commands_file}: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc

    shell = create_shell()
    try:
        results = asyncio.run(
            shell.parallel(commands, concurrency=jobs, fail_fast=not continue_on_error)
        )
    except ShellError as exc:
        ui.print(f"❌ [red]FAILED[/red] {exc}")
        raise typer.Exit(code=1) from exc

    failed = 0
    for index, (command, outcome) in enumerate(zip(commands, results, strict=True)):
        if isinstance(outcome, ItemResult) and not outcome.ok:
            failed += 1
            ui.print(f"[{index}] ❌ [red]ERROR[/red] {command} ({outcome.error})")
            continue

        result: CommandResult = outcome.value if isinstance(outcome, ItemResult) else outcome
        if result.success:
            ui.print(f"[{index}] ✅ [green]OK[/green] {command} ({result.duration_ms}ms)")
        else:
            failed += 1
            ui.print(f"[{index}] ❌ [red]EXIT {result.code}[/red] {command}")
        if result.stdout:
            ui.print(result.stdout.rstrip(), markup=False, highlight=False)

    if failed:
        raise typer.Exit(code=1)


app.command("parallel")(parallel)
