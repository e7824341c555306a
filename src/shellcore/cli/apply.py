"""CLI command that runs a JSON script of steps as one transaction."""

from __future__ import annotations

import asyncio
import importlib
import json
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any, Literal

from pydantic import BaseModel, Field, ValidationError, model_validator
from rich.console import Console

if TYPE_CHECKING:  # pragma: no cover - typing only
    import typer
    from typer import Typer as TyperType
else:  # pragma: no cover - runtime fallback for typing
    typer = importlib.import_module("typer")
    TyperType = Any

from shellcore.core.errors import RollbackError, ShellError
from shellcore.core.progress import RichProgressReporter
from shellcore.core.schemas import OperationRecord
from shellcore.core.transaction import TransactionalShell, TransactionOptions
from shellcore.shell import create_shell

app: TyperType = typer.Typer(help="Apply a script of filesystem steps atomically.")

StepOp = Literal[
    "copy", "move", "mkdir", "remove", "touch", "write_file", "exec", "spawn"
]

_REQUIRED: dict[str, tuple[str, ...]] = {
    "copy": ("src", "dst"),
    "move": ("src", "dst"),
    "mkdir": ("path",),
    "remove": ("path",),
    "touch": ("path",),
    "write_file": ("path", "content"),
    "exec": ("command",),
    "spawn": ("command",),
}


class ScriptStep(BaseModel):
    """One step of an apply script, e.g. {"op": "copy", "src": "a", "dst": "b"}."""

    op: StepOp
    src: str | None = None
    dst: str | None = None
    path: str | None = None
    content: str | None = None
    command: str | None = None
    args: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_required(self) -> ScriptStep:
        missing = [name for name in _REQUIRED[self.op] if getattr(self, name) is None]
        if missing:
            raise ValueError(f"'{self.op}' step requires: {', '.join(missing)}")
        return self

    def describe(self) -> str:
        if self.src is not None:
            return f"{self.op} {self.src} -> {self.dst}"
        return f"{self.op} {self.path or self.command}"


def load_script(path: Path) -> list[ScriptStep]:
    """Parse a script file: a JSON list of steps or {"steps": [...]}.

    Raises:
        ValueError: Unreadable JSON or an invalid step
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ValueError(f"Cannot read script {path}: {exc}") from exc

    if isinstance(data, dict):
        data = data.get("steps", [])
    if not isinstance(data, list):
        raise ValueError("Script must be a list of steps")

    try:
        return [ScriptStep.model_validate(step) for step in data]
    except ValidationError as exc:
        raise ValueError(f"Invalid step in {path}: {exc}") from exc


async def run_step(tx: TransactionalShell, step: ScriptStep) -> None:
    """Dispatch one step onto the transactional proxy."""
    match step.op:
        case "copy":
            await tx.copy(step.src, step.dst)  # type: ignore[arg-type]
        case "move":
            await tx.move(step.src, step.dst)  # type: ignore[arg-type]
        case "mkdir":
            await tx.mkdir(step.path)  # type: ignore[arg-type]
        case "remove":
            await tx.remove(step.path)  # type: ignore[arg-type]
        case "touch":
            await tx.touch(step.path)  # type: ignore[arg-type]
        case "write_file":
            await tx.write_file(step.path, step.content)  # type: ignore[arg-type]
        case "exec":
            await tx.exec(step.command, check=True)  # type: ignore[arg-type]
        case "spawn":
            await tx.spawn(step.command, step.args, check=True)  # type: ignore[arg-type]


ScriptArgument = Annotated[
    Path,
    typer.Argument(help="JSON file listing the steps to apply."),
]
DryRunFlag = Annotated[
    bool,
    typer.Option("--dry-run", help="Journal the steps without touching the filesystem."),
]
TimeoutOption = Annotated[
    int | None,
    typer.Option("--timeout-ms", help="Roll back if the script runs longer than this."),
]
BackupDirOption = Annotated[
    Path | None,
    typer.Option("--backup-dir", help="Directory for transaction backups."),
]
VerboseFlag = Annotated[
    bool,
    typer.Option("--verbose", "-v", help="List each step and each undone step."),
]


def apply(
    script: ScriptArgument,
    dry_run: DryRunFlag = False,
    timeout_ms: TimeoutOption = None,
    backup_dir: BackupDirOption = None,
    verbose: VerboseFlag = False,
) -> None:
    """Run every step of SCRIPT in a single transaction."""

    ui = Console()
    try:
        steps = load_script(script)
    except ValueError as exc:
        typer.secho(str(exc), err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc

    # SHELLCORE_VERBOSE applies unless the flag is given
    shell = create_shell(backup_dir=backup_dir, verbose=verbose or None)
    verbose = shell.config.verbose
    journal: list[OperationRecord] = []

    async def run(tx: TransactionalShell) -> None:
        for step in steps:
            await run_step(tx, step)
        journal.extend(tx.records)

    def undone(record: OperationRecord) -> None:
        subject = record.target or record.command
        ui.print(f"   [yellow]undo[/yellow] #{record.sequence} {record.kind.value} {subject}")

    reporter = RichProgressReporter(
        description="Apply", total=len(steps), console=ui
    )
    options = TransactionOptions(
        dry_run=dry_run,
        timeout_ms=timeout_ms,
        on_progress=reporter,
        on_rollback=undone if verbose else None,
    )

    try:
        with reporter:
            asyncio.run(shell.transaction(run, options))
    except RollbackError as exc:
        ui.print(f"❌ [red]ROLLBACK INCOMPLETE[/red] {exc.original_error}")
        for failure in exc.failures:
            ui.print(
                f"   [red]not restored[/red] {failure.record.target}: {failure.error}"
            )
        raise typer.Exit(code=2) from exc
    except ShellError as exc:
        ui.print(f"↩️ [yellow]ROLLED BACK[/yellow] {exc}")
        raise typer.Exit(code=1) from exc

    label = "🔍 [blue]DRY RUN[/blue]" if dry_run else "✅ [green]COMMITTED[/green]"
    ui.print(f"{label} {len(journal)} step(s)")
    if verbose:
        for step in steps:
            ui.print(f"   {step.describe()}")


app.command("apply")(apply)
