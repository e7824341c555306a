"""CLI entrypoints for shellcore."""

from __future__ import annotations

import importlib
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:  # pragma: no cover - typing only
    import typer
    from typer import Typer as TyperType
else:  # pragma: no cover - runtime fallback for typing
    typer = importlib.import_module("typer")
    TyperType = Any

from shellcore.cli.apply import app as apply_app
from shellcore.cli.apply import apply
from shellcore.cli.parallel import app as parallel_app
from shellcore.cli.parallel import parallel

app: TyperType = typer.Typer(
    help="Transactional filesystem scripting and parallel command runner.",
    no_args_is_help=True,
)
app.command("apply")(apply)
app.command("parallel")(parallel)


def main() -> None:
    app()


__all__ = ["app", "apply_app", "main", "parallel_app"]
