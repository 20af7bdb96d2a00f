"""CLI interface for the dform compiler.

Split into modules by command group.
The Typer app and shared helpers live here; each module registers its commands.
"""

from __future__ import annotations

from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape

app = typer.Typer(
    name="dform",
    help="Compile declarative SQL projects and plan their execution.",
    no_args_is_help=True,
)
console = Console()
# Errors go to stderr; long paths must not be wrapped mid-message
err_console = Console(stderr=True, soft_wrap=True)


def _fail(message: str) -> NoReturn:
    """Print an error to stderr and exit non-zero."""
    err_console.print(f"[red]{escape(message)}[/red]")
    raise typer.Exit(1)


def _resolve_project(project_dir: Path | None = None) -> Path:
    project_dir = project_dir or Path.cwd()
    if not project_dir.is_dir():
        _fail(f"Project directory not found: {project_dir}")
    return project_dir


def _parse_vars(raw: str | None) -> dict[str, str]:
    from dform.engine.utils import parse_key_values

    try:
        return parse_key_values(raw)
    except ValueError as e:
        _fail(str(e))


def _load_project(
    project_dir: Path,
    vars: str | None = None,
    schema_suffix: str | None = None,
    default_location: str | None = None,
    disable_assertions: bool = False,
):
    """Resolve settings with CLI overrides, exiting with the message on failure."""
    from dform.config import SettingsError, SettingsOverrides, load_project
    from dform.engine.utils import validate_identifier

    if schema_suffix:
        try:
            validate_identifier(schema_suffix, "schema suffix")
        except ValueError as e:
            _fail(str(e))
    overrides = SettingsOverrides(
        vars=_parse_vars(vars),
        schema_suffix=schema_suffix,
        default_location=default_location,
        disable_assertions=disable_assertions,
    )
    try:
        return load_project(project_dir, overrides)
    except SettingsError as e:
        _fail(str(e))


def _configure_logging(verbose: bool) -> None:
    from dform import setup_logging

    setup_logging("DEBUG" if verbose else "WARNING")


# Import submodules so they register their commands on `app`.
from dform.cli import pipeline  # noqa: E402, F401
from dform.cli import project  # noqa: E402, F401
