"""Pipeline commands: compile, run."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.markup import escape

from dform.cli import (
    _configure_logging,
    _fail,
    _load_project,
    _resolve_project,
    app,
    console,
    err_console,
)

ProjectDirArg = Annotated[Optional[Path], typer.Argument(help="Project directory (default: current dir)")]
VarsOpt = Annotated[Optional[str], typer.Option("--vars", help="Variable overrides: key=value,key2=value2")]
SuffixOpt = Annotated[Optional[str], typer.Option("--schema-suffix", help="Suffix appended to every schema")]
DisableAssertionsOpt = Annotated[bool, typer.Option("--disable-assertions", help="Disable all assertions")]
WorkersOpt = Annotated[int, typer.Option("--workers", "-w", help="Max files compiled in parallel")]
VerboseOpt = Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")]


def _print_json(payload: dict) -> None:
    typer.echo(json.dumps(payload, indent=2))


def _report_graph_errors(graph_errors: dict[str, list[str]]) -> None:
    count = sum(len(m) for m in graph_errors.values())
    err_console.print(f"[red]Compilation failed with {count} error(s):[/red]")
    for path, messages in sorted(graph_errors.items()):
        for message in messages:
            err_console.print(f"  [bold]{escape(path)}[/bold]: {escape(message)}")


def _compile(project, workers: int):
    from dform.engine.compile import compile_project

    if workers < 1:
        _fail("--workers must be at least 1")
    return compile_project(project, max_workers=workers)


@app.command("compile")
def compile_cmd(
    project_dir: ProjectDirArg = None,
    as_json: Annotated[bool, typer.Option("--json", help="Print the compiled graph as JSON")] = False,
    vars: VarsOpt = None,
    schema_suffix: SuffixOpt = None,
    disable_assertions: DisableAssertionsOpt = False,
    partial: Annotated[bool, typer.Option("--partial", help="Print the JSON even when compilation has errors")] = False,
    workers: WorkersOpt = 4,
    verbose: VerboseOpt = False,
) -> None:
    """Compile the project's definitions into a dependency graph.

    Exits non-zero when any file or graph error is found.
    """
    from dform.engine.compile import compiled_graph_to_dict

    _configure_logging(verbose)
    project_dir = _resolve_project(project_dir)
    project = _load_project(
        project_dir, vars=vars, schema_suffix=schema_suffix,
        disable_assertions=disable_assertions,
    )
    graph = _compile(project, workers)

    if as_json and (partial or not graph.has_errors):
        _print_json(compiled_graph_to_dict(graph))
    elif not graph.has_errors:
        counts = [
            (len(graph.tables), "table(s)"),
            (len(graph.assertions), "assertion(s)"),
            (len(graph.operations), "operation(s)"),
            (len(graph.declarations), "declaration(s)"),
        ]
        summary = ", ".join(f"{n} {label}" for n, label in counts)
        console.print(f"[green]Compiled successfully:[/green] {summary}")
        for target in graph.targets:
            console.print(f"  [dim]{target.full_name}[/dim]")

    if graph.has_errors:
        _report_graph_errors(graph.graph_errors)
        raise typer.Exit(1)


@app.command()
def run(
    project_dir: ProjectDirArg = None,
    credentials: Annotated[Optional[Path], typer.Option("--credentials", help="Warehouse credentials file")] = None,
    dry_run: Annotated[bool, typer.Option("--dry-run", help="Plan the run without executing anything")] = False,
    as_json: Annotated[bool, typer.Option("--json", help="Print the execution plan as JSON")] = False,
    vars: VarsOpt = None,
    schema_suffix: SuffixOpt = None,
    default_location: Annotated[Optional[str], typer.Option("--default-location", help="Override the default location")] = None,
    tags: Annotated[Optional[str], typer.Option("--tags", help="Run actions with any of these tags: t1,t2")] = None,
    actions: Annotated[Optional[str], typer.Option("--actions", help="Run exactly these actions: a1,a2")] = None,
    include_deps: Annotated[bool, typer.Option("--include-deps", help="Also run dependencies of selected actions")] = False,
    include_dependents: Annotated[bool, typer.Option("--include-dependents", help="Also run dependents of selected actions")] = False,
    full_refresh: Annotated[bool, typer.Option("--full-refresh", help="Rebuild incremental tables from scratch")] = False,
    disable_assertions: DisableAssertionsOpt = False,
    workers: WorkersOpt = 4,
    verbose: VerboseOpt = False,
) -> None:
    """Compile the project and plan the actions a run would execute.

    Only --dry-run is supported: statements are planned, never sent to a warehouse.
    """
    from dform.engine.execution import (
        RunConfig,
        SelectionError,
        build_execution_plan,
        plan_to_dict,
    )
    from dform.engine.utils import parse_list

    _configure_logging(verbose)
    project_dir = _resolve_project(project_dir)
    if credentials is not None and not credentials.exists():
        _fail(f"Credentials file not found: {credentials}")
    if not dry_run:
        _fail("Live execution is not supported; pass --dry-run to print the execution plan.")

    project = _load_project(
        project_dir, vars=vars, schema_suffix=schema_suffix,
        default_location=default_location, disable_assertions=disable_assertions,
    )
    graph = _compile(project, workers)
    if graph.has_errors:
        _report_graph_errors(graph.graph_errors)
        raise typer.Exit(1)

    run_config = RunConfig(
        actions=parse_list(actions),
        tags=parse_list(tags),
        full_refresh=full_refresh,
        include_dependencies=include_deps,
        include_dependents=include_dependents,
    )
    try:
        plan = build_execution_plan(graph, run_config)
    except SelectionError as e:
        _fail(str(e))

    if as_json:
        _print_json(plan_to_dict(plan))
        return

    if not plan.actions:
        console.print("[yellow]No actions selected.[/yellow]")
        return
    console.print(f"[bold]Dry run[/bold] [dim]({len(plan.actions)} action(s))[/dim]:")
    for execution in plan.actions:
        label = execution.table_type or execution.type
        status = "[dim]disabled[/dim]" if not execution.tasks else f"{len(execution.tasks)} task(s)"
        console.print(f"  [bold]{execution.target.full_name}[/bold] ({label}) {status}")
