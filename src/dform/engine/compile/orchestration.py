"""Compile orchestration: concurrent per-file load and compile, then graph build."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import Callable, Iterable, TypeVar

from dform.config import Project, ProjectConfig

from .discovery import Definition, DefinitionError, discover_definitions, load_definition, relative_file_name
from .graph import build_graph
from .models import Action, CompiledGraph, FileError
from .templating import build_name_table, compile_definition

logger = logging.getLogger("dform.compile")

T = TypeVar("T")
R = TypeVar("R")


class CompilationCancelled(Exception):
    """The compilation was cancelled before it finished. Nothing was produced."""


def _check_cancelled(cancel_event: threading.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise CompilationCancelled("Compilation cancelled")


def _run_per_file(
    items: Iterable[T],
    work: Callable[[T], R],
    file_name: Callable[[T], str],
    max_workers: int,
    cancel_event: threading.Event | None,
) -> tuple[list[R], list[FileError]]:
    """Run ``work`` over every item in a thread pool.

    Per-file failures become FileErrors; the other items still complete.
    Results come back in input order regardless of completion order.
    """
    items = list(items)
    results: dict[int, R] = {}
    errors: list[FileError] = []
    if not items:
        return [], errors

    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(items)))) as executor:
        futures: dict[Future[R], int] = {
            executor.submit(work, item): index for index, item in enumerate(items)
        }
        try:
            for future in as_completed(futures):
                _check_cancelled(cancel_event)
                index = futures[future]
                try:
                    results[index] = future.result()
                except DefinitionError as e:
                    name = file_name(items[index])
                    logger.debug("%s: %s", name, e)
                    errors.append(FileError(name, str(e)))
        except CompilationCancelled:
            for future in futures:
                future.cancel()
            raise

    return [results[i] for i in sorted(results)], errors


def compile_definitions(
    definitions: list[Definition],
    project_config: ProjectConfig,
    max_workers: int = 4,
    cancel_event: threading.Event | None = None,
) -> tuple[list[Action], list[FileError]]:
    """Second pass: evaluate every definition's templates against a shared name table."""
    name_table = build_name_table(definitions, project_config)
    return _run_per_file(
        definitions,
        lambda d: compile_definition(d, project_config, name_table),
        lambda d: d.file_name,
        max_workers,
        cancel_event,
    )


def compile_project(
    project: Project,
    max_workers: int = 4,
    cancel_event: threading.Event | None = None,
) -> CompiledGraph:
    """Compile every definition in a project into a validated graph.

    Args:
        project: Resolved project (directory and settings)
        max_workers: Max number of files loaded or compiled concurrently
        cancel_event: When set, pending work is abandoned

    Returns:
        The compiled graph. Per-file and graph errors are recorded in
        ``graph_errors``, never raised.

    Raises:
        CompilationCancelled: ``cancel_event`` was set before compilation finished.
    """
    _check_cancelled(cancel_event)
    project_dir = project.project_dir
    paths = discover_definitions(project_dir)
    logger.info("Compiling %d definition(s) in %s", len(paths), project_dir)

    definitions, load_errors = _run_per_file(
        paths,
        lambda p: load_definition(p, project_dir),
        lambda p: relative_file_name(p, project_dir),
        max_workers,
        cancel_event,
    )
    _check_cancelled(cancel_event)

    actions, compile_errors = compile_definitions(
        definitions, project.config, max_workers, cancel_event,
    )
    _check_cancelled(cancel_event)

    graph = build_graph(
        actions,
        project.config,
        file_errors=sorted(load_errors + compile_errors, key=lambda e: e.path),
        core_version=project.core_version,
    )
    logger.info(
        "Compiled %d table(s), %d assertion(s), %d operation(s), %d declaration(s)",
        len(graph.tables), len(graph.assertions), len(graph.operations), len(graph.declarations),
    )
    return graph
