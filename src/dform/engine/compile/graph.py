"""Graph building: assertion synthesis, validation, and dependency ordering."""

from __future__ import annotations

import heapq
import logging
from dataclasses import replace
from graphlib import CycleError, TopologicalSorter
from typing import Iterable

from dform.config import ProjectConfig

from .assertions import synthesize_assertions
from .models import (
    Action,
    Assertion,
    CompiledGraph,
    Declaration,
    FileError,
    Operation,
    Table,
    Target,
)

logger = logging.getLogger("dform.compile")


def dependencies_of(action: Action) -> tuple[Target, ...]:
    if isinstance(action, Declaration):
        return ()
    return action.dependency_targets


def _sort_key(action: Action) -> tuple[str, str]:
    return (action.file_name, action.canonical_target.full_name)


def _find_cycles(edges: dict[Target, set[Target]]) -> list[list[Target]]:
    """Find cycles one at a time, breaking each by dropping one of its edges."""
    remaining = {node: set(deps) for node, deps in edges.items()}
    cycles: list[list[Target]] = []
    while True:
        try:
            TopologicalSorter(remaining).prepare()
            return cycles
        except CycleError as e:
            # Each node is a dependency of the next; first and last are the same
            cycle = list(e.args[1])
            cycles.append(cycle[:-1])
            remaining[cycle[1]].discard(cycle[0])


def _rotate_to_smallest(cycle: list[Target]) -> list[Target]:
    start = min(range(len(cycle)), key=lambda i: cycle[i].full_name)
    return cycle[start:] + cycle[:start]


def build_graph(
    actions: Iterable[Action],
    project_config: ProjectConfig,
    file_errors: Iterable[FileError] = (),
    core_version: str = "",
) -> CompiledGraph:
    """Assemble compiled actions into a validated graph.

    Synthesizes assertions declared on tables, applies the global
    disable-assertions switch, and records (never raises) duplicate targets,
    unresolved dependencies and cycles in ``graph_errors``.
    """
    graph = CompiledGraph(project_config=project_config, core_version=core_version)
    for error in file_errors:
        graph.add_error(error.path, error.message)

    all_actions = list(actions)
    tables = [a for a in all_actions if isinstance(a, Table)]
    assertions = [a for a in all_actions if isinstance(a, Assertion)]
    assertions.extend(synthesize_assertions(tables, project_config))
    if project_config.disable_assertions:
        assertions = [replace(a, disabled=True) for a in assertions]

    graph.tables = sorted(tables, key=_sort_key)
    graph.assertions = sorted(assertions, key=_sort_key)
    graph.operations = sorted((a for a in all_actions if isinstance(a, Operation)), key=_sort_key)
    graph.declarations = sorted((a for a in all_actions if isinstance(a, Declaration)), key=_sort_key)

    # 1. Canonical targets must be unique
    files_by_target: dict[Target, list[str]] = {}
    for action in graph.actions():
        files_by_target.setdefault(action.canonical_target, []).append(action.file_name)
    for target, files in files_by_target.items():
        if len(files) > 1:
            message = (
                "Duplicate action name detected. Names within a schema must be unique across "
                f"tables, declarations, assertions, and operations: \"{target.full_name}\" is "
                f"defined in {', '.join(sorted(set(files)))}"
            )
            for file_name in files:
                graph.add_error(file_name, message)

    # 2. Every dependency must resolve
    edges: dict[Target, set[Target]] = {}
    for action in graph.actions():
        resolved = edges.setdefault(action.canonical_target, set())
        for dep in dependencies_of(action):
            if dep in files_by_target:
                resolved.add(dep)
            else:
                graph.add_error(
                    action.file_name,
                    f"Missing dependency detected: Action \"{action.canonical_target.full_name}\" "
                    f"depends on \"{dep.full_name}\" which does not exist",
                )

    # 3. Resolved edges must be acyclic
    for cycle in _find_cycles(edges):
        cycle = _rotate_to_smallest(cycle)
        chain = " > ".join(t.full_name for t in cycle + cycle[:1])
        message = f"Circular dependency detected in chain: [{chain}]"
        members = set(cycle)
        for action in graph.actions():
            if action.canonical_target in members:
                graph.add_error(action.file_name, message)

    if graph.has_errors:
        logger.debug("Graph built with errors in %d file(s)", len(graph.graph_errors))
    return graph


def topological_order(actions: Iterable[Action]) -> list[Action]:
    """Order actions so dependencies come first; ties break on canonical name.

    Only edges between the given actions are considered.

    Raises:
        ValueError: the actions contain a dependency cycle.
    """
    by_target = {a.canonical_target: a for a in actions}
    sorter: TopologicalSorter[Target] = TopologicalSorter()
    for target, action in by_target.items():
        sorter.add(target, *(d for d in dependencies_of(action) if d in by_target))
    try:
        sorter.prepare()
    except CycleError as e:
        raise ValueError(f"Cannot order actions with a dependency cycle: {e.args[1]}") from e

    ready: list[tuple[str, Target]] = []
    ordered: list[Action] = []
    while sorter.is_active():
        for target in sorter.get_ready():
            heapq.heappush(ready, (target.full_name, target))
        _, target = heapq.heappop(ready)
        ordered.append(by_target[target])
        sorter.done(target)
    return ordered
