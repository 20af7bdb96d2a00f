"""Execution planning: select actions from a compiled graph and lower them to SQL tasks.

Nothing here contacts a warehouse. The plan is what a runner would execute,
in order, for a dry run or a real one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from dform.config import ProjectConfig
from dform.engine.compile.graph import dependencies_of, topological_order
from dform.engine.compile.models import (
    HERMETIC,
    Action,
    Assertion,
    CompiledGraph,
    Declaration,
    Operation,
    Table,
    Target,
    action_type,
)
from dform.engine.compile.serialization import target_to_dict
from dform.engine.sql_analysis import clean_query, quote_target

logger = logging.getLogger("dform.plan")

STATEMENT_TASK = "statement"
ASSERTION_TASK = "assertion"


class SelectionError(Exception):
    """The run configuration names actions the graph does not contain."""


@dataclass
class RunConfig:
    """Which actions to run and how."""

    actions: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    full_refresh: bool = False
    include_dependencies: bool = False
    include_dependents: bool = False

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.actions:
            out["actions"] = list(self.actions)
        if self.tags:
            out["tags"] = list(self.tags)
        out["fullRefresh"] = self.full_refresh
        if self.include_dependencies:
            out["includeDependencies"] = True
        if self.include_dependents:
            out["includeDependents"] = True
        return out


@dataclass(frozen=True)
class Task:
    statement: str
    type: str = STATEMENT_TASK


@dataclass
class ActionExecution:
    """One planned action and the statements it runs."""

    type: str  # "table", "assertion" or "operation"
    target: Target
    file_name: str
    hermeticity: str
    table_type: str | None = None
    dependency_targets: list[Target] = field(default_factory=list)
    tasks: list[Task] = field(default_factory=list)


@dataclass
class ExecutionPlan:
    """Ordered actions plus the configuration that produced them."""

    actions: list[ActionExecution]
    run_config: RunConfig
    project_config: ProjectConfig
    warehouse_state: dict[str, Any] = field(default_factory=dict)


# --- Selection ---


def _find_action(reference: str, actions: list[Action]) -> Action:
    matches = [a for a in actions if a.canonical_target.matches(reference)]
    if not matches:
        raise SelectionError(f"Action not found: {reference}")
    if len(matches) > 1:
        options = ", ".join(sorted(a.canonical_target.full_name for a in matches))
        raise SelectionError(f"Ambiguous action name: {reference}. Did you mean one of: {options}")
    return matches[0]


def _closure(start: set[Target], edges: dict[Target, set[Target]]) -> set[Target]:
    seen = set(start)
    frontier = list(start)
    while frontier:
        node = frontier.pop()
        for nxt in edges.get(node, ()):
            if nxt not in seen:
                seen.add(nxt)
                frontier.append(nxt)
    return seen


def select_actions(graph: CompiledGraph, run_config: RunConfig) -> list[Action]:
    """Pick the actions a run covers, in graph order.

    Explicitly named actions are selected even when disabled. Tag and
    whole-project selection only pick enabled actions. Declarations are never
    selected.

    Raises:
        SelectionError: an explicitly named action does not exist or is ambiguous.
    """
    candidates = [a for a in graph.actions() if not isinstance(a, Declaration)]

    if run_config.actions:
        chosen = {_find_action(ref, candidates).canonical_target for ref in run_config.actions}
        upstream: dict[Target, set[Target]] = {}
        downstream: dict[Target, set[Target]] = {}
        for action in candidates:
            for dep in dependencies_of(action):
                upstream.setdefault(action.canonical_target, set()).add(dep)
                downstream.setdefault(dep, set()).add(action.canonical_target)
        selected = set(chosen)
        if run_config.include_dependencies:
            selected |= _closure(chosen, upstream)
        if run_config.include_dependents:
            selected |= _closure(chosen, downstream)
        return [a for a in candidates if a.canonical_target in selected]

    enabled = [a for a in candidates if not a.disabled]
    if run_config.tags:
        wanted = set(run_config.tags)
        return [a for a in enabled if wanted.intersection(a.tags)]
    return enabled


# --- Lowering ---


def _table_tasks(table: Table, full_refresh: bool) -> list[Task]:
    target = quote_target(table.target.database, table.target.schema, table.target.name)
    if table.type == "view":
        main = [Task(f"create or replace view {target} as {clean_query(table.query)}")]
    elif table.type == "incremental" and not full_refresh:
        query = clean_query(table.incremental_query if table.incremental_query is not None else table.query)
        main = []
        if table.unique_key:
            condition = " and ".join(f"T.{k} = S.{k}" for k in table.unique_key)
            main.append(Task(
                f"delete from {target} T where exists (select 1 from ({query}) S where {condition})"
            ))
        main.append(Task(f"insert into {target} {query}"))
        pre = [Task(clean_query(op)) for op in table.incremental_pre_ops]
        post = [Task(clean_query(op)) for op in table.incremental_post_ops]
        return pre + main + post
    else:
        main = [Task(f"create or replace table {target} as {clean_query(table.query)}")]
    pre = [Task(clean_query(op)) for op in table.pre_ops]
    post = [Task(clean_query(op)) for op in table.post_ops]
    return pre + main + post


def lower_action(action: Action, full_refresh: bool = False) -> list[Task]:
    """Turn one action into the statements that realize it."""
    if action.disabled:
        return []
    if isinstance(action, Table):
        return _table_tasks(action, full_refresh)
    if isinstance(action, Assertion):
        return [Task(clean_query(action.query), ASSERTION_TASK)]
    if isinstance(action, Operation):
        return [Task(clean_query(q)) for q in action.queries]
    raise ValueError(f"Declarations cannot be executed: {action.canonical_target.full_name}")


def build_execution_plan(graph: CompiledGraph, run_config: RunConfig) -> ExecutionPlan:
    """Build the ordered plan for a run.

    Raises:
        SelectionError: the run names an action the graph does not contain.
    """
    selected = select_actions(graph, run_config)
    in_plan = {a.canonical_target for a in selected}
    executions = []
    for action in topological_order(selected):
        executions.append(ActionExecution(
            type=action_type(action),
            target=action.target,
            file_name=action.file_name,
            hermeticity=action.hermeticity or HERMETIC,
            table_type=action.type if isinstance(action, Table) else None,
            dependency_targets=[
                graph_target for graph_target in dependencies_of(action) if graph_target in in_plan
            ],
            tasks=lower_action(action, run_config.full_refresh),
        ))
    logger.debug("Planned %d action(s)", len(executions))
    return ExecutionPlan(
        actions=executions,
        run_config=run_config,
        project_config=graph.project_config,
    )


def plan_to_dict(plan: ExecutionPlan) -> dict[str, Any]:
    actions = []
    for execution in plan.actions:
        entry: dict[str, Any] = {
            "fileName": execution.file_name,
            "hermeticity": execution.hermeticity,
        }
        if execution.table_type:
            entry["tableType"] = execution.table_type
        entry["target"] = target_to_dict(execution.target)
        if execution.dependency_targets:
            entry["dependencyTargets"] = [target_to_dict(t) for t in execution.dependency_targets]
        if execution.tasks:
            entry["tasks"] = [{"statement": t.statement, "type": t.type} for t in execution.tasks]
        entry["type"] = execution.type
        actions.append(entry)
    return {
        "actions": actions,
        "projectConfig": plan.project_config.to_dict(),
        "runConfig": plan.run_config.to_dict(),
        "warehouseState": dict(plan.warehouse_state),
    }
