"""JSON shape of a compiled graph.

Keys are camelCase. Empty lists and unset optional fields are omitted, except
``disabled`` which is always present on executable actions.
"""

from __future__ import annotations

from typing import Any

from .models import Assertion, CompiledGraph, Declaration, Operation, Table, Target


def target_to_dict(target: Target) -> dict[str, str]:
    out = {"database": target.database, "schema": target.schema, "name": target.name}
    if not target.database:
        del out["database"]
    return out


def _targets(targets: tuple[Target, ...]) -> list[dict[str, str]]:
    return [target_to_dict(t) for t in targets]


def table_to_dict(table: Table) -> dict[str, Any]:
    out: dict[str, Any] = {
        "type": table.type,
        "enumType": table.enum_type,
        "target": target_to_dict(table.target),
        "canonicalTarget": target_to_dict(table.canonical_target),
        "query": table.query,
        "disabled": table.disabled,
        "fileName": table.file_name,
        "hermeticity": table.hermeticity,
    }
    if table.tags:
        out["tags"] = list(table.tags)
    if table.dependency_targets:
        out["dependencyTargets"] = _targets(table.dependency_targets)
    if table.description:
        out["description"] = table.description
    if table.incremental_query is not None:
        out["incrementalQuery"] = table.incremental_query
    if table.unique_key:
        out["uniqueKey"] = list(table.unique_key)
    if table.pre_ops:
        out["preOps"] = list(table.pre_ops)
    if table.post_ops:
        out["postOps"] = list(table.post_ops)
    if table.incremental_pre_ops:
        out["incrementalPreOps"] = list(table.incremental_pre_ops)
    if table.incremental_post_ops:
        out["incrementalPostOps"] = list(table.incremental_post_ops)
    return out


def assertion_to_dict(assertion: Assertion) -> dict[str, Any]:
    out: dict[str, Any] = {
        "target": target_to_dict(assertion.target),
        "canonicalTarget": target_to_dict(assertion.canonical_target),
        "query": assertion.query,
        "disabled": assertion.disabled,
        "fileName": assertion.file_name,
    }
    if assertion.hermeticity:
        out["hermeticity"] = assertion.hermeticity
    if assertion.tags:
        out["tags"] = list(assertion.tags)
    if assertion.dependency_targets:
        out["dependencyTargets"] = _targets(assertion.dependency_targets)
    if assertion.parent_action is not None:
        out["parentAction"] = target_to_dict(assertion.parent_action)
    if assertion.description:
        out["description"] = assertion.description
    return out


def operation_to_dict(operation: Operation) -> dict[str, Any]:
    out: dict[str, Any] = {
        "target": target_to_dict(operation.target),
        "canonicalTarget": target_to_dict(operation.canonical_target),
        "queries": list(operation.queries),
        "disabled": operation.disabled,
        "fileName": operation.file_name,
        "hermeticity": operation.hermeticity,
    }
    if operation.has_output:
        out["hasOutput"] = True
    if operation.tags:
        out["tags"] = list(operation.tags)
    if operation.dependency_targets:
        out["dependencyTargets"] = _targets(operation.dependency_targets)
    if operation.description:
        out["description"] = operation.description
    return out


def declaration_to_dict(declaration: Declaration) -> dict[str, Any]:
    out: dict[str, Any] = {
        "target": target_to_dict(declaration.target),
        "canonicalTarget": target_to_dict(declaration.canonical_target),
        "fileName": declaration.file_name,
    }
    if declaration.description:
        out["description"] = declaration.description
    return out


def compiled_graph_to_dict(graph: CompiledGraph) -> dict[str, Any]:
    """Serialize a compiled graph. Action lists that are empty are left out."""
    out: dict[str, Any] = {}
    if graph.tables:
        out["tables"] = [table_to_dict(t) for t in graph.tables]
    if graph.assertions:
        out["assertions"] = [assertion_to_dict(a) for a in graph.assertions]
    if graph.operations:
        out["operations"] = [operation_to_dict(o) for o in graph.operations]
    if graph.declarations:
        out["declarations"] = [declaration_to_dict(d) for d in graph.declarations]
    out["projectConfig"] = graph.project_config.to_dict()
    out["graphErrors"] = {path: list(messages) for path, messages in sorted(graph.graph_errors.items())}
    out["dataformCoreVersion"] = graph.core_version
    out["targets"] = [target_to_dict(t) for t in graph.targets]
    return out
