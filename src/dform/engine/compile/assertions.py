"""Assertion synthesis: expand table assertion specs into standalone assertion actions.

Supported spec forms (inside a table's config block):
    assertions: { uniqueKey: ["id"] }
    assertions: { uniqueKeys: [["id"], ["email", "region"]] }
    assertions: { nonNull: ["id"], rowConditions: ["amount >= 0"] }

Each generated assertion selects the rows violating the invariant, so a
passing assertion returns zero rows.
"""

from __future__ import annotations

import logging
from typing import Iterable

from dform.config import ProjectConfig
from dform.engine.sql_analysis import quote_target

from .models import Assertion, Table, Target
from .targets import canonical_target_for, runtime_target_for

logger = logging.getLogger("dform.compile")


def unique_key_query(table: Target, columns: Iterable[str]) -> str:
    """Rows whose key appears more than once."""
    cols = ", ".join(columns)
    return (
        "\nSELECT\n"
        "  *\n"
        "FROM (\n"
        "  SELECT\n"
        f"    {cols},\n"
        "    COUNT(1) AS index_row_count\n"
        f"  FROM {quote_target(table.database, table.schema, table.name)}\n"
        f"  GROUP BY {cols}\n"
        "  ) AS data\n"
        "WHERE index_row_count > 1\n"
    )


def row_conditions_query(table: Target, conditions: Iterable[str]) -> str:
    """Rows failing any condition, labelled with the condition they fail."""
    relation = quote_target(table.database, table.schema, table.name)
    pieces = []
    for condition in conditions:
        label = condition.replace("\\", "\\\\").replace("'", "\\'")
        pieces.append(
            "SELECT\n"
            f"  '{label}' AS failing_row_condition,\n"
            "  *\n"
            f"FROM {relation}\n"
            f"WHERE NOT ({condition})"
        )
    return "\n" + "\nUNION ALL\n".join(pieces) + "\n"


def _synthesized(parent: Table, suffix: str, query: str, project_config: ProjectConfig) -> Assertion:
    parent_target = parent.canonical_target
    name = f"{parent_target.schema}_{parent_target.name}_assertions_{suffix}"
    canonical = canonical_target_for(
        "assertion", name, project_config, database=parent_target.database,
    )
    return Assertion(
        file_name=parent.file_name,
        target=runtime_target_for(canonical, project_config, "assertion"),
        canonical_target=canonical,
        query=query,
        dependency_targets=(parent_target,),
        tags=parent.tags,
        disabled=parent.disabled,
        parent_action=parent_target,
    )


def synthesize_assertions(tables: Iterable[Table], project_config: ProjectConfig) -> list[Assertion]:
    """Create one assertion action per declared spec.

    Names are ``<schema>_<table>_assertions_<kind>[_<index>]`` and depend only
    on the parent's canonical target and spec order, so recompiling the same
    project yields the same names.
    """
    generated: list[Assertion] = []
    for table in tables:
        spec = table.assertion_spec
        if not spec:
            continue
        for index, columns in enumerate(spec.unique_keys):
            generated.append(_synthesized(
                table,
                f"uniqueKey_{index}",
                unique_key_query(table.target, columns),
                project_config,
            ))
        conditions = [f"{col} IS NOT NULL" for col in spec.non_null] + list(spec.row_conditions)
        if conditions:
            generated.append(_synthesized(
                table,
                "rowConditions",
                row_conditions_query(table.target, conditions),
                project_config,
            ))
    if generated:
        logger.debug("Synthesized %d assertion(s)", len(generated))
    return generated
