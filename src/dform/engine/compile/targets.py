"""Target canonicalization and name lookup."""

from __future__ import annotations

from dataclasses import replace
from typing import Iterable

from dform.config import ProjectConfig

from .models import Target


class AmbiguousReferenceError(ValueError):
    """A reference matches more than one action."""


def canonical_target_for(
    kind: str,
    name: str,
    project_config: ProjectConfig,
    schema: str | None = None,
    database: str | None = None,
) -> Target:
    """Compute an action's suffix-independent identity."""
    default_schema = (
        project_config.assertion_schema if kind == "assertion" else project_config.default_schema
    )
    return Target(
        database=database or project_config.default_database,
        schema=schema or default_schema,
        name=name,
    )


def runtime_target_for(canonical: Target, project_config: ProjectConfig, kind: str = "table") -> Target:
    """Apply the schema suffix. Declarations name external relations and are never suffixed."""
    suffix = project_config.schema_suffix
    if not suffix or kind == "declaration":
        return canonical
    return replace(canonical, schema=f"{canonical.schema}_{suffix}")


class NameTable:
    """Declared name -> canonical target lookup, built before any template is evaluated."""

    def __init__(self, targets: Iterable[Target] = ()) -> None:
        self._by_name: dict[str, list[Target]] = {}
        self._runtime: dict[Target, Target] = {}
        for target in targets:
            self.add(target)

    def add(self, target: Target, runtime: Target | None = None) -> None:
        entries = self._by_name.setdefault(target.name, [])
        if target not in entries:
            entries.append(target)
        self._runtime[target] = runtime if runtime is not None else target

    def runtime_for(self, target: Target) -> Target:
        """The runtime target registered for a canonical target (itself if none was)."""
        return self._runtime.get(target, target)

    def resolve(self, reference: str) -> Target | None:
        """Find the target a reference names: ``name``, ``schema.name`` or ``db.schema.name``.

        Returns None when nothing matches.

        Raises:
            AmbiguousReferenceError: several targets share the name and the
                reference does not disambiguate them.
        """
        name = reference.rsplit(".", 1)[-1]
        candidates = [t for t in self._by_name.get(name, []) if t.matches(reference)]
        if not candidates:
            return None
        if len(candidates) > 1:
            options = ", ".join(sorted(t.full_name for t in candidates))
            raise AmbiguousReferenceError(
                f"Ambiguous Action name: {reference}. Did you mean one of: {options}"
            )
        return candidates[0]

    def __contains__(self, target: object) -> bool:
        return target in self._runtime
