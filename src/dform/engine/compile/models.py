"""Data classes for the project compiler."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, Union

from dform.config import ProjectConfig

HERMETIC = "HERMETIC"
NON_HERMETIC = "NON_HERMETIC"


@dataclass(frozen=True, order=True)
class Target:
    """A warehouse relation: ``database.schema.name``."""

    database: str
    schema: str
    name: str

    @property
    def full_name(self) -> str:
        return ".".join(part for part in (self.database, self.schema, self.name) if part)

    def matches(self, reference: str) -> bool:
        """True if ``reference`` is this target's name, ``schema.name`` or full name."""
        return reference in (self.name, f"{self.schema}.{self.name}", self.full_name)


@dataclass(frozen=True)
class AssertionSpec:
    """Declarative assertions attached to a table's config."""

    unique_keys: tuple[tuple[str, ...], ...] = ()
    non_null: tuple[str, ...] = ()
    row_conditions: tuple[str, ...] = ()

    def __bool__(self) -> bool:
        return bool(self.unique_keys or self.non_null or self.row_conditions)


@dataclass(frozen=True)
class Table:
    """A table, view or incremental table."""

    file_name: str
    type: str  # "table", "view" or "incremental"
    target: Target
    canonical_target: Target
    query: str
    dependency_targets: tuple[Target, ...] = ()
    tags: tuple[str, ...] = ()
    disabled: bool = False
    hermeticity: str = NON_HERMETIC
    description: str = ""
    incremental_query: str | None = None
    unique_key: tuple[str, ...] = ()
    pre_ops: tuple[str, ...] = ()
    post_ops: tuple[str, ...] = ()
    incremental_pre_ops: tuple[str, ...] = ()
    incremental_post_ops: tuple[str, ...] = ()
    assertion_spec: AssertionSpec = field(default_factory=AssertionSpec)

    @property
    def enum_type(self) -> str:
        return self.type.upper()


@dataclass(frozen=True)
class Assertion:
    """A query that must return zero rows. ``parent_action`` is set when synthesized."""

    file_name: str
    target: Target
    canonical_target: Target
    query: str
    dependency_targets: tuple[Target, ...] = ()
    tags: tuple[str, ...] = ()
    disabled: bool = False
    hermeticity: str | None = None  # None: planned as HERMETIC
    description: str = ""
    parent_action: Target | None = None


@dataclass(frozen=True)
class Operation:
    """Arbitrary statements run verbatim."""

    file_name: str
    target: Target
    canonical_target: Target
    queries: tuple[str, ...]
    dependency_targets: tuple[Target, ...] = ()
    tags: tuple[str, ...] = ()
    disabled: bool = False
    hermeticity: str = NON_HERMETIC
    description: str = ""
    has_output: bool = False


@dataclass(frozen=True)
class Declaration:
    """An external relation that actions may reference. Never executed."""

    file_name: str
    target: Target
    canonical_target: Target
    description: str = ""


Action = Union[Table, Assertion, Operation, Declaration]


def action_type(action: Action) -> str:
    if isinstance(action, Table):
        return "table"
    if isinstance(action, Assertion):
        return "assertion"
    if isinstance(action, Operation):
        return "operation"
    return "declaration"


@dataclass
class FileError:
    """A non-fatal compile error recorded against one definition file."""

    path: str
    message: str


@dataclass
class CompiledGraph:
    """Every compiled action plus the errors found while compiling them."""

    project_config: ProjectConfig
    core_version: str = ""
    tables: list[Table] = field(default_factory=list)
    assertions: list[Assertion] = field(default_factory=list)
    operations: list[Operation] = field(default_factory=list)
    declarations: list[Declaration] = field(default_factory=list)
    graph_errors: dict[str, list[str]] = field(default_factory=dict)

    def actions(self) -> Iterator[Action]:
        yield from self.tables
        yield from self.assertions
        yield from self.operations
        yield from self.declarations

    @property
    def targets(self) -> list[Target]:
        """All canonical targets, sorted by name, then schema, then database."""
        return sorted(
            (a.canonical_target for a in self.actions()),
            key=lambda t: (t.name, t.schema, t.database),
        )

    @property
    def has_errors(self) -> bool:
        return any(self.graph_errors.values())

    def add_error(self, path: str, message: str) -> None:
        messages = self.graph_errors.setdefault(path, [])
        if message not in messages:
            messages.append(message)
