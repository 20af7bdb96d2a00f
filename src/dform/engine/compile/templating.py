"""Template compilation: evaluate ``${...}`` placeholders and build actions.

Placeholders are rendered by a sandboxed Jinja environment whose only names
are the ones listed here. Statement blocks are rejected.

    ${vars.name}                          project variable
    ${dataform.projectConfig.vars.name}   same, long form
    ${dataform.projectConfig.defaultSchema}
    ${ref("name")}  ${ref("schema", "name")}  ${ref(schema="s", name="n")}
    ${resolve("name")}                    like ref, without a dependency
    ${self()}  ${name()}  ${schema()}  ${database()}
    ${when(incremental(), "where ts > 0", "")}

``ref`` registers a dependency on the referenced action's canonical target
and renders its runtime (suffixed) name. Unknown names render a placeholder
target and still register the dependency, so the graph builder can report
it as unresolved.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator

import jinja2
from jinja2 import StrictUndefined, Undefined
from jinja2.ext import Extension
from jinja2.lexer import Token, TokenStream
from jinja2.sandbox import SandboxedEnvironment
from jinja2.utils import missing

from dform.config import ProjectConfig
from dform.engine.sql_analysis import (
    extract_table_refs,
    quote_target,
    split_statements,
)

from .discovery import (
    AssertionConfig,
    Definition,
    DefinitionError,
    OperationConfig,
    TableConfig,
)
from .models import (
    HERMETIC,
    NON_HERMETIC,
    Action,
    Assertion,
    AssertionSpec,
    Declaration,
    Operation,
    Table,
    Target,
)
from .targets import AmbiguousReferenceError, NameTable, canonical_target_for, runtime_target_for


class TemplateError(DefinitionError):
    """A placeholder could not be evaluated."""


_PROJECT_CONFIG_FIELDS = {
    "warehouse": "warehouse",
    "defaultDatabase": "default_database",
    "defaultSchema": "default_schema",
    "assertionSchema": "assertion_schema",
    "defaultLocation": "default_location",
    "schemaSuffix": "schema_suffix",
}

# Jinja binds `self` to the template itself; templates see this name instead
_SELF_ALIAS = "_dform_self"
_REFERENCE_KEYS = ("database", "schema", "name")


# --- Jinja environment ---


class _UnknownName(StrictUndefined):
    """Fails on use with the name that could not be found."""

    __slots__ = ()

    def __init__(self, hint=None, obj=missing, name=None, exc=jinja2.UndefinedError):
        if hint is None:
            hint = f"Unknown identifier: {name}"
        super().__init__(hint, obj, name, exc)


class _PlaceholderRules(Extension):
    """Rejects statement blocks and points ``self`` at the action's own target."""

    def filter_stream(self, stream: TokenStream) -> Iterator[Token]:
        for token in stream:
            if token.type == "block_begin":
                raise jinja2.TemplateSyntaxError(
                    "Statement blocks are not supported", token.lineno, stream.name, stream.filename,
                )
            if token.type == "name" and token.value == "self":
                token = Token(token.lineno, "name", _SELF_ALIAS)
            yield token


def _finalize(value: Any) -> str:
    if isinstance(value, Undefined):
        str(value)  # raises UndefinedError naming the missing identifier
    if not isinstance(value, str):
        raise TemplateError(f"Placeholder must evaluate to a string, got {type(value).__name__}")
    return value


_ENVIRONMENT = SandboxedEnvironment(
    variable_start_string="${",
    variable_end_string="}",
    block_start_string="${%",
    block_end_string="%}",
    comment_start_string="${#",
    comment_end_string="#}",
    undefined=_UnknownName,
    finalize=_finalize,
    autoescape=False,
    keep_trailing_newline=True,
    extensions=[_PlaceholderRules],
)
_ENVIRONMENT.globals.clear()


class _Variables:
    """Project variables. Unknown names fail the render."""

    def __init__(self, values: dict[str, str]) -> None:
        self._values = dict(values)

    def __getitem__(self, key: str) -> str:
        if key not in self._values:
            raise TemplateError(f"Unknown variable: {key}")
        return self._values[key]


# --- Evaluation ---


def _reference(function: str, args: tuple[Any, ...], kwargs: dict[str, Any]) -> str:
    """Join ``ref``/``resolve`` arguments into a dotted reference."""
    if len(args) == 1 and isinstance(args[0], dict) and not kwargs:
        args, kwargs = (), args[0]
    if kwargs:
        if args:
            raise TemplateError(f"{function}() takes positional or keyword arguments, not both")
        unknown = sorted(set(kwargs) - set(_REFERENCE_KEYS))
        if unknown:
            raise TemplateError(f"{function}() got unexpected argument(s): {', '.join(unknown)}")
        if "name" not in kwargs:
            raise TemplateError(f"{function}() needs a 'name'")
        return ".".join(str(kwargs[key]) for key in _REFERENCE_KEYS if kwargs.get(key))
    if not args or len(args) > 3 or not all(isinstance(a, str) for a in args):
        raise TemplateError(f"{function}() takes one to three string arguments")
    return ".".join(args)


def _when(condition: Any, then: str, otherwise: str = "") -> str:
    return then if condition else otherwise


@dataclass
class TemplateContext:
    """Everything a placeholder may see while one template is rendered."""

    project_config: ProjectConfig
    name_table: NameTable
    self_target: Target
    incremental: bool = False
    dependencies: list[Target] = field(default_factory=list)

    def add_dependency(self, target: Target) -> None:
        if target not in self.dependencies:
            self.dependencies.append(target)

    def lookup(self, reference: str, schema: str | None = None) -> Target:
        """Resolve a reference, falling back to a placeholder for unknown names."""
        try:
            found = self.name_table.resolve(reference)
        except AmbiguousReferenceError as e:
            raise TemplateError(str(e)) from e
        if found is not None:
            return found
        parts = reference.split(".")
        database = parts[-3] if len(parts) >= 3 else None
        schema = parts[-2] if len(parts) >= 2 else schema
        return canonical_target_for("table", parts[-1], self.project_config, schema, database)

    def runtime_target(self, canonical: Target) -> Target:
        if canonical in self.name_table:
            return self.name_table.runtime_for(canonical)
        return runtime_target_for(canonical, self.project_config)

    def render_target(self, canonical: Target) -> str:
        runtime = self.runtime_target(canonical)
        return quote_target(runtime.database, runtime.schema, runtime.name)

    def ref(self, *args: Any, **kwargs: Any) -> str:
        target = self.lookup(_reference("ref", args, kwargs))
        self.add_dependency(target)
        return self.render_target(target)

    def resolve(self, *args: Any, **kwargs: Any) -> str:
        return self.render_target(self.lookup(_reference("resolve", args, kwargs)))

    def namespace(self) -> dict[str, Any]:
        """The closed set of names a template can use."""
        config = self.project_config
        variables = _Variables(config.vars)
        project = {key: getattr(config, attr) or "" for key, attr in _PROJECT_CONFIG_FIELDS.items()}
        project["vars"] = variables
        own = self.self_target
        return {
            "ref": self.ref,
            "resolve": self.resolve,
            _SELF_ALIAS: lambda: quote_target(own.database, own.schema, own.name),
            "name": lambda: own.name,
            "schema": lambda: own.schema,
            "database": lambda: own.database,
            "incremental": lambda: self.incremental,
            "when": _when,
            "vars": variables,
            "dataform": {"projectConfig": project},
        }


def compile_template(template: str, ctx: TemplateContext) -> str:
    """Substitute every ``${...}`` placeholder in ``template``.

    Raises:
        TemplateError: a placeholder is malformed, names something unknown, or
            does not evaluate to a string.
    """
    if "${" not in template:
        return template
    try:
        return _ENVIRONMENT.from_string(template).render(ctx.namespace())
    except jinja2.TemplateSyntaxError as e:
        raise TemplateError(f"Invalid placeholder syntax on line {e.lineno}: {e.message}") from e
    except jinja2.TemplateError as e:
        raise TemplateError(str(e)) from e
    except TypeError as e:
        raise TemplateError(f"Invalid function call in placeholder: {e}") from e


# --- Definition -> action ---


def _hermeticity(flag: bool | None, default: str | None) -> str | None:
    if flag is None:
        return default
    return HERMETIC if flag else NON_HERMETIC


def _check_hermetic(statements: list[str], ctx: TemplateContext) -> None:
    """A hermetic action may only read itself and the relations it declares as dependencies."""
    allowed = set()
    for runtime in [ctx.self_target] + [ctx.runtime_target(dep) for dep in ctx.dependencies]:
        allowed.add(runtime.full_name.lower())
        allowed.add(f"{runtime.schema}.{runtime.name}".lower())
    undeclared: list[str] = []
    for statement in statements:
        for ref in extract_table_refs(statement):
            if ref not in allowed and ref not in undeclared:
                undeclared.append(ref)
    if undeclared:
        raise TemplateError(
            "Hermetic action reads undeclared relation(s): " + ", ".join(undeclared)
        )


def _assertion_spec(config: TableConfig) -> AssertionSpec:
    assertions = config.assertions
    if assertions.unique_key and assertions.unique_keys:
        raise TemplateError("Specify at most one of 'uniqueKey' and 'uniqueKeys'")
    unique_keys = [assertions.unique_key] if assertions.unique_key else assertions.unique_keys
    return AssertionSpec(
        unique_keys=tuple(tuple(cols) for cols in unique_keys if cols),
        non_null=tuple(assertions.non_null),
        row_conditions=tuple(assertions.row_conditions),
    )


def compile_definition(
    definition: Definition,
    project_config: ProjectConfig,
    name_table: NameTable,
) -> Action:
    """Evaluate one definition's templates into an action.

    Raises:
        TemplateError: a placeholder is invalid or a hermetic action reads an
            undeclared relation.
    """
    config = definition.config
    kind = definition.kind
    canonical = canonical_target_for(
        kind, definition.name, project_config, config.schema_name, config.database,
    )
    target = runtime_target_for(canonical, project_config, kind)

    if kind == "declaration":
        return Declaration(
            file_name=definition.file_name,
            target=target,
            canonical_target=canonical,
            description=config.description,
        )

    ctx = TemplateContext(project_config=project_config, name_table=name_table, self_target=target)
    for reference in config.dependencies:
        ctx.add_dependency(ctx.lookup(reference))

    body = compile_template(definition.parts.body, ctx)
    common: dict[str, Any] = dict(
        file_name=definition.file_name,
        target=target,
        canonical_target=canonical,
        tags=tuple(config.tags),
        disabled=config.disabled,
        description=config.description,
    )

    if isinstance(config, TableConfig):
        pre_ops = tuple(compile_template(op, ctx) for op in definition.parts.pre_operations)
        post_ops = tuple(compile_template(op, ctx) for op in definition.parts.post_operations)
        statements = [*pre_ops, body, *post_ops]
        incremental_fields: dict[str, Any] = {}
        if config.type == "incremental":
            inc_ctx = TemplateContext(
                project_config=project_config,
                name_table=name_table,
                self_target=target,
                incremental=True,
                dependencies=ctx.dependencies,
            )
            incremental_fields = dict(
                incremental_query=compile_template(definition.parts.body, inc_ctx),
                unique_key=tuple(config.unique_key),
                incremental_pre_ops=tuple(compile_template(op, inc_ctx) for op in definition.parts.pre_operations),
                incremental_post_ops=tuple(compile_template(op, inc_ctx) for op in definition.parts.post_operations),
            )
            statements += [
                *incremental_fields["incremental_pre_ops"],
                incremental_fields["incremental_query"],
                *incremental_fields["incremental_post_ops"],
            ]
        hermeticity = _hermeticity(config.hermetic, NON_HERMETIC)
        if hermeticity == HERMETIC:
            _check_hermetic(statements, ctx)
        return Table(
            type=config.type,
            query=body,
            pre_ops=pre_ops,
            post_ops=post_ops,
            dependency_targets=tuple(ctx.dependencies),
            hermeticity=hermeticity,
            assertion_spec=_assertion_spec(config),
            **incremental_fields,
            **common,
        )

    if isinstance(config, AssertionConfig):
        hermeticity = _hermeticity(config.hermetic, None)
        if hermeticity == HERMETIC:
            _check_hermetic([body], ctx)
        return Assertion(
            query=body,
            dependency_targets=tuple(ctx.dependencies),
            hermeticity=hermeticity,
            **common,
        )

    if not isinstance(config, OperationConfig):
        raise TemplateError(f"Unsupported action type: {kind}")
    queries = tuple(split_statements(body))
    if not queries:
        raise TemplateError("Operations must contain at least one statement")
    hermeticity = _hermeticity(config.hermetic, NON_HERMETIC)
    if hermeticity == HERMETIC:
        _check_hermetic(list(queries), ctx)
    return Operation(
        queries=queries,
        dependency_targets=tuple(ctx.dependencies),
        hermeticity=hermeticity,
        has_output=config.has_output,
        **common,
    )


def build_name_table(definitions: list[Definition], project_config: ProjectConfig) -> NameTable:
    """First pass: every declared name and its targets, before any body is rendered."""
    table = NameTable()
    for definition in definitions:
        config = definition.config
        canonical = canonical_target_for(
            definition.kind, definition.name, project_config, config.schema_name, config.database,
        )
        table.add(canonical, runtime_target_for(canonical, project_config, definition.kind))
    return table
