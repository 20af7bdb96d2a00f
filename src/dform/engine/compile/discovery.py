"""Definition discovery: find .sqlx files, split them, validate their config."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from dform.engine.sql_analysis import BlockSyntaxError, SqlxParts, parse_config_block, split_sqlx
from dform.engine.utils import validate_identifier

logger = logging.getLogger("dform.compile")

DEFINITIONS_DIR = "definitions"
DEFINITION_SUFFIX = ".sqlx"


class DefinitionError(ValueError):
    """A definition file cannot be loaded. Recorded against the file, never fatal."""


# --- Config block schema: one model per action type ---


class AssertionsConfig(BaseModel):
    """The ``assertions: {...}`` section of a table config."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    unique_key: list[str] = Field(default_factory=list, alias="uniqueKey")
    unique_keys: list[list[str]] = Field(default_factory=list, alias="uniqueKeys")
    non_null: list[str] = Field(default_factory=list, alias="nonNull")
    row_conditions: list[str] = Field(default_factory=list, alias="rowConditions")


class _BaseConfig(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    name: str | None = None
    schema_name: str | None = Field(default=None, alias="schema")
    database: str | None = None
    description: str = ""


class _ExecutableConfig(_BaseConfig):
    tags: list[str] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)
    disabled: bool = False
    hermetic: bool | None = None

    @field_validator("tags", "dependencies", mode="before")
    @classmethod
    def _single_string_to_list(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [value]
        return value


class TableConfig(_ExecutableConfig):
    type: Literal["table", "view", "incremental"]
    assertions: AssertionsConfig = Field(default_factory=AssertionsConfig)
    unique_key: list[str] = Field(default_factory=list, alias="uniqueKey")


class AssertionConfig(_ExecutableConfig):
    type: Literal["assertion"]


class OperationConfig(_ExecutableConfig):
    type: Literal["operations", "operation"]
    has_output: bool = Field(default=False, alias="hasOutput")


class DeclarationConfig(_BaseConfig):
    type: Literal["declaration"]


ActionConfig = Annotated[
    Union[TableConfig, AssertionConfig, OperationConfig, DeclarationConfig],
    Field(discriminator="type"),
]
_ACTION_CONFIG: TypeAdapter[Any] = TypeAdapter(ActionConfig)


@dataclass
class Definition:
    """A loaded definition file: validated config plus its unevaluated template parts."""

    path: Path
    file_name: str  # relative to the project root, "/"-separated
    config: TableConfig | AssertionConfig | OperationConfig | DeclarationConfig
    parts: SqlxParts

    @property
    def name(self) -> str:
        return self.config.name or self.path.stem

    @property
    def kind(self) -> str:
        if isinstance(self.config, TableConfig):
            return "table"
        if isinstance(self.config, AssertionConfig):
            return "assertion"
        if isinstance(self.config, OperationConfig):
            return "operation"
        return "declaration"


def discover_definitions(project_dir: Path) -> list[Path]:
    """Find all definition files under ``<project>/definitions``, sorted."""
    definitions_dir = project_dir / DEFINITIONS_DIR
    if not definitions_dir.exists():
        return []
    return sorted(p for p in definitions_dir.rglob(f"*{DEFINITION_SUFFIX}") if p.is_file())


def relative_file_name(path: Path, project_dir: Path) -> str:
    return path.relative_to(project_dir).as_posix()


def _format_config_error(error: ValidationError) -> str:
    problems = []
    for err in error.errors():
        loc = ".".join(str(part) for part in err["loc"])
        if err["type"] == "union_tag_invalid":
            problems.append(
                "unknown action type; expected one of table, view, incremental, "
                "assertion, operations, declaration"
            )
        elif err["type"] == "union_tag_not_found":
            problems.append("config is missing 'type'")
        else:
            problems.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return "Invalid config: " + "; ".join(problems)


def parse_action_config(raw: dict[str, Any]) -> TableConfig | AssertionConfig | OperationConfig | DeclarationConfig:
    """Validate a raw config mapping into its typed variant."""
    try:
        return _ACTION_CONFIG.validate_python(raw)
    except ValidationError as e:
        raise DefinitionError(_format_config_error(e)) from e


def _warn_unknown_fields(file_name: str, config: BaseModel) -> None:
    extra = sorted(config.model_extra or {})
    if extra:
        logger.warning("%s: ignoring unknown config field(s): %s", file_name, ", ".join(extra))


def load_definition(path: Path, project_dir: Path) -> Definition:
    """Read and split one definition file.

    Raises:
        DefinitionError: the file is unreadable, has no or a malformed config
            block, or declares invalid identifiers.
    """
    file_name = relative_file_name(path, project_dir)
    try:
        text = path.read_text()
    except (OSError, UnicodeDecodeError) as e:
        raise DefinitionError(f"Could not read file: {e}") from e

    try:
        parts = split_sqlx(text)
        if parts.config is None:
            raise DefinitionError("Missing config block")
        raw_config = parse_config_block(parts.config)
    except BlockSyntaxError as e:
        raise DefinitionError(str(e)) from e

    config = parse_action_config(raw_config)
    _warn_unknown_fields(file_name, config)
    if isinstance(config, TableConfig):
        _warn_unknown_fields(file_name, config.assertions)

    if (parts.pre_operations or parts.post_operations) and not isinstance(config, TableConfig):
        raise DefinitionError("pre_operations and post_operations are only allowed on tables")
    if isinstance(config, DeclarationConfig) and parts.body.strip():
        raise DefinitionError("Declarations cannot have a query")

    definition = Definition(path=path, file_name=file_name, config=config, parts=parts)
    try:
        validate_identifier(definition.name, "action name")
        if config.schema_name:
            validate_identifier(config.schema_name, "schema")
    except ValueError as e:
        raise DefinitionError(str(e)) from e
    return definition
