"""Project settings: workflow_settings.yaml / dataform.json parsing and CLI overrides."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger("dform.config")

WORKFLOW_SETTINGS_FILE = "workflow_settings.yaml"
LEGACY_SETTINGS_FILE = "dataform.json"
PACKAGE_MANIFEST_FILE = "package.json"
CORE_PACKAGE = "@dataform/core"

# Legacy package-manager artifacts that conflict with a pinned core version
NPM_ARTIFACTS = ("package.json", "package-lock.json", "node_modules")
# An npm dependency spec naming exactly one version, e.g. "3.0.33" or "=v3.0.33"
_EXACT_VERSION_RE = re.compile(r"^=?v?(\d+\.\d+\.\d+(?:[-+][0-9A-Za-z.+-]+)?)$")

DEFAULT_SCHEMA = "dataform"
DEFAULT_ASSERTION_SCHEMA = "dataform_assertions"
SUPPORTED_WAREHOUSES = frozenset({"bigquery"})

CORE_VERSION_REQUIRED = (
    "dataformCoreVersion must be specified either in workflow_settings.yaml or via a package.json"
)
CORE_NOT_INSTALLED = (
    "Could not find a recent installed version of @dataform/core in the project. Check that "
    "either `dataformCoreVersion` is specified in `workflow_settings.yaml`, or "
    "`@dataform/core` is specified in `package.json`. If using `package.json`, then run "
    "`dataform install`."
)
INSTALL_NOT_NEEDED = (
    "No installation is needed when using workflow_settings.yaml, as packages are installed at "
    "runtime."
)


class SettingsError(Exception):
    """Project settings could not be resolved. Fatal: nothing is compiled."""


class IcebergConfig(BaseModel):
    """Storage-backend defaults for Iceberg tables."""
    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)

    bucket_name: str | None = Field(default=None, alias="bucketName")
    table_folder_root: str | None = Field(default=None, alias="tableFolderRoot")
    table_folder_subpath: str | None = Field(default=None, alias="tableFolderSubpath")

    def to_dict(self) -> dict[str, str]:
        return self.model_dump(by_alias=True, exclude_none=True)


class WorkflowSettings(BaseModel):
    """Contents of workflow_settings.yaml."""
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    dataform_core_version: str | None = Field(default=None, alias="dataformCoreVersion")
    default_project: str = Field(default="", alias="defaultProject")
    default_location: str = Field(default="", alias="defaultLocation")
    default_dataset: str = Field(default=DEFAULT_SCHEMA, alias="defaultDataset")
    default_assertion_dataset: str = Field(default=DEFAULT_ASSERTION_SCHEMA, alias="defaultAssertionDataset")
    dataset_suffix: str | None = Field(default=None, alias="datasetSuffix")
    vars: dict[str, str] = Field(default_factory=dict)
    disable_assertions: bool = Field(default=False, alias="disableAssertions")
    default_iceberg_config: IcebergConfig | None = Field(default=None, alias="defaultIcebergConfig")

    def to_project_config(self) -> ProjectConfig:
        return ProjectConfig(
            default_database=self.default_project,
            default_schema=self.default_dataset,
            assertion_schema=self.default_assertion_dataset,
            default_location=self.default_location,
            schema_suffix=self.dataset_suffix or None,
            vars=dict(self.vars),
            disable_assertions=self.disable_assertions,
            default_iceberg_config=self.default_iceberg_config,
        )


class LegacySettings(BaseModel):
    """Contents of a legacy dataform.json."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    warehouse: str = "bigquery"
    default_database: str = Field(default="", alias="defaultDatabase")
    default_schema: str = Field(default=DEFAULT_SCHEMA, alias="defaultSchema")
    assertion_schema: str = Field(default=DEFAULT_ASSERTION_SCHEMA, alias="assertionSchema")
    default_location: str = Field(default="", alias="defaultLocation")
    schema_suffix: str | None = Field(default=None, alias="schemaSuffix")
    vars: dict[str, str] = Field(default_factory=dict)
    disable_assertions: bool = Field(default=False, alias="disableAssertions")

    def to_project_config(self) -> ProjectConfig:
        return ProjectConfig(
            warehouse=self.warehouse,
            default_database=self.default_database,
            default_schema=self.default_schema,
            assertion_schema=self.assertion_schema,
            default_location=self.default_location,
            schema_suffix=self.schema_suffix or None,
            vars=dict(self.vars),
            disable_assertions=self.disable_assertions,
        )


class ProjectConfig(BaseModel):
    """Authoritative project-wide settings for one compilation. Immutable."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    warehouse: str = "bigquery"
    default_database: str = Field(default="", alias="defaultDatabase")
    default_schema: str = Field(default=DEFAULT_SCHEMA, alias="defaultSchema")
    assertion_schema: str = Field(default=DEFAULT_ASSERTION_SCHEMA, alias="assertionSchema")
    default_location: str = Field(default="", alias="defaultLocation")
    schema_suffix: str | None = Field(default=None, alias="schemaSuffix")
    vars: dict[str, str] = Field(default_factory=dict)
    disable_assertions: bool = Field(default=False, alias="disableAssertions")
    default_iceberg_config: IcebergConfig | None = Field(default=None, alias="defaultIcebergConfig")

    def to_dict(self) -> dict[str, Any]:
        """Serialize with camelCase keys. Empty and unset fields are omitted."""
        out: dict[str, Any] = {"warehouse": self.warehouse}
        if self.default_schema:
            out["defaultSchema"] = self.default_schema
        if self.assertion_schema:
            out["assertionSchema"] = self.assertion_schema
        if self.default_database:
            out["defaultDatabase"] = self.default_database
        if self.default_location:
            out["defaultLocation"] = self.default_location
        if self.vars:
            out["vars"] = dict(self.vars)
        if self.schema_suffix:
            out["schemaSuffix"] = self.schema_suffix
        if self.disable_assertions:
            out["disableAssertions"] = True
        if self.default_iceberg_config is not None:
            iceberg = self.default_iceberg_config.to_dict()
            if iceberg:
                out["defaultIcebergConfig"] = iceberg
        return out


class SettingsOverrides(BaseModel):
    """Values supplied on the command line. ``None`` means "not given"."""
    model_config = ConfigDict(extra="forbid")

    vars: dict[str, str] = Field(default_factory=dict)
    schema_suffix: str | None = None
    default_location: str | None = None
    disable_assertions: bool = False


class Project(BaseModel):
    """A resolved project: where it lives, its settings, and the core version it pins."""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    project_dir: Path
    config: ProjectConfig
    core_version: str


def _format_validation_error(path: Path, error: ValidationError) -> str:
    problems = []
    for err in error.errors():
        loc = ".".join(str(part) for part in err["loc"]) or "<root>"
        if err["type"] == "extra_forbidden":
            problems.append(f"unknown setting '{loc}'")
        elif err["loc"] and err["loc"][0] == "vars":
            problems.append(
                f"custom variable '{loc}' must be a string"
            )
        else:
            problems.append(f"{loc}: {err['msg']}")
    return f"Invalid settings in {path.name}: " + "; ".join(problems)


def _read_mapping(path: Path) -> dict[str, Any]:
    """Read a YAML (or JSON, which YAML accepts) mapping from disk."""
    try:
        raw = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as e:
        raise SettingsError(f"Could not parse {path.name}: {e}") from e
    if not isinstance(raw, dict):
        raise SettingsError(f"{path.name} must contain a mapping, got {type(raw).__name__}")
    return raw


def read_workflow_settings(path: Path) -> WorkflowSettings:
    raw = _read_mapping(path)
    try:
        return WorkflowSettings.model_validate(raw)
    except ValidationError as e:
        raise SettingsError(_format_validation_error(path, e)) from e


def _read_legacy_settings(path: Path) -> ProjectConfig:
    try:
        raw = json.loads(path.read_text() or "{}")
    except json.JSONDecodeError as e:
        raise SettingsError(f"Could not parse {path.name}: {e}") from e
    try:
        legacy = LegacySettings.model_validate(raw)
    except ValidationError as e:
        raise SettingsError(_format_validation_error(path, e)) from e
    if legacy.warehouse not in SUPPORTED_WAREHOUSES:
        raise SettingsError(
            f"Unsupported warehouse '{legacy.warehouse}' in {path.name}; "
            f"supported: {', '.join(sorted(SUPPORTED_WAREHOUSES))}"
        )
    return legacy.to_project_config()


def installed_core_version(project_dir: Path) -> str:
    """Find the core version of a package.json-managed project.

    The manifest must declare the core package and an installed copy must exist
    under node_modules/. When the manifest pins an exact version, the installed
    copy must be that version.
    """
    manifest_path = project_dir / PACKAGE_MANIFEST_FILE
    if not manifest_path.exists():
        raise SettingsError(CORE_VERSION_REQUIRED)
    try:
        manifest = json.loads(manifest_path.read_text() or "{}")
    except json.JSONDecodeError as e:
        raise SettingsError(f"Could not parse {manifest_path}: {e}") from e

    declared = {
        **(manifest.get("devDependencies") or {}),
        **(manifest.get("dependencies") or {}),
    }
    if CORE_PACKAGE not in declared:
        raise SettingsError(CORE_NOT_INSTALLED)

    installed_manifest = project_dir / "node_modules" / CORE_PACKAGE / PACKAGE_MANIFEST_FILE
    if not installed_manifest.exists():
        raise SettingsError(CORE_NOT_INSTALLED)
    try:
        version = json.loads(installed_manifest.read_text()).get("version")
    except json.JSONDecodeError as e:
        raise SettingsError(f"Could not parse {installed_manifest}: {e}") from e
    if not version:
        raise SettingsError(CORE_NOT_INSTALLED)
    pinned = _EXACT_VERSION_RE.match(str(declared[CORE_PACKAGE]).strip())
    if pinned and pinned.group(1) != str(version):
        raise SettingsError(
            f"Installed {CORE_PACKAGE} {version} does not match version {pinned.group(1)} "
            f"declared in {PACKAGE_MANIFEST_FILE}; run `npm install` in the project directory."
        )
    return str(version)


def apply_overrides(config: ProjectConfig, overrides: SettingsOverrides) -> ProjectConfig:
    """Layer CLI overrides on top of file-based settings.

    Only the fields an override names are replaced; vars merge key by key and
    disable_assertions is OR-ed with the settings value.
    """
    update: dict[str, Any] = {}
    if overrides.vars:
        update["vars"] = {**config.vars, **overrides.vars}
    if overrides.schema_suffix:
        update["schema_suffix"] = overrides.schema_suffix
    if overrides.default_location:
        update["default_location"] = overrides.default_location
    if overrides.disable_assertions:
        update["disable_assertions"] = True
    if not update:
        return config
    return config.model_copy(update=update)


def load_project(
    project_dir: Path | None = None,
    overrides: SettingsOverrides | None = None,
) -> Project:
    """Resolve the project's settings.

    Args:
        project_dir: Path to the project directory (default: cwd).
        overrides: CLI-supplied overrides, applied last.

    Raises:
        SettingsError: on conflicting or missing core-version sources, or
            malformed settings files.
    """
    project_dir = Path(project_dir) if project_dir else Path.cwd()
    settings_path = project_dir / WORKFLOW_SETTINGS_FILE
    legacy_path = project_dir / LEGACY_SETTINGS_FILE

    pinned_version: str | None = None
    if settings_path.exists():
        settings = read_workflow_settings(settings_path)
        config = settings.to_project_config()
        pinned_version = settings.dataform_core_version
    elif legacy_path.exists():
        config = _read_legacy_settings(legacy_path)
    else:
        config = ProjectConfig()

    if pinned_version:
        for artifact in NPM_ARTIFACTS:
            artifact_path = project_dir / artifact
            if artifact_path.exists():
                raise SettingsError(f"'{artifact_path}' unexpected; remove it and try again")
        core_version = pinned_version
    else:
        core_version = installed_core_version(project_dir)

    if overrides is not None:
        config = apply_overrides(config, overrides)

    logger.debug(
        "Resolved settings for %s (core %s, suffix=%s)",
        project_dir, core_version, config.schema_suffix,
    )
    return Project(project_dir=project_dir, config=config, core_version=core_version)
