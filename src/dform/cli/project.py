"""Project management commands: init, install."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any, Optional

import typer
import yaml

from dform.cli import _fail, _load_project, _resolve_project, app, console


@app.command()
def init(
    project_dir: Annotated[Path, typer.Argument(help="Directory to create the project in")],
    default_database_arg: Annotated[Optional[str], typer.Argument(metavar="DEFAULT_DATABASE", help="Default warehouse project")] = None,
    default_location_arg: Annotated[Optional[str], typer.Argument(metavar="DEFAULT_LOCATION", help="Default warehouse location")] = None,
    default_database: Annotated[Optional[str], typer.Option("--default-database", help="Default warehouse project")] = None,
    default_location: Annotated[Optional[str], typer.Option("--default-location", help="Default warehouse location")] = None,
    iceberg_bucket_name: Annotated[Optional[str], typer.Option("--iceberg-bucket-name", help="Default Iceberg bucket")] = None,
    iceberg_table_folder_root: Annotated[Optional[str], typer.Option("--iceberg-table-folder-root", help="Default Iceberg table folder root")] = None,
    iceberg_table_folder_subpath: Annotated[Optional[str], typer.Option("--iceberg-table-folder-subpath", help="Default Iceberg table folder subpath")] = None,
) -> None:
    """Scaffold a new project with a pinned core version."""
    from dform import __version__
    from dform.config import (
        DEFAULT_ASSERTION_SCHEMA,
        DEFAULT_SCHEMA,
        WORKFLOW_SETTINGS_FILE,
        IcebergConfig,
    )
    from dform.templates import GITIGNORE_TEMPLATE, PROJECT_DIRS

    settings_path = project_dir / WORKFLOW_SETTINGS_FILE
    if settings_path.exists():
        _fail(f"{settings_path} already exists")

    settings: dict[str, Any] = {"dataformCoreVersion": __version__}
    database = default_database or default_database_arg
    location = default_location or default_location_arg
    if database:
        settings["defaultProject"] = database
    if location:
        settings["defaultLocation"] = location
    settings["defaultDataset"] = DEFAULT_SCHEMA
    settings["defaultAssertionDataset"] = DEFAULT_ASSERTION_SCHEMA
    iceberg = IcebergConfig(
        bucket_name=iceberg_bucket_name or None,
        table_folder_root=iceberg_table_folder_root or None,
        table_folder_subpath=iceberg_table_folder_subpath or None,
    ).to_dict()
    if iceberg:
        settings["defaultIcebergConfig"] = iceberg

    project_dir.mkdir(parents=True, exist_ok=True)
    for d in PROJECT_DIRS:
        (project_dir / d).mkdir(parents=True, exist_ok=True)
    settings_path.write_text(yaml.safe_dump(settings, sort_keys=False, default_flow_style=False))
    gitignore = project_dir / ".gitignore"
    if not gitignore.exists():
        gitignore.write_text(GITIGNORE_TEMPLATE)

    console.print(f"[green]Project created at {project_dir}[/green]")
    console.print()
    console.print("Structure:")
    console.print(f"  {WORKFLOW_SETTINGS_FILE}")
    for d in PROJECT_DIRS:
        console.print(f"  {d}/")


@app.command()
def install(
    project_dir: Annotated[Optional[Path], typer.Argument(help="Project directory (default: current dir)")] = None,
) -> None:
    """Install project packages.

    Projects pinning a core version in workflow_settings.yaml need no
    installation; package.json projects are installed by their package manager.
    """
    from dform.config import (
        INSTALL_NOT_NEEDED,
        WORKFLOW_SETTINGS_FILE,
        SettingsError,
        read_workflow_settings,
    )

    project_dir = _resolve_project(project_dir)
    settings_path = project_dir / WORKFLOW_SETTINGS_FILE
    if settings_path.exists():
        try:
            pinned = read_workflow_settings(settings_path).dataform_core_version
        except SettingsError as e:
            _fail(str(e))
        if pinned:
            _fail(INSTALL_NOT_NEEDED)

    project = _load_project(project_dir)
    _fail(
        f"Packages for @dataform/core {project.core_version} are managed by the package "
        "manager; run `npm install` in the project directory."
    )
