"""Tests for concurrent project compilation."""

from __future__ import annotations

import textwrap
import threading
from pathlib import Path

import pytest

from dform.config import Project, ProjectConfig
from dform.engine.compile import (
    CompilationCancelled,
    Target,
    compile_project,
    compiled_graph_to_dict,
)


@pytest.fixture
def project_dir(tmp_path):
    """A small project: a declaration, a chain of tables and a table with assertions."""
    files = {
        "sources/events.sqlx": 'config { type: "declaration", schema: "raw" }\n',
        "staging/stg_events.sqlx": """
            config { type: "view", tags: ["staging"] }
            select * from ${ref("events")}
        """,
        "marts/daily.sqlx": """
            config { type: "table", assertions: { uniqueKey: ["day"], nonNull: ["day"] } }
            select day, count(*) as n from ${ref("stg_events")} group by day
        """,
        "marts/weekly.sqlx": """
            config { type: "table" }
            select * from ${ref("daily")}
        """,
    }
    for rel, body in files.items():
        path = tmp_path / "definitions" / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(body))
    return tmp_path


def _project(project_dir: Path, **config) -> Project:
    return Project(
        project_dir=project_dir,
        config=ProjectConfig(default_database="db", **config),
        core_version="3.0.0",
    )


class TestCompileProject:
    def test_compiles_whole_project(self, project_dir):
        graph = compile_project(_project(project_dir))
        assert not graph.has_errors
        assert [t.canonical_target.name for t in graph.tables] == ["daily", "weekly", "stg_events"]
        assert [a.canonical_target.name for a in graph.assertions] == [
            "dataform_daily_assertions_rowConditions",
            "dataform_daily_assertions_uniqueKey_0",
        ]
        assert [d.canonical_target for d in graph.declarations] == [Target("db", "raw", "events")]
        assert graph.core_version == "3.0.0"

    def test_result_independent_of_worker_count(self, project_dir):
        serial = compiled_graph_to_dict(compile_project(_project(project_dir), max_workers=1))
        parallel = compiled_graph_to_dict(compile_project(_project(project_dir), max_workers=8))
        assert serial == parallel

    def test_suffix_never_changes_canonical_targets(self, project_dir):
        plain = compile_project(_project(project_dir))
        suffixed = compile_project(_project(project_dir, schema_suffix="pr1"))
        assert plain.targets == suffixed.targets
        weekly = next(t for t in suffixed.tables if t.canonical_target.name == "weekly")
        assert weekly.target.schema == "dataform_pr1"
        assert "`db.dataform_pr1.daily`" in weekly.query

    def test_file_errors_do_not_stop_other_files(self, project_dir):
        (project_dir / "definitions" / "broken.sqlx").write_text("select 1")
        (project_dir / "definitions" / "bad_ref.sqlx").write_text(
            'config { type: "table" }\nselect ${vars.undefined_var}'
        )
        graph = compile_project(_project(project_dir))
        assert graph.graph_errors["definitions/broken.sqlx"] == ["Missing config block"]
        assert graph.graph_errors["definitions/bad_ref.sqlx"] == ["Unknown variable: undefined_var"]
        assert len(graph.tables) == 3

    def test_comments_and_js_strings_in_blocks(self, project_dir):
        (project_dir / "definitions" / "commented.sqlx").write_text(textwrap.dedent("""
            config {
              type: "table", // don't touch
              description: 'it\\'s documented',
            }
            pre_operations {
              -- don't drop anything
              set x = 1
            }
            select 1
        """))
        graph = compile_project(_project(project_dir))
        assert not graph.has_errors
        table = next(t for t in graph.tables if t.canonical_target.name == "commented")
        assert table.description == "it's documented"
        assert table.pre_ops == ("-- don't drop anything\n  set x = 1",)

    def test_unresolved_ref_recorded(self, project_dir):
        (project_dir / "definitions" / "orphan.sqlx").write_text(
            'config { type: "table" }\nselect * from ${ref("ghost")}'
        )
        graph = compile_project(_project(project_dir))
        assert graph.graph_errors["definitions/orphan.sqlx"] == [
            'Missing dependency detected: Action "db.dataform.orphan" depends on '
            '"db.dataform.ghost" which does not exist'
        ]

    def test_empty_project(self, tmp_path):
        graph = compile_project(_project(tmp_path))
        assert graph.targets == []
        assert not graph.has_errors


class TestCancellation:
    def test_cancelled_before_start(self, project_dir):
        event = threading.Event()
        event.set()
        with pytest.raises(CompilationCancelled):
            compile_project(_project(project_dir), cancel_event=event)

    def test_cancelled_mid_compile(self, project_dir, monkeypatch):
        import dform.engine.compile.orchestration as orchestration

        event = threading.Event()
        original = orchestration.load_definition

        def load_then_cancel(path, root):
            event.set()
            return original(path, root)

        monkeypatch.setattr(orchestration, "load_definition", load_then_cancel)
        with pytest.raises(CompilationCancelled):
            compile_project(_project(project_dir), cancel_event=event)
