"""Tests for the template evaluator and definition compilation."""

from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from dform.config import ProjectConfig
from dform.engine.compile import (
    HERMETIC,
    NON_HERMETIC,
    Assertion,
    Declaration,
    NameTable,
    Operation,
    Table,
    Target,
    TemplateContext,
    TemplateError,
    build_name_table,
    compile_definition,
    compile_template,
    load_definition,
)

CONFIG = ProjectConfig(default_database="db", vars={"env": "prod", "limit": "10"})
SUFFIXED = ProjectConfig(default_database="db", schema_suffix="pr1")


def _ctx(config: ProjectConfig = CONFIG, names: NameTable | None = None, incremental: bool = False) -> TemplateContext:
    return TemplateContext(
        project_config=config,
        name_table=names or NameTable(),
        self_target=Target("db", "dataform", "me"),
        incremental=incremental,
    )


def _compile(tmp_path: Path, files: dict[str, str], config: ProjectConfig = CONFIG) -> dict[str, object]:
    definitions = []
    for rel, body in files.items():
        path = tmp_path / "definitions" / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(body))
        definitions.append(load_definition(path, tmp_path))
    names = build_name_table(definitions, config)
    return {d.name: compile_definition(d, config, names) for d in definitions}


# ===========================================================================
# compile_template
# ===========================================================================


class TestPlaceholders:
    def test_plain_text_untouched(self):
        assert compile_template("select 1\n", _ctx()) == "select 1\n"

    def test_vars(self):
        assert compile_template("select 1 as ${vars.env}", _ctx()) == "select 1 as prod"

    def test_project_config_vars(self):
        sql = "limit ${dataform.projectConfig.vars.limit}"
        assert compile_template(sql, _ctx()) == "limit 10"

    def test_project_config_field(self):
        assert compile_template("${dataform.projectConfig.defaultSchema}", _ctx()) == "dataform"

    def test_whitespace_inside_placeholder(self):
        assert compile_template("${ vars.env }", _ctx()) == "prod"

    def test_self_and_parts(self):
        ctx = _ctx()
        assert compile_template("${self()}", ctx) == "`db.dataform.me`"
        assert compile_template("${database()}.${schema()}.${name()}", ctx) == "db.dataform.me"

    def test_when(self):
        sql = 'select * from t ${when(incremental(), "where ts > 0", "-- full")}'
        assert compile_template(sql, _ctx()) == "select * from t -- full"
        assert compile_template(sql, _ctx(incremental=True)) == "select * from t where ts > 0"

    def test_when_without_else(self):
        assert compile_template('x${when(false, "y")}', _ctx()) == "x"

    def test_braces_inside_string_literal(self):
        assert compile_template('${when(true, "{a}")}', _ctx()) == "{a}"

    def test_other_brace_syntax_left_alone(self):
        sql = "select '{% raw %}', '{{ x }}', '{# y #}' from ${ref(\"t\")}\n"
        expected = "select '{% raw %}', '{{ x }}', '{# y #}' from `db.dataform.t`\n"
        assert compile_template(sql, _ctx()) == expected

    def test_trailing_newlines_kept(self):
        assert compile_template("select ${vars.env}\n\n", _ctx()) == "select prod\n\n"


class TestRefs:
    def test_ref_registers_canonical_dependency(self):
        names = NameTable()
        canonical = Target("db", "dataform", "orders")
        names.add(canonical, Target("db", "dataform_pr1", "orders"))
        ctx = _ctx(SUFFIXED, names)
        assert compile_template('from ${ref("orders")}', ctx) == "from `db.dataform_pr1.orders`"
        assert ctx.dependencies == [canonical]

    def test_ref_schema_and_name(self):
        names = NameTable([Target("db", "sales", "orders"), Target("db", "raw", "orders")])
        ctx = _ctx(names=names)
        assert compile_template('${ref("sales", "orders")}', ctx) == "`db.sales.orders`"
        assert ctx.dependencies == [Target("db", "sales", "orders")]

    def test_ref_keyword_form(self):
        names = NameTable([Target("db", "sales", "orders")])
        ctx = _ctx(names=names)
        assert compile_template('${ref(schema="sales", name="orders")}', ctx) == "`db.sales.orders`"
        assert compile_template('${ref({"schema": "sales", "name": "orders"})}', ctx) == "`db.sales.orders`"

    def test_ref_keyword_form_checks_arguments(self):
        with pytest.raises(TemplateError, match="needs a 'name'"):
            compile_template('${ref(schema="sales")}', _ctx())
        with pytest.raises(TemplateError, match="unexpected argument"):
            compile_template('${ref(name="a", table="b")}', _ctx())

    def test_resolve_adds_no_dependency(self):
        names = NameTable([Target("db", "dataform", "orders")])
        ctx = _ctx(names=names)
        assert compile_template('${resolve("orders")}', ctx) == "`db.dataform.orders`"
        assert ctx.dependencies == []

    def test_repeated_ref_recorded_once(self):
        names = NameTable([Target("db", "dataform", "orders")])
        ctx = _ctx(names=names)
        compile_template('${ref("orders")} join ${ref("orders")}', ctx)
        assert ctx.dependencies == [Target("db", "dataform", "orders")]

    def test_unknown_ref_is_placeholder(self):
        ctx = _ctx(SUFFIXED)
        assert compile_template('${ref("missing")}', ctx) == "`db.dataform_pr1.missing`"
        assert ctx.dependencies == [Target("db", "dataform", "missing")]

    def test_ambiguous_ref(self):
        names = NameTable([Target("db", "sales", "orders"), Target("db", "raw", "orders")])
        with pytest.raises(TemplateError, match="Ambiguous Action name: orders"):
            compile_template('${ref("orders")}', _ctx(names=names))


class TestPlaceholderErrors:
    @pytest.mark.parametrize("template, message", [
        ("${vars.nope}", "Unknown variable: nope"),
        ("${process.env.HOME}", "Unknown identifier: process"),
        ("${eval(\"1\")}", "Unknown identifier: eval"),
        ("${dataform.projectConfig.bogus}", "Unknown identifier: bogus"),
        ("${1 + 2}", "must evaluate to a string"),
        ("${incremental()}", "must evaluate to a string"),
        ("${ref()}", "takes one to three string arguments"),
        ("${self(1)}", "Invalid function call"),
        ("${self.__globals__}", "unsafe"),
        ("${vars._values}", "unsafe"),
        ("select ${vars.env", "Invalid placeholder syntax"),
        ('${ref("a",}', "Invalid placeholder syntax"),
        ("${% if true %}x${% endif %}", "Statement blocks are not supported"),
    ])
    def test_rejected(self, template, message):
        with pytest.raises(TemplateError, match=message):
            compile_template(template, _ctx())


# ===========================================================================
# compile_definition
# ===========================================================================


class TestCompileDefinition:
    def test_table(self, tmp_path):
        actions = _compile(tmp_path, {
            "example.sqlx": """
                config { type: "table", tags: ["someTag"] }
                select 1 as ${dataform.projectConfig.vars.env}
            """,
        })
        table = actions["example"]
        assert isinstance(table, Table)
        assert table.query == "\n\nselect 1 as prod\n"
        assert table.tags == ("someTag",)
        assert table.hermeticity == NON_HERMETIC
        assert table.target == Target("db", "dataform", "example")
        assert table.file_name == "definitions/example.sqlx"

    def test_suffix_applies_to_runtime_target_only(self, tmp_path):
        actions = _compile(tmp_path, {
            "a.sqlx": 'config { type: "view" }\nselect 1',
            "b.sqlx": 'config { type: "table" }\nselect * from ${ref("a")}',
        }, SUFFIXED)
        b = actions["b"]
        assert b.canonical_target == Target("db", "dataform", "b")
        assert b.target == Target("db", "dataform_pr1", "b")
        assert b.query.strip() == "select * from `db.dataform_pr1.a`"
        assert b.dependency_targets == (Target("db", "dataform", "a"),)

    def test_ref_resolves_regardless_of_file_order(self, tmp_path):
        actions = _compile(tmp_path, {
            "a_first.sqlx": 'config { type: "table" }\nselect * from ${ref("z_last")}',
            "z_last.sqlx": 'config { type: "table", schema: "staging" }\nselect 1',
        })
        assert actions["a_first"].query.strip() == "select * from `db.staging.z_last`"

    def test_config_dependencies(self, tmp_path):
        actions = _compile(tmp_path, {
            "a.sqlx": 'config { type: "operations", dependencies: ["src"] }\nselect 1',
            "src.sqlx": 'config { type: "declaration", schema: "raw" }\n',
        })
        assert actions["a"].dependency_targets == (Target("db", "raw", "src"),)

    def test_declaration_never_suffixed(self, tmp_path):
        actions = _compile(tmp_path, {
            "src.sqlx": 'config { type: "declaration", schema: "raw" }\n',
        }, SUFFIXED)
        declaration = actions["src"]
        assert isinstance(declaration, Declaration)
        assert declaration.target == Target("db", "raw", "src")

    def test_assertion_defaults(self, tmp_path):
        actions = _compile(tmp_path, {
            "check.sqlx": 'config { type: "assertion" }\nselect 1 where false',
        })
        assertion = actions["check"]
        assert isinstance(assertion, Assertion)
        assert assertion.target == Target("db", "dataform_assertions", "check")
        assert assertion.hermeticity is None

    def test_operations_split(self, tmp_path):
        actions = _compile(tmp_path, {
            "ops.sqlx": """
                config { type: "operations", hasOutput: true }
                create table ${self()} as select 1
                ---
                grant select on ${self()} to role reader
            """,
        })
        operation = actions["ops"]
        assert isinstance(operation, Operation)
        assert operation.has_output is True
        assert operation.queries == (
            "create table `db.dataform.ops` as select 1",
            "grant select on `db.dataform.ops` to role reader",
        )

    def test_incremental(self, tmp_path):
        actions = _compile(tmp_path, {
            "events.sqlx": """
                config { type: "incremental", uniqueKey: ["id"] }
                pre_operations { declare n int64 ${when(incremental(), "default 1", "")} }
                select * from raw.events ${when(incremental(), "where ts > 0")}
            """,
        })
        table = actions["events"]
        assert table.type == "incremental"
        assert table.unique_key == ("id",)
        assert table.query.strip() == "select * from raw.events"
        assert table.incremental_query.strip() == "select * from raw.events where ts > 0"
        assert table.pre_ops == ("declare n int64 ",)
        assert table.incremental_pre_ops == ("declare n int64 default 1",)

    def test_unique_key_and_unique_keys_conflict(self, tmp_path):
        with pytest.raises(TemplateError, match="at most one of 'uniqueKey' and 'uniqueKeys'"):
            _compile(tmp_path, {
                "t.sqlx": """
                    config { type: "table", assertions: { uniqueKey: ["a"], uniqueKeys: [["b"]] } }
                    select 1
                """,
            })

    def test_unknown_action_type_rejected(self, monkeypatch):
        from dform.engine.compile import discovery
        from dform.engine.sql_analysis import SqlxParts

        class NotebookConfig(discovery._ExecutableConfig):
            type: str = "notebook"

        monkeypatch.setattr(discovery.Definition, "kind", property(lambda self: self.config.type))
        definition = discovery.Definition(
            path=Path("definitions/nb.sqlx"),
            file_name="definitions/nb.sqlx",
            config=NotebookConfig(),
            parts=SqlxParts(body="select 1"),
        )
        with pytest.raises(TemplateError, match="Unsupported action type: notebook"):
            compile_definition(definition, CONFIG, NameTable())


class TestHermeticity:
    def test_explicit_flag_wins(self, tmp_path):
        actions = _compile(tmp_path, {
            "t.sqlx": 'config { type: "table", hermetic: true }\nselect 1',
            "a.sqlx": 'config { type: "assertion", hermetic: false }\nselect 1',
        })
        assert actions["t"].hermeticity == HERMETIC
        assert actions["a"].hermeticity == NON_HERMETIC

    def test_hermetic_reading_declared_dependency(self, tmp_path):
        actions = _compile(tmp_path, {
            "src.sqlx": 'config { type: "declaration", schema: "raw" }\n',
            "t.sqlx": 'config { type: "table", hermetic: true }\nselect * from ${ref("src")}',
        })
        assert actions["t"].hermeticity == HERMETIC

    def test_hermetic_reading_undeclared_table(self, tmp_path):
        with pytest.raises(TemplateError, match="undeclared relation"):
            _compile(tmp_path, {
                "t.sqlx": 'config { type: "table", hermetic: true }\nselect * from raw.events',
            })

    def test_hermetic_checks_pre_and_post_operations(self, tmp_path):
        with pytest.raises(TemplateError, match="undeclared relation.*raw.audit"):
            _compile(tmp_path, {
                "t.sqlx": """
                    config { type: "table", hermetic: true }
                    pre_operations { insert into ${self()} select * from raw.audit }
                    select 1
                """,
            })

    def test_hermetic_checks_incremental_query(self, tmp_path):
        with pytest.raises(TemplateError, match="undeclared relation.*raw.late"):
            _compile(tmp_path, {
                "t.sqlx": """
                    config { type: "incremental", hermetic: true }
                    select 1 ${when(incremental(), "union all select * from raw.late")}
                """,
            })
