"""Tests for definition-file block extraction and sqlglot table reference parsing."""

from __future__ import annotations

import textwrap

import pytest

from dform.engine.sql_analysis import (
    BlockSyntaxError,
    clean_query,
    extract_table_refs,
    parse_config_block,
    quote_target,
    split_sqlx,
    split_statements,
)


# ===========================================================================
# split_sqlx
# ===========================================================================


class TestSplitSqlx:
    def test_config_cut_out_whitespace_kept(self):
        parts = split_sqlx('\nconfig { type: "table" }\nselect 1 as x\n')
        assert parts.config == ' type: "table" '
        assert parts.body == "\n\nselect 1 as x\n"

    def test_no_config(self):
        parts = split_sqlx("select 1")
        assert parts.config is None
        assert parts.body == "select 1"

    def test_nested_braces(self):
        text = textwrap.dedent("""\
            config {
              type: "table",
              assertions: { uniqueKey: ["id"] }
            }
            select 1 as id
        """)
        parts = split_sqlx(text)
        assert "uniqueKey" in parts.config
        assert parts.body.strip() == "select 1 as id"

    def test_braces_in_strings_ignored(self):
        parts = split_sqlx('config { description: "a } b" }\nselect 1')
        assert parts.config == ' description: "a } b" '

    def test_pre_and_post_operations(self):
        text = textwrap.dedent("""\
            config { type: "table" }
            pre_operations { set x = 1 }
            select 1
            post_operations { grant select on ${self()} }
        """)
        parts = split_sqlx(text)
        assert parts.pre_operations == ["set x = 1"]
        assert parts.post_operations == ["grant select on ${self()}"]
        assert "pre_operations" not in parts.body
        assert parts.body.strip() == "select 1"

    def test_duplicate_config(self):
        with pytest.raises(BlockSyntaxError, match="Only one config block"):
            split_sqlx('config { type: "table" }\nconfig { type: "view" }\nselect 1')

    def test_unbalanced(self):
        with pytest.raises(BlockSyntaxError, match="Unbalanced"):
            split_sqlx('config { type: "table"\nselect 1')

    def test_apostrophe_in_line_comment(self):
        parts = split_sqlx('config {\n  type: "table", // don\'t touch\n}\nselect 1')
        assert parts.config == '\n  type: "table", // don\'t touch\n'
        assert parts.body.strip() == "select 1"

    def test_apostrophe_in_sql_comment(self):
        parts = split_sqlx("pre_operations {\n  -- don't drop\n  set x = 1\n}\nselect 1")
        assert parts.pre_operations == ["-- don't drop\n  set x = 1"]

    def test_braces_in_block_comment(self):
        parts = split_sqlx('config { type: "view" /* } */ }\nselect 1')
        assert parts.config == ' type: "view" /* } */ '

    def test_backtick_string(self):
        parts = split_sqlx('config { description: `a } b` }\nselect 1')
        assert parts.config == " description: `a } b` "

    def test_unterminated_string(self):
        with pytest.raises(BlockSyntaxError, match="Unterminated"):
            split_sqlx("pre_operations { set x = 'oops }\nselect 1")

    def test_block_keyword_mid_line_is_body(self):
        parts = split_sqlx('config { type: "view" }\nselect "config {" as s')
        assert parts.body.endswith('select "config {" as s')


# ===========================================================================
# parse_config_block
# ===========================================================================


class TestParseConfigBlock:
    def test_js_object(self):
        assert parse_config_block(' type: "table", tags: ["a", "b"] ') == {
            "type": "table",
            "tags": ["a", "b"],
        }

    def test_no_space_after_colon(self):
        assert parse_config_block('type:"view",disabled:true') == {"type": "view", "disabled": True}

    def test_nested(self):
        parsed = parse_config_block('type: "table", assertions: { nonNull: ["id"] }')
        assert parsed["assertions"] == {"nonNull": ["id"]}

    def test_comments_stripped(self):
        inner = textwrap.dedent("""
            type: "table", // the kind
            /* block
               comment */
            schema: "raw"
        """)
        assert parse_config_block(inner) == {"type": "table", "schema": "raw"}

    def test_colon_inside_string_kept(self):
        assert parse_config_block('description: "a:b"') == {"description": "a:b"}

    def test_comment_with_apostrophe(self):
        assert parse_config_block('type: "table", // don\'t touch\n') == {"type": "table"}

    def test_single_quoted_escapes(self):
        assert parse_config_block("type: 'table', description: 'it\\'s'") == {
            "type": "table",
            "description": "it's",
        }

    def test_double_quoted_escapes(self):
        parsed = parse_config_block('description: "say \\"hi\\"\\tnow \\u00e9"')
        assert parsed == {"description": 'say "hi"\tnow é'}

    def test_backtick_template_literal(self):
        parsed = parse_config_block("description: `line one\nline 'two'`")
        assert parsed == {"description": "line one\nline 'two'"}

    def test_quoted_keys(self):
        assert parse_config_block('"type": \'view\'') == {"type": "view"}

    def test_empty(self):
        assert parse_config_block("  ") == {}

    def test_malformed(self):
        with pytest.raises(BlockSyntaxError, match="Could not parse config block"):
            parse_config_block('type: ["table"')


# ===========================================================================
# Statements and quoting
# ===========================================================================


class TestStatements:
    def test_split_on_separator(self):
        sql = "create table a as select 1;\n---\ndrop table b\n"
        assert split_statements(sql) == ["create table a as select 1;", "drop table b"]

    def test_single_statement(self):
        assert split_statements("\n select 1 \n") == ["select 1"]

    def test_clean_query(self):
        assert clean_query("select 1 ;  \n") == "select 1"
        assert clean_query("\n\nselect 1\n") == "\n\nselect 1"

    def test_quote_target(self):
        assert quote_target("db", "schema", "t") == "`db.schema.t`"
        assert quote_target("", "schema", "t") == "`schema.t`"


# ===========================================================================
# extract_table_refs
# ===========================================================================


class TestExtractTableRefs:
    def test_qualified_refs(self):
        sql = "select * from `proj.raw.events` e join raw.users u on e.uid = u.id"
        assert extract_table_refs(sql) == ["proj.raw.events", "raw.users"]

    def test_cte_names_skipped(self):
        sql = textwrap.dedent("""\
            with recent as (select * from raw.events)
            select * from recent
        """)
        assert extract_table_refs(sql) == ["raw.events"]

    def test_unqualified_ignored(self):
        assert extract_table_refs("select * from events") == []

    def test_information_schema_skipped(self):
        assert extract_table_refs("select * from information_schema.tables") == []

    def test_unparseable_falls_back_to_regex(self):
        sql = "select * from `proj.raw.events` where ((("
        assert extract_table_refs(sql) == ["proj.raw.events"]
