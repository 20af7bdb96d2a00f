"""SQLX analysis: block extraction and sqlglot-based table reference parsing.

A definition file is a SQL template with up to three brace-delimited blocks:

    config { type: "table", tags: ["daily"] }
    pre_operations { ... }
    post_operations { ... }

The blocks are cut out of the text and everything else is the template body,
whitespace preserved. Table references are extracted with sqlglot AST
parsing (BigQuery dialect) for hermeticity checks.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any

import sqlglot
import yaml
from sqlglot import exp

DIALECT = "bigquery"

# Schemas that are never real upstream dependencies
SKIP_SCHEMAS = frozenset({"information_schema", "region-us", "region-eu"})

BLOCK_PATTERN = re.compile(
    r"^[ \t]*(config|pre_operations|post_operations)\s*\{",
    re.MULTILINE,
)


class BlockSyntaxError(ValueError):
    """A block in a definition file is unbalanced, duplicated or unparseable."""


@dataclass
class SqlxParts:
    """A definition file split into its blocks and template body."""

    config: str | None = None
    pre_operations: list[str] = field(default_factory=list)
    post_operations: list[str] = field(default_factory=list)
    body: str = ""


_QUOTES = ("'", '"', "`")
_JS_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "b": "\b", "f": "\f", "v": "\v", "0": "\0"}
_JS_ESCAPE_RE = re.compile(r"\\(u\{[0-9a-fA-F]+\}|u[0-9a-fA-F]{4}|x[0-9a-fA-F]{2}|\n|.)", re.DOTALL)


def _skip_comment(text: str, i: int) -> int:
    """Return the index after a comment starting at ``i``, or ``i`` if there is none."""
    pair = text[i:i + 2]
    if pair in ("//", "--"):
        end = text.find("\n", i)
        return len(text) if end == -1 else end
    if pair == "/*":
        end = text.find("*/", i + 2)
        if end == -1:
            raise BlockSyntaxError("Unterminated /* comment")
        return end + 2
    return i


def _string_end(text: str, i: int) -> int:
    """Return the index of the quote closing the string literal opened at ``i``."""
    quote = text[i]
    i += 1
    while i < len(text):
        if text[i] == "\\":
            i += 2
            continue
        if text[i] == quote:
            return i
        i += 1
    raise BlockSyntaxError(f"Unterminated {quote} string")


def _find_closing_brace(text: str, open_idx: int) -> int:
    """Return the index of the brace closing the one at ``open_idx``.

    Braces inside quoted strings and ``//``, ``--`` or ``/* */`` comments do
    not count.
    """
    depth = 0
    i = open_idx
    while i < len(text):
        ch = text[i]
        after_comment = _skip_comment(text, i)
        if after_comment != i:
            i = after_comment
            continue
        if ch in _QUOTES:
            i = _string_end(text, i)
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
        i += 1
    raise BlockSyntaxError("Unbalanced braces: block is never closed")


def split_sqlx(text: str) -> SqlxParts:
    """Cut config/pre_operations/post_operations blocks out of a definition file."""
    parts = SqlxParts()
    body_pieces: list[str] = []
    pos = 0
    while True:
        match = BLOCK_PATTERN.search(text, pos)
        if not match:
            break
        kind = match.group(1)
        open_idx = match.end() - 1
        close_idx = _find_closing_brace(text, open_idx)
        inner = text[open_idx + 1:close_idx]

        if kind == "config":
            if parts.config is not None:
                raise BlockSyntaxError("Only one config block is allowed per file")
            parts.config = inner
        elif kind == "pre_operations":
            parts.pre_operations.append(inner.strip())
        else:
            parts.post_operations.append(inner.strip())

        body_pieces.append(text[pos:match.start()])
        pos = close_idx + 1

    body_pieces.append(text[pos:])
    parts.body = "".join(body_pieces)
    return parts


def _decode_js_escape(match: re.Match[str]) -> str:
    escape = match.group(1)
    if escape == "\n":
        return ""  # line continuation
    if escape.startswith("u{"):
        return chr(int(escape[2:-1], 16))
    if escape[0] in "ux" and len(escape) > 1:
        return chr(int(escape[1:], 16))
    return _JS_ESCAPES.get(escape, escape)


def _normalize_js_object(source: str) -> str:
    """Make a JS object literal digestible as a YAML flow mapping.

    Strips ``//`` and ``/* */`` comments, re-quotes every string literal
    (single, double or backtick) as a JSON string, and puts a space after
    every colon that sits outside a string.
    """
    out: list[str] = []
    i = 0
    while i < len(source):
        ch = source[i]
        if source[i:i + 2] in ("//", "/*"):
            i = _skip_comment(source, i)
            continue
        if ch in _QUOTES:
            end = _string_end(source, i)
            out.append(json.dumps(_JS_ESCAPE_RE.sub(_decode_js_escape, source[i + 1:end])))
            i = end + 1
            continue
        out.append(": " if ch == ":" else ch)
        i += 1
    return "".join(out)


def parse_config_block(inner: str) -> dict[str, Any]:
    """Parse the inside of a ``config { ... }`` block into a dict."""
    try:
        parsed = yaml.safe_load("{" + _normalize_js_object(inner) + "}")
    except yaml.YAMLError as e:
        raise BlockSyntaxError(f"Could not parse config block: {e}") from e
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        raise BlockSyntaxError("Config block must be an object")
    return parsed


def split_statements(sql: str) -> list[str]:
    """Split an operations body on ``---`` separator lines."""
    statements = re.split(r"^\s*---\s*$", sql, flags=re.MULTILINE)
    return [s.strip() for s in statements if s.strip()]


def clean_query(sql: str) -> str:
    """Strip trailing whitespace and semicolons so the query can be embedded."""
    return sql.rstrip().rstrip(";").rstrip()


def quote_target(database: str, schema: str, name: str) -> str:
    """Render a BigQuery-quoted relation name."""
    if database:
        return f"`{database}.{schema}.{name}`"
    return f"`{schema}.{name}`"


# --- AST-based table reference extraction ---


def extract_table_refs(sql: str) -> list[str]:
    """Extract qualified table references from SQL using sqlglot AST.

    CTE names are skipped. References are lower-cased and joined with dots
    (``project.dataset.table`` or ``dataset.table``).

    Returns:
        Sorted list of unique references.
    """
    try:
        parsed = sqlglot.parse_one(sql, read=DIALECT)
    except sqlglot.errors.SqlglotError:
        return _fallback_extract_table_refs(sql)
    if parsed is None:
        return []

    cte_names: set[str] = set()
    for cte in parsed.find_all(exp.CTE):
        if cte.alias:
            cte_names.add(cte.alias.lower())

    refs: set[str] = set()
    for table in parsed.find_all(exp.Table):
        name = (table.name or "").lower()
        schema = (table.db or "").lower()
        catalog = (table.catalog or "").lower()
        if not name or name in cte_names:
            continue
        if not schema:
            continue
        if schema in SKIP_SCHEMAS:
            continue
        refs.add(".".join(part for part in (catalog, schema, name) if part))
    return sorted(refs)


# Regex fallback for when sqlglot cannot parse the query
_BACKTICK_REF_PATTERN = re.compile(r"\b(?:FROM|JOIN)\s+`([^`]+)`", re.IGNORECASE)


def _fallback_extract_table_refs(sql: str) -> list[str]:
    clean = re.sub(r"--[^\n]*", "", sql)
    refs = {
        m.group(1).lower()
        for m in _BACKTICK_REF_PATTERN.finditer(clean)
        if "." in m.group(1)
    }
    return sorted(refs)
