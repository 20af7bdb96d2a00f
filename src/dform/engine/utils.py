"""Shared utility functions for the dform engine layer."""

from __future__ import annotations

import re

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")


def validate_identifier(value: str, label: str = "identifier") -> str:
    """Validate that a value is a safe warehouse identifier.

    Allows letters, digits, underscores and dashes, starting with a letter or
    underscore. Raises ValueError if the identifier is unsafe.

    This is the single validation point for action names and schema names
    used across the engine (definition loading, CLI overrides).
    """
    if not _IDENTIFIER_RE.match(value):
        raise ValueError(f"Invalid {label}: {value!r} (must match [A-Za-z_][A-Za-z0-9_-]*)")
    return value


def parse_key_values(raw: str | None) -> dict[str, str]:
    """Parse ``k=v,k2=v2`` into a dict. Later keys win."""
    result: dict[str, str] = {}
    if not raw:
        return result
    for pair in raw.split(","):
        pair = pair.strip()
        if not pair:
            continue
        if "=" not in pair:
            raise ValueError(f"Expected key=value, got {pair!r}")
        key, value = pair.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError(f"Empty key in {pair!r}")
        result[key] = value.strip()
    return result


def parse_list(raw: str | None) -> list[str]:
    """Parse ``a,b,c`` into ``["a", "b", "c"]``, dropping blanks and keeping order."""
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]
