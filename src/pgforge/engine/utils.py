"""Shared identifier and literal helpers for the engine layer."""

from __future__ import annotations

import re

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_$]*$")

# PostgreSQL truncates identifiers longer than NAMEDATALEN - 1 bytes.
MAX_IDENTIFIER_LENGTH = 63


def validate_identifier(value: str, label: str = "identifier") -> str:
    """Validate that a value is a plain SQL identifier.

    Only allows letters, digits, underscores and ``$``, starting with a letter
    or underscore. Raises ValueError if the identifier is unsafe.
    """
    if not _IDENTIFIER_RE.match(value):
        raise ValueError(f"Invalid {label}: {value!r} (must match [A-Za-z_][A-Za-z0-9_$]*)")
    return value


def quote_ident(name: str) -> str:
    """Double-quote an identifier, escaping embedded quotes."""
    return '"' + name.replace('"', '""') + '"'


def quote_relation(schema: str, name: str) -> str:
    return f"{quote_ident(schema)}.{quote_ident(name)}"


def quote_literal(value: str) -> str:
    """Single-quote a string literal, escaping embedded quotes."""
    return "'" + value.replace("'", "''") + "'"


def truncate_identifier(name: str) -> str:
    """Clip a generated identifier to the server's identifier length."""
    return name[:MAX_IDENTIFIER_LENGTH]
