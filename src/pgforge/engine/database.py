"""PostgreSQL connection management and catalog lookups."""

from __future__ import annotations

import logging

import psycopg

from pgforge.engine.utils import quote_literal

logger = logging.getLogger("pgforge.database")

_RELKINDS = {
    "r": "table",
    "p": "table",
    "v": "view",
    "m": "materialized_view",
    "f": "foreign_table",
}


def connect(
    url: str,
    statement_timeout: str | None = None,
    lock_timeout: str | None = None,
    application_name: str = "pgforge",
) -> psycopg.Connection:
    """Open an autocommit session; the engine opens its own transactions."""
    conn = psycopg.connect(url, autocommit=True, application_name=application_name)
    if statement_timeout:
        conn.execute(f"SET statement_timeout = {quote_literal(statement_timeout)}")
    if lock_timeout:
        conn.execute(f"SET lock_timeout = {quote_literal(lock_timeout)}")
    logger.debug(
        "Connected to PostgreSQL %s (statement_timeout=%s, lock_timeout=%s)",
        conn.info.server_version, statement_timeout, lock_timeout,
    )
    return conn


def server_version(conn: psycopg.Connection) -> int:
    """Numeric server version, e.g. 160002 for 16.2."""
    return conn.info.server_version


def ensure_meta_table(conn: psycopg.Connection) -> None:
    """Create the engine-owned schema and the watermark table."""
    conn.execute("CREATE SCHEMA IF NOT EXISTS _pgforge")
    conn.execute("""
        CREATE TABLE IF NOT EXISTS _pgforge.watermarks (
            "schema"        TEXT NOT NULL,
            model           TEXT NOT NULL,
            watermark_value TEXT NOT NULL,
            updated_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
            PRIMARY KEY ("schema", model)
        )
    """)


def relation_kind(conn: psycopg.Connection, schema: str, name: str) -> str | None:
    """What occupies ``schema.name``: "table", "view", ... or None."""
    row = conn.execute(
        """
        SELECT c.relkind
        FROM pg_catalog.pg_class c
        JOIN pg_catalog.pg_namespace n ON n.oid = c.relnamespace
        WHERE n.nspname = %s AND c.relname = %s
        """,
        [schema, name],
    ).fetchone()
    if row is None:
        return None
    return _RELKINDS.get(row[0], "other")


def table_columns(conn: psycopg.Connection, schema: str, name: str) -> list[str]:
    """Column names of a relation in ordinal order."""
    rows = conn.execute(
        """
        SELECT a.attname
        FROM pg_catalog.pg_attribute a
        JOIN pg_catalog.pg_class c ON c.oid = a.attrelid
        JOIN pg_catalog.pg_namespace n ON n.oid = c.relnamespace
        WHERE n.nspname = %s AND c.relname = %s
          AND a.attnum > 0 AND NOT a.attisdropped
        ORDER BY a.attnum
        """,
        [schema, name],
    ).fetchall()
    return [r[0] for r in rows]


def read_watermark(conn: psycopg.Connection, schema: str, name: str) -> str | None:
    """Stored watermark for a model, or None.

    Issues no DDL, so it is safe during a dry run before the table exists.
    """
    exists = conn.execute("SELECT to_regclass('_pgforge.watermarks') IS NOT NULL").fetchone()
    if not exists or not exists[0]:
        return None
    row = conn.execute(
        'SELECT watermark_value FROM _pgforge.watermarks WHERE "schema" = %s AND model = %s',
        [schema, name],
    ).fetchone()
    return row[0] if row else None


def describe_query(conn: psycopg.Connection, sql: str) -> list[str]:
    """Output column names of a query, without fetching rows."""
    cur = conn.execute(f"SELECT * FROM (\n{sql}\n) AS _pgforge_describe LIMIT 0", prepare=False)
    return [col.name for col in cur.description or []]


def count_rows(conn: psycopg.Connection, relation: str) -> int:
    row = conn.execute(f"SELECT count(*) FROM {relation}").fetchone()
    return row[0] if row else 0
