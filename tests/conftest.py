"""Shared fixtures: a recording stand-in for a psycopg connection and model file helpers."""

from __future__ import annotations

import os
import re
import textwrap
from contextlib import contextmanager
from pathlib import Path
from types import SimpleNamespace

import pytest

PG_URL = os.environ.get("PGFORGE_TEST_DATABASE_URL")


class FakeCursor:
    def __init__(self, rows=None, columns=None):
        self.rows = list(rows or [])
        self.description = [SimpleNamespace(name=c) for c in columns] if columns is not None else None

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    """Records every statement; answers catalog queries from registered handlers.

    ``on(pattern, rows)`` registers a response for queries matching a regex.
    ``rows`` may be a list of tuples, a FakeCursor, an exception instance to
    raise, or a callable ``(query, params) -> any of those``.
    """

    def __init__(self, server_version: int = 160000):
        self.info = SimpleNamespace(server_version=server_version)
        self.executed: list[str] = []
        self.params: list = []
        self.handlers: list[tuple[re.Pattern, object]] = []
        self.transactions: list[list[str]] = []
        self.rollbacks = 0
        self.closed = False
        self._current: list[str] | None = None

        # Catalog state answered by the default handlers
        self.relations: dict[str, tuple[str, list[str]]] = {}  # "schema.name" -> (relkind, columns)
        self.watermarks: dict[str, str] = {}
        self.described: dict[str, list[str]] = {}  # query substring -> output columns
        self.row_count = 0

        self.on(r"c\.relkind", lambda q, p: [(self.relations[f"{p[0]}.{p[1]}"][0],)]
                if f"{p[0]}.{p[1]}" in self.relations else [])
        self.on(r"a\.attname", lambda q, p: [(c,) for c in self.relations.get(f"{p[0]}.{p[1]}", ("", []))[1]])
        self.on(r"to_regclass\('_pgforge\.watermarks'\)", lambda q, p: [(bool(self.watermarks),)])
        self.on(r"SELECT watermark_value", lambda q, p: [(self.watermarks[f"{p[0]}.{p[1]}"],)]
                if f"{p[0]}.{p[1]}" in self.watermarks else [])
        self.on(r"_pgforge_describe LIMIT 0", self._describe)
        self.on(r"^SELECT count\(\*\) FROM \"", lambda q, p: [(self.row_count,)])
        self.on(r"AS violations", [(0,)])

    def add_relation(self, full_name: str, relkind: str = "r", columns=()) -> None:
        self.relations[full_name] = (relkind, list(columns))

    def _describe(self, query, params):
        for needle, columns in self.described.items():
            if needle in query:
                return FakeCursor(columns=columns)
        return FakeCursor(columns=[])

    def on(self, pattern: str, rows) -> None:
        self.handlers.insert(0, (re.compile(pattern, re.IGNORECASE | re.DOTALL), rows))

    def execute(self, query, params=None, **kwargs):
        self.executed.append(query)
        self.params.append(params)
        if self._current is not None:
            self._current.append(query)
        for pattern, result in self.handlers:
            if pattern.search(query):
                if callable(result) and not isinstance(result, Exception):
                    result = result(query, params)
                if isinstance(result, Exception):
                    raise result
                if isinstance(result, FakeCursor):
                    return result
                return FakeCursor(result)
        return FakeCursor([])

    @contextmanager
    def transaction(self):
        self._current = []
        try:
            yield self
        except Exception:
            self.rollbacks += 1
            raise
        finally:
            self.transactions.append(self._current)
            self._current = None

    def close(self) -> None:
        self.closed = True

    def statements_matching(self, pattern: str) -> list[str]:
        rx = re.compile(pattern, re.IGNORECASE | re.DOTALL)
        return [q for q in self.executed if rx.search(q)]

    def ddl(self) -> list[str]:
        """Statements that would change the database."""
        return self.statements_matching(r"^\s*(CREATE|DROP|ALTER|INSERT|UPDATE|DELETE|MERGE)\b")


@pytest.fixture
def fake_conn() -> FakeConnection:
    return FakeConnection()


def write_model(models_dir: Path, full_name: str, sql: str) -> Path:
    schema, name = full_name.split(".", 1)
    path = models_dir / schema / f"{name}.sql"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(textwrap.dedent(sql).lstrip())
    return path


@pytest.fixture
def models_dir(tmp_path: Path) -> Path:
    d = tmp_path / "models"
    d.mkdir()
    return d


@pytest.fixture
def pg_conn():
    """A real PostgreSQL session, or skip when no test database is configured."""
    if not PG_URL:
        pytest.skip("PGFORGE_TEST_DATABASE_URL not set")
    from pgforge.engine.database import connect, ensure_meta_table

    conn = connect(PG_URL)
    ensure_meta_table(conn)

    def _reset():
        for schema in ("pgf_app", "pgf_marts"):
            conn.execute(f"DROP SCHEMA IF EXISTS {schema} CASCADE")
        conn.execute("DELETE FROM _pgforge.watermarks WHERE \"schema\" IN ('pgf_app', 'pgf_marts')")

    _reset()
    conn.execute("CREATE SCHEMA pgf_app")
    try:
        yield conn
    finally:
        _reset()
        conn.close()
