"""Model execution: catalog state lookup and transactional statement runs."""

from __future__ import annotations

import logging
import time

import psycopg

from pgforge.engine.database import (
    count_rows,
    describe_query,
    read_watermark,
    relation_kind,
    table_columns,
)
from pgforge.engine.utils import quote_ident

from .compilation import (
    CompiledModel,
    TargetState,
    delta_name,
    incremental_body,
    needs_full_build,
    relation,
)
from .errors import CompileError, ExecutionError
from .models import SplitBody, SQLModel

logger = logging.getLogger("pgforge.transform")


def read_target_state(
    conn: psycopg.Connection,
    model: SQLModel,
    full_refresh: bool = False,
) -> TargetState:
    """Collect what the compiler needs to know about the model's target.

    Read-only: safe for dry runs. For incremental models headed for the delta
    path the bodies are described (``LIMIT 0``) so column mismatches surface
    before any transaction starts.
    """
    kind = relation_kind(conn, model.schema, model.name)
    state = TargetState(relation_kind=kind)
    if model.materialized != "incremental" or kind is None:
        return state

    state.columns = table_columns(conn, model.schema, model.name)
    state.watermark = read_watermark(conn, model.schema, model.name)
    if needs_full_build(model, state, full_refresh):
        return state

    try:
        state.incremental_columns = describe_query(conn, incremental_body(model))
        if isinstance(model.body, SplitBody):
            state.base_columns = describe_query(conn, model.query)
    except psycopg.Error as e:
        raise CompileError(model.full_name, f"could not describe model query: {_error_message(e)}") from e
    return state


def describe_model(conn: psycopg.Connection, model: SQLModel) -> list[str]:
    """Have the server plan the full-build query without reading rows.

    Raises CompileError when it rejects the query (unknown columns, syntax).
    """
    try:
        return describe_query(conn, model.query)
    except psycopg.Error as e:
        raise CompileError(model.full_name, f"query rejected by the server: {_error_message(e)}") from e


def execute_compiled(
    conn: psycopg.Connection,
    model: SQLModel,
    compiled: CompiledModel,
) -> tuple[int, int]:
    """Run every statement in one transaction. Returns (duration_ms, row_count).

    Any database error rolls the whole transaction back and is raised as
    ExecutionError; the previous table and watermark stay as they were.

    The row count is the table size after a full build, and the number of
    rows merged after an incremental delta.
    """
    start = time.perf_counter()
    statement = ""
    delta_rows: int | None = None
    try:
        with conn.transaction():
            for statement in compiled.statements:
                logger.debug("%s: %s", model.full_name, statement)
                conn.execute(statement)
            if not compiled.full_build:
                # The delta table is dropped on commit
                delta = quote_ident(delta_name(model))
                statement = f"SELECT count(*) FROM {delta}"
                delta_rows = count_rows(conn, delta)
    except psycopg.Error as e:
        raise ExecutionError(
            model.full_name,
            _error_message(e),
            sqlstate=e.sqlstate,
            statement=statement,
        ) from e
    duration_ms = int((time.perf_counter() - start) * 1000)

    if delta_rows is not None:
        return duration_ms, delta_rows
    row_count = 0
    if model.materialized in ("table", "incremental"):
        try:
            row_count = count_rows(conn, relation(model))
        except psycopg.Error as e:
            logger.debug("Row count failed for %s: %s", model.full_name, e)
    return duration_ms, row_count


def _error_message(e: psycopg.Error) -> str:
    diag = getattr(e, "diag", None)
    primary = diag.message_primary if diag is not None else None
    return primary or str(e).strip()
