"""Materialization compiler: model + target state -> ordered SQL statements.

Compilation is pure. Everything it needs to know about the database (what
currently occupies the target name, the target's columns, the stored
watermark, the server version) arrives in ``TargetState`` and ``ServerInfo``.
The statements of one CompiledModel are meant to run inside one transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from pgforge.engine.sql_analysis import THIS_TOKEN
from pgforge.engine.utils import quote_ident, quote_literal, quote_relation, truncate_identifier

from .errors import CompileError
from .models import SplitBody, SQLModel

logger = logging.getLogger("pgforge.transform")

META_SCHEMA = "_pgforge"
WATERMARK_TABLE = f"{META_SCHEMA}.watermarks"

# MERGE arrived in PostgreSQL 15
MERGE_MIN_VERSION = 150000

_DROP_STATEMENTS = {
    "table": "DROP TABLE",
    "view": "DROP VIEW",
    "materialized_view": "DROP MATERIALIZED VIEW",
    "foreign_table": "DROP FOREIGN TABLE",
}


@dataclass(frozen=True)
class ServerInfo:
    """Capabilities of the connected server."""

    version_num: int  # server_version_num, e.g. 160002

    @property
    def supports_merge(self) -> bool:
        return self.version_num >= MERGE_MIN_VERSION


@dataclass
class TargetState:
    """What the catalog says about a model's target right now."""

    relation_kind: str | None = None  # "table", "view", "materialized_view", ... or None
    columns: list[str] = field(default_factory=list)
    watermark: str | None = None
    # Output columns of the bodies, described only when the delta path is taken
    base_columns: list[str] | None = None
    incremental_columns: list[str] | None = None


@dataclass
class CompiledModel:
    model: str
    action: str  # "view", "table swap", "incremental full build", "incremental merge", "incremental upsert"
    statements: list[str] = field(default_factory=list)
    full_build: bool = True

    @property
    def sql(self) -> str:
        return ";\n\n".join(self.statements) + ";\n"


def relation(model: SQLModel) -> str:
    return quote_relation(model.schema, model.name)


def staging_name(model: SQLModel) -> str:
    return truncate_identifier(f"_pgforge_new_{model.name}")


def delta_name(model: SQLModel) -> str:
    return truncate_identifier(f"_pgforge_delta_{model.schema}_{model.name}")


def needs_full_build(model: SQLModel, state: TargetState, full_refresh: bool = False) -> bool:
    """Whether an incremental model takes the full-build path."""
    return full_refresh or state.relation_kind != "table" or state.watermark is None


def incremental_body(model: SQLModel) -> str:
    """The delta body with ``${this}`` pointing at the target table."""
    return model.incremental_query.replace(THIS_TOKEN, relation(model))


def validate_model(model: SQLModel) -> None:
    """Checks that do not depend on database state."""
    if model.materialized == "incremental":
        if not model.unique_key:
            raise CompileError(model.full_name, "incremental model has no unique_key")
        if not model.watermark:
            raise CompileError(model.full_name, "incremental model has no watermark column")
        if THIS_TOKEN in model.query:
            where = "the @base section" if isinstance(model.body, SplitBody) else "a single-body model"
            raise CompileError(
                model.full_name, f"{THIS_TOKEN} is only allowed in the @incremental section, found in {where}"
            )
        return
    if isinstance(model.body, SplitBody):
        raise CompileError(
            model.full_name, f"@base/@incremental sections require materialized: incremental, not {model.materialized}"
        )
    if THIS_TOKEN in model.query:
        raise CompileError(model.full_name, f"{THIS_TOKEN} is only valid in incremental models")


def compile_model(
    model: SQLModel,
    state: TargetState | None = None,
    server: ServerInfo | None = None,
    full_refresh: bool = False,
) -> CompiledModel:
    """Compile a model for its materialization kind. Raises CompileError."""
    state = state or TargetState()
    server = server or ServerInfo(MERGE_MIN_VERSION)
    validate_model(model)

    if model.materialized == "view":
        compiled = _compile_view(model, state)
    elif model.materialized == "table":
        compiled = _compile_table_swap(model, state, action="table swap")
    elif needs_full_build(model, state, full_refresh):
        compiled = _compile_incremental_full(model, state)
    else:
        compiled = _compile_incremental_delta(model, state, server)

    logger.debug("Compiled %s as %s (%d statements)", model.full_name, compiled.action, len(compiled.statements))
    return compiled


def _compile_view(model: SQLModel, state: TargetState) -> CompiledModel:
    statements = [f"CREATE SCHEMA IF NOT EXISTS {quote_ident(model.schema)}"]
    if state.relation_kind and state.relation_kind != "view":
        statements.append(f"{_drop_statement(state.relation_kind)} {relation(model)} CASCADE")
    statements.append(f"CREATE OR REPLACE VIEW {relation(model)} AS\n{model.query}")
    return CompiledModel(model=model.full_name, action="view", statements=statements)


def _compile_table_swap(model: SQLModel, state: TargetState, action: str) -> CompiledModel:
    """Build into a staging table, then replace the target in the same transaction."""
    staging = quote_relation(model.schema, staging_name(model))
    statements = [
        f"CREATE SCHEMA IF NOT EXISTS {quote_ident(model.schema)}",
        f"DROP TABLE IF EXISTS {staging}",
        f"CREATE TABLE {staging} AS\n{model.query}",
    ]
    if model.materialized == "incremental":
        keys = ", ".join(quote_ident(k) for k in model.unique_key)
        statements.append(
            f"ALTER TABLE {staging} ADD CONSTRAINT {quote_ident(_pkey_name(staging_name(model)))} "
            f"PRIMARY KEY ({keys})"
        )
    if state.relation_kind:
        statements.append(f"{_drop_statement(state.relation_kind)} {relation(model)} CASCADE")
    statements.append(f"ALTER TABLE {staging} RENAME TO {quote_ident(model.name)}")
    if model.materialized == "incremental":
        statements.append(
            f"ALTER TABLE {relation(model)} RENAME CONSTRAINT "
            f"{quote_ident(_pkey_name(staging_name(model)))} TO {quote_ident(_pkey_name(model.name))}"
        )
    return CompiledModel(model=model.full_name, action=action, statements=statements)


def _compile_incremental_full(model: SQLModel, state: TargetState) -> CompiledModel:
    compiled = _compile_table_swap(model, state, action="incremental full build")
    wm = quote_ident(model.watermark)
    compiled.statements.extend([
        f"DELETE FROM {WATERMARK_TABLE} WHERE {_watermark_key(model)}",
        (
            f'INSERT INTO {WATERMARK_TABLE} ("schema", model, watermark_value, updated_at)\n'
            f"SELECT {quote_literal(model.schema)}, {quote_literal(model.name)}, max({wm})::text, now()\n"
            f"FROM {relation(model)}\n"
            f"HAVING max({wm}) IS NOT NULL"
        ),
    ])
    return compiled


def _compile_incremental_delta(model: SQLModel, state: TargetState, server: ServerInfo) -> CompiledModel:
    columns = _delta_columns(model, state)
    keys = [quote_ident(k) for k in model.unique_key]
    wm = quote_ident(model.watermark)
    delta = quote_ident(delta_name(model))
    target = relation(model)

    statements = [
        f"CREATE SCHEMA IF NOT EXISTS {quote_ident(model.schema)}",
        # Latest row per key; a batch may carry several versions of one key
        (
            f"CREATE TEMP TABLE {delta} ON COMMIT DROP AS\n"
            f"SELECT DISTINCT ON ({', '.join(keys)}) *\n"
            f"FROM (\n{incremental_body(model)}\n) AS src\n"
            f"WHERE src.{wm} > {quote_literal(state.watermark or '')}\n"
            f"ORDER BY {', '.join(keys)}, {wm} DESC"
        ),
    ]

    non_keys = [c for c in columns if c not in model.unique_key]
    col_list = ", ".join(quote_ident(c) for c in columns)
    if server.supports_merge:
        action = "incremental merge"
        on = " AND ".join(f"t.{k} = s.{k}" for k in keys)
        merge = f"MERGE INTO {target} AS t\nUSING {delta} AS s\nON {on}\n"
        if non_keys:
            sets = ", ".join(f"{quote_ident(c)} = s.{quote_ident(c)}" for c in non_keys)
            merge += f"WHEN MATCHED THEN UPDATE SET {sets}\n"
        values = ", ".join(f"s.{quote_ident(c)}" for c in columns)
        merge += f"WHEN NOT MATCHED THEN INSERT ({col_list}) VALUES ({values})"
        statements.append(merge)
    else:
        action = "incremental upsert"
        if non_keys:
            sets = ", ".join(f"{quote_ident(c)} = EXCLUDED.{quote_ident(c)}" for c in non_keys)
            conflict = f"DO UPDATE SET {sets}"
        else:
            conflict = "DO NOTHING"
        statements.append(
            f"INSERT INTO {target} ({col_list})\n"
            f"SELECT {col_list} FROM {delta}\n"
            f"ON CONFLICT ({', '.join(keys)}) {conflict}"
        )

    statements.append(
        f'INSERT INTO {WATERMARK_TABLE} ("schema", model, watermark_value, updated_at)\n'
        f"SELECT {quote_literal(model.schema)}, {quote_literal(model.name)}, max({wm})::text, now()\n"
        f"FROM {delta}\n"
        f"HAVING max({wm}) IS NOT NULL\n"
        f'ON CONFLICT ("schema", model) DO UPDATE\n'
        f"SET watermark_value = EXCLUDED.watermark_value, updated_at = EXCLUDED.updated_at"
    )
    return CompiledModel(model=model.full_name, action=action, statements=statements, full_build=False)


def _delta_columns(model: SQLModel, state: TargetState) -> list[str]:
    """Column list for the merge, checked against every body we know about."""
    target_cols = list(state.columns)
    if not target_cols:
        raise CompileError(model.full_name, "target table has no columns in the catalog")

    if state.base_columns is not None and state.incremental_columns is not None:
        if set(state.base_columns) != set(state.incremental_columns):
            raise CompileError(
                model.full_name,
                "@base and @incremental produce different columns: "
                + _column_diff(state.base_columns, state.incremental_columns),
            )
    if state.incremental_columns is not None and set(state.incremental_columns) != set(target_cols):
        raise CompileError(
            model.full_name,
            "incremental query columns do not match the target table "
            "(run with --full-refresh to rebuild): "
            + _column_diff(target_cols, state.incremental_columns),
        )

    for col in [*model.unique_key, model.watermark]:
        if col not in target_cols:
            raise CompileError(model.full_name, f"column {col!r} is not in the target table")
    return target_cols


def _column_diff(expected: list[str], actual: list[str]) -> str:
    missing = sorted(set(expected) - set(actual))
    extra = sorted(set(actual) - set(expected))
    parts = []
    if missing:
        parts.append(f"missing {', '.join(missing)}")
    if extra:
        parts.append(f"unexpected {', '.join(extra)}")
    return "; ".join(parts)


def _drop_statement(kind: str) -> str:
    return _DROP_STATEMENTS.get(kind, "DROP TABLE")


def _pkey_name(table: str) -> str:
    return truncate_identifier(f"{table}_pkey")


def _watermark_key(model: SQLModel) -> str:
    return f'"schema" = {quote_literal(model.schema)} AND model = {quote_literal(model.name)}'


def write_compiled(target_dir: Path, compiled: CompiledModel) -> Path:
    """Write compiled SQL to ``<target>/compiled/<schema>/<name>.sql``."""
    schema, name = compiled.model.split(".", 1)
    out = target_dir / "compiled" / schema / f"{name}.sql"
    out.parent.mkdir(parents=True, exist_ok=True)
    header = f"-- {compiled.model}: {compiled.action}\n"
    out.write_text(header + compiled.sql)
    return out
