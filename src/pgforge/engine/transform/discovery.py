"""Model discovery: turns annotated SQL files into SQLModel records."""

from __future__ import annotations

import logging
import re
from pathlib import Path

from pgforge.engine.sql_analysis import (
    extract_table_refs,
    extract_unqualified_refs,
    find_section_markers,
    parse_header,
    split_list,
    split_top_level,
)
from pgforge.engine.utils import validate_identifier

from .errors import ParseError
from .models import MATERIALIZATIONS, TEST_KINDS, ModelBody, ModelTest, SingleBody, SplitBody, SQLModel

logger = logging.getLogger("pgforge.transform")

_QUALIFIED_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_$]*\.[A-Za-z_][A-Za-z0-9_$]*$")
_TAG_RE = re.compile(r"^[a-z0-9_-]+$")
_TEST_CALL_RE = re.compile(r"^([A-Za-z_]+)\s*\((.*)\)$", re.DOTALL)


def discover_models(models_dir: Path) -> tuple[list[SQLModel], list[ParseError]]:
    """Parse every model file under the models directory.

    Convention: the folder name is the schema and the file stem is the name.
    models/marts/user_stats.sql -> marts.user_stats

    A file that fails to parse is reported in the second list and never
    stops the others from being parsed.
    """
    models: list[SQLModel] = []
    errors: list[ParseError] = []
    if not models_dir.exists():
        return models, errors

    seen: dict[str, Path] = {}
    for sql_file in sorted(models_dir.rglob("*.sql")):
        try:
            model = parse_model_file(sql_file, models_dir)
            if model.full_name in seen:
                raise ParseError(
                    sql_file, 1, f"model {model.full_name} is already defined by {seen[model.full_name]}"
                )
            seen[model.full_name] = sql_file
            models.append(model)
        except ParseError as e:
            logger.debug("Parse failed for %s: %s", sql_file, e)
            errors.append(e)
        except UnicodeDecodeError as e:
            errors.append(ParseError(sql_file, 1, f"file is not valid UTF-8: {e}"))

    return models, errors


def model_name_for_path(sql_file: Path, models_dir: Path) -> tuple[str, str]:
    """Return ``(schema, name)`` for a file laid out as ``<schema>/<name>.sql``.

    Both parts are lowercased to match how PostgreSQL folds the unquoted
    names used in references, deps and selectors.
    """
    rel = sql_file.relative_to(models_dir)
    if len(rel.parts) != 2:
        raise ParseError(
            sql_file,
            1,
            f"model files must live at <models>/<schema>/<name>.sql, got {rel.as_posix()}",
        )
    schema, name = rel.parts[0].lower(), sql_file.stem.lower()
    try:
        validate_identifier(schema, f"schema for {sql_file.name}")
        validate_identifier(name, f"model name for {sql_file.name}")
    except ValueError as e:
        raise ParseError(sql_file, 1, str(e)) from e
    return schema, name


def parse_model_file(sql_file: Path, models_dir: Path) -> SQLModel:
    schema, name = model_name_for_path(sql_file, models_dir)
    return parse_model(sql_file, sql_file.read_text(encoding="utf-8"), schema, name)


def parse_model(path: Path, sql: str, schema: str, name: str) -> SQLModel:
    """Parse one model's text. Raises ParseError naming the offending line."""
    full_name = f"{schema}.{name}"
    header = parse_header(sql)
    values, lines = header.values, header.lines

    def fail(key: str | None, message: str) -> ParseError:
        line = lines.get(key, 1) if key else 1
        return ParseError(path, line, message, model=full_name)

    materialized = values.get("materialized", "").strip().lower()
    if "materialized" not in values:
        raise fail(None, "missing required '-- materialized:' header")
    if materialized not in MATERIALIZATIONS:
        raise fail(
            "materialized",
            f"unknown materialization {values['materialized']!r} (expected one of: {', '.join(MATERIALIZATIONS)})",
        )

    depends_on: list[str] = []
    for dep in split_list(values.get("deps", "")):
        if "." not in dep:
            raise fail("deps", f"dependency {dep!r} must include schema (schema.name)")
        if not _QUALIFIED_RE.match(dep):
            raise fail("deps", f"dependency {dep!r}: expected schema.table format")
        depends_on.append(dep.lower())

    unique_key: list[str] = []
    for col in split_list(values.get("unique_key", "")):
        try:
            unique_key.append(validate_identifier(col.lower(), "unique_key column"))
        except ValueError as e:
            raise fail("unique_key", str(e)) from e

    watermark = values.get("watermark", "").strip().lower() or None
    if watermark:
        try:
            validate_identifier(watermark, "watermark column")
        except ValueError as e:
            raise fail("watermark", str(e)) from e

    if materialized == "incremental":
        if not unique_key:
            raise fail("materialized", "incremental models require '-- unique_key:'")
        if not watermark:
            raise fail("materialized", "incremental models require '-- watermark:'")

    tags: list[str] = []
    for tag in split_list(values.get("tags", "")):
        tag = tag.lower()
        if not _TAG_RE.match(tag):
            raise fail("tags", f"invalid tag {tag!r} (allowed: a-z, 0-9, '_', '-')")
        if tag not in tags:
            tags.append(tag)

    tests: list[ModelTest] = []
    if values.get("tests"):
        try:
            for expr in split_top_level(values["tests"], separators=";,"):
                tests.append(parse_test(expr))
        except ValueError as e:
            raise fail("tests", str(e)) from e

    body = _parse_body(path, sql, header.body_start, full_name)
    detected = extract_table_refs(sql, exclude=full_name)
    unqualified = sorted({ref.name for ref in extract_unqualified_refs(sql)})

    return SQLModel(
        path=path,
        name=name,
        schema=schema,
        full_name=full_name,
        sql=sql,
        body=body,
        materialized=materialized,
        depends_on=sorted(set(depends_on)),
        detected_deps=detected,
        unqualified_refs=unqualified,
        unique_key=unique_key,
        watermark=watermark,
        tags=tags,
        tests=tests,
        description=values.get("description", ""),
        header_lines=dict(lines),
    )


def _parse_body(path: Path, sql: str, body_start: int, full_name: str) -> ModelBody:
    lines = sql.splitlines()
    markers = [(idx, kind) for idx, kind in find_section_markers(sql) if idx >= body_start]

    if not markers:
        text = _clean_body("\n".join(lines[body_start:]))
        if not text:
            raise ParseError(path, max(body_start, 1), "model body is empty", model=full_name)
        return SingleBody(text)

    first_idx, first_kind = markers[0]
    if first_kind != "base":
        raise ParseError(
            path, first_idx + 1, "@incremental section requires a preceding @base section", model=full_name
        )
    seen: set[str] = set()
    for idx, kind in markers:
        if kind in seen:
            raise ParseError(path, idx + 1, f"duplicate @{kind} marker", model=full_name)
        seen.add(kind)
    if _clean_body("\n".join(lines[body_start:first_idx])):
        raise ParseError(path, first_idx + 1, "SQL found before the @base marker", model=full_name)

    if len(markers) == 1:
        base = _clean_body("\n".join(lines[first_idx + 1:]))
        if not base:
            raise ParseError(path, first_idx + 1, "@base section is empty", model=full_name)
        return SingleBody(base)

    inc_idx = markers[1][0]
    base = _clean_body("\n".join(lines[first_idx + 1:inc_idx]))
    incremental = _clean_body("\n".join(lines[inc_idx + 1:]))
    if not base:
        raise ParseError(path, first_idx + 1, "@base section is empty", model=full_name)
    if not incremental:
        raise ParseError(path, inc_idx + 1, "@incremental section is empty", model=full_name)
    return SplitBody(base=base, incremental=incremental)


def _clean_body(text: str) -> str:
    """Trim surrounding whitespace and trailing semicolons."""
    text = text.strip()
    while text.endswith(";"):
        text = text[:-1].rstrip()
    # Comment-only text is still empty
    if all(not ln.strip() or ln.strip().startswith("--") for ln in text.splitlines()):
        return ""
    return text


def parse_test(expr: str) -> ModelTest:
    """Parse one ``kind(args)`` test expression. Raises ValueError."""
    m = _TEST_CALL_RE.match(expr.strip())
    if not m:
        raise ValueError(f"malformed test {expr!r} (expected kind(args))")
    kind = m.group(1).lower()
    args = split_top_level(m.group(2))

    if kind == "not_null":
        if len(args) != 1:
            raise ValueError(f"not_null takes exactly 1 column, got {len(args)}")
        return ModelTest(kind=kind, columns=(_column(args[0]),))

    if kind == "unique":
        if not args:
            raise ValueError("unique takes at least 1 column")
        return ModelTest(kind=kind, columns=tuple(_column(a) for a in args))

    if kind == "accepted_values":
        if len(args) != 2:
            raise ValueError(f"accepted_values takes a column and a value list, got {len(args)} arguments")
        return ModelTest(kind=kind, columns=(_column(args[0]),), values=tuple(_value_list(args[1])))

    if kind == "relationships":
        if len(args) != 2:
            raise ValueError(f"relationships takes a column and schema.table.column, got {len(args)} arguments")
        parts = args[1].split(".")
        if len(parts) != 3:
            raise ValueError(f"relationships target {args[1]!r}: expected schema.table.column")
        ref_schema, ref_table, ref_column = (_column(p) for p in parts)
        return ModelTest(
            kind=kind,
            columns=(_column(args[0]),),
            ref_model=f"{ref_schema}.{ref_table}",
            ref_column=ref_column,
        )

    raise ValueError(f"unknown test type {kind!r} (expected one of: {', '.join(TEST_KINDS)})")


def _column(value: str) -> str:
    return validate_identifier(value.strip().lower(), "column")


def _value_list(raw: str) -> list[str]:
    raw = raw.strip()
    if not (raw.startswith("[") and raw.endswith("]")):
        raise ValueError("accepted_values expects a bracketed list, e.g. ['a', 'b']")
    values = []
    for item in split_top_level(raw[1:-1]):
        quote = item[:1]
        if len(item) < 2 or quote not in ("'", '"') or item[-1] != quote:
            raise ValueError(f"accepted_values entries must be quoted strings, got {item}")
        values.append(item[1:-1].replace(quote * 2, quote))
    if not values:
        raise ValueError("accepted_values list is empty")
    return values

