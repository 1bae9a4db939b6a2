"""Declarative data tests run against built models."""

from __future__ import annotations

import logging

import psycopg

from pgforge.engine.utils import quote_ident, quote_literal, quote_relation

from .models import ModelTest, SQLModel, TestResult

logger = logging.getLogger("pgforge.transform")


def compile_test(model: SQLModel, test: ModelTest) -> str:
    """SQL returning a single violation count; zero means the test passes.

    Supported forms:
        not_null(col)
        unique(col, ...)
        accepted_values(col, ['a', 'b'])
        relationships(col, schema.table.column)
    """
    table = quote_relation(model.schema, model.name)

    if test.kind == "not_null":
        col = quote_ident(test.columns[0])
        return f"SELECT COUNT(*) AS violations FROM {table} WHERE {col} IS NULL"

    if test.kind == "unique":
        cols = ", ".join(quote_ident(c) for c in test.columns)
        return (
            f"SELECT COUNT(*) AS violations FROM (\n"
            f"  SELECT {cols} FROM {table} GROUP BY {cols} HAVING COUNT(*) > 1\n"
            f") AS duplicates"
        )

    if test.kind == "accepted_values":
        col = quote_ident(test.columns[0])
        allowed = ", ".join(quote_literal(v) for v in test.values)
        return (
            f"SELECT COUNT(*) AS violations FROM {table} "
            f"WHERE {col} IS NOT NULL AND {col}::text NOT IN ({allowed})"
        )

    if test.kind == "relationships":
        col = quote_ident(test.columns[0])
        ref_schema, ref_table = test.ref_model.split(".", 1)
        parent = quote_relation(ref_schema, ref_table)
        ref_col = quote_ident(test.ref_column)
        return (
            f"SELECT COUNT(*) AS violations FROM {table} AS child\n"
            f"WHERE child.{col} IS NOT NULL\n"
            f"  AND NOT EXISTS (SELECT 1 FROM {parent} AS parent WHERE parent.{ref_col} = child.{col})"
        )

    raise ValueError(f"Unknown test kind: {test.kind}")


def run_tests(conn: psycopg.Connection, model: SQLModel) -> list[TestResult]:
    """Run every test declared on a model.

    A query that errors counts as a failed test, like a violation would.
    """
    results: list[TestResult] = []
    for test in model.tests:
        sql = compile_test(model, test)
        try:
            row = conn.execute(sql).fetchone()
        except psycopg.Error as e:
            logger.debug("Test %s on %s errored: %s", test.expression, model.full_name, e)
            results.append(TestResult(
                expression=test.expression,
                passed=False,
                detail=f"Test error: {str(e).strip()}",
                sql=sql,
            ))
            continue
        violations = int(row[0]) if row else 0
        results.append(TestResult(
            expression=test.expression,
            passed=violations == 0,
            violations=violations,
            detail=f"{violations} violation(s)" if violations else "",
            sql=sql,
        ))
    return results
