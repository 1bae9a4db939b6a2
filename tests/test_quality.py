"""Tests for declarative model tests."""

from pathlib import Path

import psycopg
import pytest

from pgforge.engine.transform import compile_test, parse_model, parse_test, run_tests


@pytest.fixture
def model():
    sql = (
        "-- materialized: table\n"
        "-- tests: not_null(id), unique(id), accepted_values(status, ['open', 'closed']), "
        "relationships(user_id, app.users.id)\n"
        "SELECT 1 AS id, 'open' AS status, 1 AS user_id\n"
    )
    return parse_model(Path("models/app/tickets.sql"), sql, "app", "tickets")


def test_not_null_sql(model):
    sql = compile_test(model, parse_test("not_null(id)"))
    assert sql == 'SELECT COUNT(*) AS violations FROM "app"."tickets" WHERE "id" IS NULL'


def test_unique_sql_counts_duplicate_groups(model):
    sql = compile_test(model, parse_test("unique(a, b)"))
    assert 'GROUP BY "a", "b" HAVING COUNT(*) > 1' in sql


def test_accepted_values_sql_skips_nulls(model):
    sql = compile_test(model, parse_test("accepted_values(status, ['open', 'it''s'])"))
    assert "\"status\" IS NOT NULL AND \"status\"::text NOT IN ('open', 'it''s')" in sql


def test_relationships_sql(model):
    sql = compile_test(model, parse_test("relationships(user_id, app.users.id)"))
    assert 'FROM "app"."tickets" AS child' in sql
    assert 'NOT EXISTS (SELECT 1 FROM "app"."users" AS parent WHERE parent."id" = child."user_id")' in sql


def test_run_tests_all_pass(fake_conn, model):
    results = run_tests(fake_conn, model)
    assert [r.expression for r in results] == [
        "not_null(id)",
        "unique(id)",
        "accepted_values(status, ['open', 'closed'])",
        "relationships(user_id, app.users.id)",
    ]
    assert all(r.passed for r in results)
    assert len(fake_conn.statements_matching("AS violations")) == 4


def test_violations_fail_the_test(fake_conn, model):
    fake_conn.on(r"IS NULL$", [(3,)])
    results = run_tests(fake_conn, model)
    not_null = results[0]
    assert not not_null.passed
    assert not_null.violations == 3
    assert not_null.detail == "3 violation(s)"
    assert all(r.passed for r in results[1:])


def test_query_error_is_a_failed_test(fake_conn, model):
    fake_conn.on(r"NOT EXISTS", psycopg.errors.UndefinedTable('relation "app.users" does not exist'))
    results = run_tests(fake_conn, model)
    rel = results[-1]
    assert not rel.passed
    assert rel.detail.startswith("Test error: ")
    assert "does not exist" in rel.detail


def test_model_without_tests(fake_conn):
    m = parse_model(Path("models/app/plain.sql"), "-- materialized: view\nSELECT 1\n", "app", "plain")
    assert run_tests(fake_conn, m) == []
    assert fake_conn.executed == []
