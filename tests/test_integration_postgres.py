"""End-to-end runs against a real PostgreSQL server.

Skipped unless PGFORGE_TEST_DATABASE_URL points at a database the tests may
create and drop the ``pgf_app`` and ``pgf_marts`` schemas in.
"""

import pytest

from pgforge.engine.database import read_watermark
from pgforge.engine.transform import RunOptions, run_models

from conftest import write_model

USER_ACTIVITY = """\
-- materialized: incremental
-- unique_key: user_id, activity_date
-- watermark: updated_at
-- tests: not_null(user_id), unique(user_id, activity_date)
@base
SELECT user_id, activity_date, count(*) AS events, max(updated_at) AS updated_at
FROM pgf_app.events
GROUP BY user_id, activity_date
@incremental
SELECT e.user_id, e.activity_date, count(*) AS events, max(e.updated_at) AS updated_at
FROM pgf_app.events e
WHERE (e.user_id, e.activity_date) IN (
    SELECT user_id, activity_date FROM pgf_app.events
    WHERE updated_at > (SELECT coalesce(max(updated_at), '-infinity') FROM ${this})
)
GROUP BY e.user_id, e.activity_date
"""


@pytest.fixture
def warehouse(pg_conn, models_dir):
    pg_conn.execute("""
        CREATE TABLE pgf_app.events (
            id serial PRIMARY KEY,
            user_id int,
            activity_date date NOT NULL,
            updated_at timestamptz NOT NULL
        )
    """)
    pg_conn.execute("""
        INSERT INTO pgf_app.events (user_id, activity_date, updated_at) VALUES
            (1, '2024-05-01', '2024-05-01 09:00+00'),
            (1, '2024-05-01', '2024-05-01 10:00+00'),
            (2, '2024-05-01', '2024-05-01 11:00+00'),
            (2, '2024-05-02', '2024-05-02 08:00+00')
    """)
    write_model(models_dir, "pgf_marts.user_activity", USER_ACTIVITY)
    return models_dir


def _contents(conn):
    return conn.execute(
        "SELECT user_id, activity_date, events, updated_at FROM pgf_marts.user_activity ORDER BY 1, 2"
    ).fetchall()


def _run(conn, models_dir, **kwargs):
    run = run_models(conn, models_dir, RunOptions(**kwargs))
    return run.results["pgf_marts.user_activity"]


def test_first_run_is_a_full_build(pg_conn, warehouse):
    result = _run(pg_conn, warehouse)
    assert result.status == "test_passed", result.error
    assert result.action == "incremental full build"
    assert result.row_count == 3
    assert read_watermark(pg_conn, "pgf_marts", "user_activity") is not None


def test_rerun_without_new_rows_changes_nothing(pg_conn, warehouse):
    _run(pg_conn, warehouse)
    before = _contents(pg_conn)
    watermark = read_watermark(pg_conn, "pgf_marts", "user_activity")

    result = _run(pg_conn, warehouse)
    assert result.status == "test_passed", result.error
    assert result.action in ("incremental merge", "incremental upsert")
    assert result.row_count == 0
    assert _contents(pg_conn) == before
    assert read_watermark(pg_conn, "pgf_marts", "user_activity") == watermark


def test_seen_key_updates_in_place_and_new_key_adds_one_row(pg_conn, warehouse):
    _run(pg_conn, warehouse)

    pg_conn.execute(
        "INSERT INTO pgf_app.events (user_id, activity_date, updated_at) "
        "VALUES (1, '2024-05-01', '2024-05-03 12:00+00')"
    )
    result = _run(pg_conn, warehouse)
    # Only the changed (user, day) group is merged
    assert result.row_count == 1
    assert len(_contents(pg_conn)) == 3
    rows = {(r[0], str(r[1])): r[2] for r in _contents(pg_conn)}
    assert rows[(1, "2024-05-01")] == 3

    pg_conn.execute(
        "INSERT INTO pgf_app.events (user_id, activity_date, updated_at) "
        "VALUES (3, '2024-05-03', '2024-05-03 13:00+00')"
    )
    result = _run(pg_conn, warehouse)
    assert result.row_count == 1
    assert len(_contents(pg_conn)) == 4


def test_full_refresh_matches_incremental_history(pg_conn, warehouse):
    _run(pg_conn, warehouse)
    pg_conn.execute(
        "INSERT INTO pgf_app.events (user_id, activity_date, updated_at) VALUES "
        "(2, '2024-05-02', '2024-05-04 09:00+00'), (4, '2024-05-04', '2024-05-04 10:00+00')"
    )
    _run(pg_conn, warehouse)
    incremental = _contents(pg_conn)

    _run(pg_conn, warehouse, full_refresh=True)
    assert _contents(pg_conn) == incremental
    _run(pg_conn, warehouse)
    assert _contents(pg_conn) == incremental


def test_failed_test_marks_the_model(pg_conn, models_dir):
    write_model(models_dir, "pgf_app.people", """\
        -- materialized: table
        -- tests: not_null(id), unique(id)
        SELECT * FROM (VALUES (1), (2), (NULL::int)) AS v (id)
    """)
    run = run_models(pg_conn, models_dir)
    result = run.results["pgf_app.people"]
    assert result.status == "test_failed"
    failed = [t for t in result.tests if not t.passed]
    assert [t.expression for t in failed] == ["not_null(id)"]
    assert failed[0].violations == 1
    # Tests never roll the build back
    assert pg_conn.execute("SELECT count(*) FROM pgf_app.people").fetchone() == (3,)

    path = models_dir / "pgf_app" / "people.sql"
    path.write_text(path.read_text().replace("(NULL::int)", "(3)"))
    run = run_models(pg_conn, models_dir)
    assert run.results["pgf_app.people"].status == "test_passed"


def test_failed_build_keeps_the_previous_table(pg_conn, models_dir):
    path = write_model(models_dir, "pgf_app.numbers", "-- materialized: table\nSELECT 1 AS n\n")
    run = run_models(pg_conn, models_dir)
    assert run.results["pgf_app.numbers"].status == "test_passed"

    path.write_text("-- materialized: table\nSELECT 1 / 0 AS n\n")
    run = run_models(pg_conn, models_dir)
    result = run.results["pgf_app.numbers"]
    assert result.status == "failed"
    assert "division by zero" in result.error
    assert pg_conn.execute("SELECT n FROM pgf_app.numbers").fetchall() == [(1,)]


def test_view_then_table_swap_replaces_the_view(pg_conn, models_dir):
    path = write_model(models_dir, "pgf_app.thing", "-- materialized: view\nSELECT 1 AS n\n")
    run_models(pg_conn, models_dir)
    path.write_text("-- materialized: table\nSELECT 2 AS n\n")
    run = run_models(pg_conn, models_dir)
    assert run.results["pgf_app.thing"].status == "test_passed"
    kind = pg_conn.execute(
        "SELECT c.relkind FROM pg_class c JOIN pg_namespace n ON n.oid = c.relnamespace "
        "WHERE n.nspname = 'pgf_app' AND c.relname = 'thing'"
    ).fetchone()
    assert kind == ("r",)
