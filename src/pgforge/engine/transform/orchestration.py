"""Run orchestration: parse -> graph -> select -> compile -> execute -> test."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path

import psycopg
from rich.console import Console

from pgforge.engine.database import count_rows, ensure_meta_table, relation_kind, server_version

from .compilation import CompiledModel, ServerInfo, TargetState, compile_model, relation, write_compiled
from .discovery import discover_models
from .errors import CompileError, ExecutionError, ParseError
from .execution import describe_model, execute_compiled, read_target_state
from .graph import DependencyGraph, build_graph
from .models import (
    BLOCKING_STATUSES,
    BUILDING,
    BUILT,
    FAILED,
    MISSING,
    PLANNED,
    SKIPPED,
    SYNCED,
    TEST_FAILED,
    TEST_PASSED,
    TEST_PENDING,
    TYPE_MISMATCH,
    ModelResult,
    ModelStatus,
    RunResult,
)
from .quality import run_tests
from .selection import resolve_selectors

console = Console()
logger = logging.getLogger("pgforge.transform")

# Process exit codes
EXIT_OK = 0
EXIT_WARNING = 1  # tests failed
EXIT_CRITICAL = 2  # parse, compile or execution failure
EXIT_CONNECTION = 11
EXIT_CONFIG = 12  # bad config, cycle or selector: nothing ran
EXIT_INTERRUPTED = 130


@dataclass
class RunOptions:
    selectors: list[str] = field(default_factory=list)
    exclude: list[str] = field(default_factory=list)
    full_refresh: bool = False
    dry_run: bool = False
    fail_fast: bool = False
    run_tests: bool = True
    target_dir: Path | None = None  # where compiled SQL is written


def load_graph(models_dir: Path) -> DependencyGraph:
    """Parse every model and build the graph. Raises CycleError."""
    models, errors = discover_models(models_dir)
    for err in errors:
        logger.warning("Parse error: %s", err)
    return build_graph(models, errors)


def run_models(
    conn: psycopg.Connection,
    models_dir: Path,
    options: RunOptions | None = None,
    cancel: threading.Event | None = None,
) -> RunResult:
    """Build the selected models in dependency order.

    Each model runs in its own transaction, then its tests run. A failed,
    test-failed or skipped model skips everything downstream of it; with
    ``fail_fast`` the first failure skips everything not yet started. Once
    ``cancel`` is set no further model is started.

    Raises CycleError or SelectorError before any SQL runs.
    """
    options = options or RunOptions()
    graph = load_graph(models_dir)
    selected = resolve_selectors(graph, options.selectors, options.exclude)
    run = RunResult()
    _report_unattached(graph, run)

    to_build = [name for name in selected if not graph.is_source(name)]
    if not to_build:
        console.print("[yellow]No models selected.[/yellow]")
        return run

    server = ServerInfo(server_version(conn))
    if not options.dry_run and any(
        graph.models[n].materialized == "incremental" for n in to_build if n in graph.models
    ):
        ensure_meta_table(conn)

    rebuilt = set(to_build)
    stop_reason: str | None = None
    for name in to_build:
        result = ModelResult(name=name)
        run.results[name] = result

        if cancel is not None and cancel.is_set():
            run.cancelled = True
            stop_reason = "cancelled"
        if stop_reason:
            _skip(result, stop_reason)
            continue

        if name in graph.broken:
            result.status = FAILED
            result.error = str(graph.broken[name])
            console.print(f"  [red]fail[/red]  [bold]{name}[/bold]: {graph.broken[name].message}")
        else:
            # Nearest first; an unselected intermediate does not hide a failure
            blocked = _blocking(run, graph.parents(name)) or _blocking(run, graph.upstream(name))
            if blocked:
                _skip(result, f"upstream {blocked[0]} {run.results[blocked[0]].status}")
                continue
            _build_model(conn, graph, result, server, options, rebuilt)

        if options.fail_fast and result.status in (FAILED, TEST_FAILED):
            stop_reason = f"fail-fast after {name}"

    return run


def _blocking(run: RunResult, names: set[str]) -> list[str]:
    return sorted(n for n in names if n in run.results and run.results[n].status in BLOCKING_STATUSES)


def _report_unattached(graph: DependencyGraph, run: RunResult) -> None:
    for err in graph.unattached:
        run.problems.append(str(err))
        console.print(f"  [red]error[/red] {err}")


def _skip(result: ModelResult, reason: str) -> None:
    result.status = SKIPPED
    result.error = reason
    logger.info("Skipping %s: %s", result.name, reason)
    console.print(f"  [dim]skip[/dim]  [bold]{result.name}[/bold] ({reason})")


def _build_model(
    conn: psycopg.Connection,
    graph: DependencyGraph,
    result: ModelResult,
    server: ServerInfo,
    options: RunOptions,
    rebuilt: set[str],
) -> None:
    model = graph.models[result.name]
    label = f"[bold]{model.full_name}[/bold] ({model.materialized})"
    result.status = BUILDING

    try:
        state = read_target_state(conn, model, options.full_refresh)
        compiled = compile_model(model, state, server, options.full_refresh)
    except CompileError as e:
        result.status = FAILED
        result.error = str(e)
        console.print(f"  [red]fail[/red]  {label}: {e.message}")
        return
    except psycopg.Error as e:
        result.status = FAILED
        result.error = str(e).strip()
        console.print(f"  [red]fail[/red]  {label}: {result.error}")
        return

    result.action = compiled.action
    result.statements = list(compiled.statements)
    if options.target_dir is not None:
        write_compiled(options.target_dir, compiled)

    if options.dry_run:
        if compiled.full_build and _inputs_exist(conn, graph, model.full_name, rebuilt):
            try:
                describe_model(conn, model)
            except CompileError as e:
                result.status = FAILED
                result.error = str(e)
                console.print(f"  [red]fail[/red]  {label}: {e.message}")
                return
        result.status = PLANNED
        console.print(f"  [cyan]plan[/cyan]  {label} -> {compiled.action}")
        for stmt in compiled.statements:
            console.print(f"[dim]{stmt};[/dim]", highlight=False)
        return

    try:
        result.duration_ms, result.row_count = execute_compiled(conn, model, compiled)
    except ExecutionError as e:
        result.status = FAILED
        result.error = str(e)
        console.print(f"  [red]fail[/red]  {label}: {e.message}")
        return

    result.status = BUILT
    suffix = (
        f" ({result.row_count:,} rows, {result.duration_ms}ms)"
        if result.row_count else f" ({result.duration_ms}ms)"
    )
    console.print(f"  [green]done[/green]  {label} {compiled.action}{suffix}")

    if options.run_tests:
        _test_model(conn, graph, result)


def _inputs_exist(conn: psycopg.Connection, graph: DependencyGraph, name: str, rebuilt: set[str]) -> bool:
    """Whether every parent already exists and is not about to be rebuilt."""
    for parent in graph.parents(name):
        if graph.is_source(parent):
            continue
        if parent in rebuilt:
            return False
        schema, rel = parent.split(".", 1)
        if relation_kind(conn, schema, rel) is None:
            return False
    return True


def _test_model(conn: psycopg.Connection, graph: DependencyGraph, result: ModelResult) -> None:
    model = graph.models[result.name]
    result.status = TEST_PENDING
    result.tests = run_tests(conn, model)
    for tr in result.tests:
        if tr.passed:
            console.print(f"         [green]pass[/green]  {tr.expression}")
        else:
            console.print(f"         [red]FAIL[/red]  {tr.expression} ({tr.detail})")
    result.status = TEST_PASSED if all(tr.passed for tr in result.tests) else TEST_FAILED


def run_model_tests(
    conn: psycopg.Connection,
    models_dir: Path,
    selectors: list[str] | None = None,
    exclude: list[str] | None = None,
) -> RunResult:
    """Run tests for the selected models without building anything."""
    graph = load_graph(models_dir)
    run = RunResult()
    _report_unattached(graph, run)
    for name in resolve_selectors(graph, selectors, exclude):
        if graph.is_source(name):
            continue
        result = ModelResult(name=name)
        run.results[name] = result
        if name in graph.broken:
            result.status = FAILED
            result.error = str(graph.broken[name])
            console.print(f"  [red]fail[/red]  [bold]{name}[/bold]: {graph.broken[name].message}")
            continue
        console.print(f"  [bold]{name}[/bold]")
        _test_model(conn, graph, result)
    return run


def compile_models(
    models_dir: Path,
    target_dir: Path,
    selectors: list[str] | None = None,
    exclude: list[str] | None = None,
) -> tuple[list[CompiledModel], list[ParseError | CompileError]]:
    """Compile selected models for a fresh target, without a database.

    Every model compiles along its first-run path. Compiled SQL is written
    under ``target_dir``.
    """
    graph = load_graph(models_dir)
    compiled: list[CompiledModel] = []
    errors: list[ParseError | CompileError] = []
    for name in resolve_selectors(graph, selectors, exclude):
        if graph.is_source(name):
            continue
        if name in graph.broken:
            errors.append(graph.broken[name])
            continue
        try:
            cm = compile_model(graph.models[name], TargetState())
        except CompileError as e:
            errors.append(e)
            continue
        write_compiled(target_dir, cm)
        compiled.append(cm)
    return compiled, errors


def model_status(
    conn: psycopg.Connection,
    models_dir: Path,
    selectors: list[str] | None = None,
    exclude: list[str] | None = None,
) -> list[ModelStatus]:
    """Compare each selected model with what currently occupies its target.

    A view model expects a view; table and incremental models expect a table.
    Read-only. Models that failed to parse are left out.
    """
    graph = load_graph(models_dir)
    statuses: list[ModelStatus] = []
    for name in resolve_selectors(graph, selectors, exclude):
        model = graph.models.get(name)
        if model is None:
            continue
        expected = "view" if model.materialized == "view" else "table"
        actual = relation_kind(conn, model.schema, model.name)
        if actual is None:
            statuses.append(ModelStatus(name, model.materialized, MISSING, expected))
            continue

        row_count = None
        try:
            row_count = count_rows(conn, relation(model))
        except psycopg.Error as e:
            logger.debug("Row count failed for %s: %s", name, e)
        state = SYNCED if actual == expected else TYPE_MISMATCH
        statuses.append(ModelStatus(name, model.materialized, state, expected, actual, row_count))
    return statuses


def exit_code(run: RunResult) -> int:
    """Exit code for the worst outcome in a run."""
    if run.cancelled:
        return EXIT_INTERRUPTED
    statuses = {r.status for r in run.results.values()}
    if FAILED in statuses or run.problems:
        return EXIT_CRITICAL
    if TEST_FAILED in statuses:
        return EXIT_WARNING
    return EXIT_OK
