"""Model commands: run, compile, test, graph, status."""

from __future__ import annotations

import signal
import threading
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.table import Table

from pgforge.cli import EXIT_CONFIG, _connect, _load_config, _resolve_project, app, console

SelectOption = Annotated[
    Optional[list[str]],
    typer.Option("--select", "-s", help="Selector: schema.name, tag:t, deps:x, downstream:x, tree:x (repeatable)"),
]
ExcludeOption = Annotated[
    Optional[list[str]],
    typer.Option("--exclude", "-e", help="Selector to leave out (repeatable)"),
]
ProjectOption = Annotated[
    Optional[Path],
    typer.Option("--project", "-p", help="Project directory (default: current dir)"),
]

_STATUS_STYLES = {
    "test_passed": "green",
    "built": "green",
    "planned": "cyan",
    "test_failed": "yellow",
    "failed": "red",
    "skipped": "dim",
}


@app.command()
def run(
    select: SelectOption = None,
    exclude: ExcludeOption = None,
    full_refresh: Annotated[bool, typer.Option("--full-refresh", help="Rebuild incremental models from scratch")] = False,
    dry_run: Annotated[bool, typer.Option("--dry-run", help="Compile and print statements without running them")] = False,
    fail_fast: Annotated[bool, typer.Option("--fail-fast", "-x", help="Stop after the first failure")] = False,
    no_tests: Annotated[bool, typer.Option("--no-tests", help="Skip model tests after building")] = False,
    project_dir: ProjectOption = None,
) -> None:
    """Build selected models in dependency order, then run their tests."""
    from pgforge.engine.transform import CycleError, RunOptions, SelectorError, exit_code, run_models
    from pgforge.engine.transform.orchestration import EXIT_INTERRUPTED

    project_dir = _resolve_project(project_dir)
    config = _load_config(project_dir)
    options = RunOptions(
        selectors=select or config.models.selectors,
        exclude=exclude or [],
        full_refresh=full_refresh,
        dry_run=dry_run,
        fail_fast=fail_fast,
        run_tests=not no_tests,
        target_dir=config.target_path,
    )

    mode = " [dim](dry run)[/dim]" if dry_run else ""
    console.print(f"[bold]Running models{mode}:[/bold]")

    conn = _connect(config)
    cancel = threading.Event()
    previous = signal.signal(signal.SIGTERM, lambda signum, frame: cancel.set())
    try:
        result = run_models(conn, config.models_path, options, cancel)
    except (CycleError, SelectorError) as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(EXIT_CONFIG)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted; the model in progress was rolled back.[/yellow]")
        raise typer.Exit(EXIT_INTERRUPTED)
    finally:
        signal.signal(signal.SIGTERM, previous)
        conn.close()

    print_run_summary(result)
    code = exit_code(result)
    if code:
        raise typer.Exit(code)


@app.command()
def test(
    select: SelectOption = None,
    exclude: ExcludeOption = None,
    project_dir: ProjectOption = None,
) -> None:
    """Run model tests against what is already built."""
    from pgforge.engine.transform import CycleError, SelectorError, exit_code, run_model_tests

    project_dir = _resolve_project(project_dir)
    config = _load_config(project_dir)
    console.print("[bold]Testing models:[/bold]")

    conn = _connect(config)
    try:
        result = run_model_tests(conn, config.models_path, select or config.models.selectors, exclude)
    except (CycleError, SelectorError) as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(EXIT_CONFIG)
    finally:
        conn.close()

    print_run_summary(result)
    code = exit_code(result)
    if code:
        raise typer.Exit(code)


@app.command(name="compile")
def compile_cmd(
    select: SelectOption = None,
    exclude: ExcludeOption = None,
    project_dir: ProjectOption = None,
) -> None:
    """Write compiled SQL for a fresh database to target/compiled/ (no connection needed)."""
    from pgforge.engine.transform import CycleError, SelectorError, compile_models
    from pgforge.engine.transform.orchestration import EXIT_CRITICAL

    project_dir = _resolve_project(project_dir)
    config = _load_config(project_dir)

    try:
        compiled, errors = compile_models(
            config.models_path, config.target_path, select or config.models.selectors, exclude,
        )
    except (CycleError, SelectorError) as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(EXIT_CONFIG)

    for cm in compiled:
        console.print(f"  [green]done[/green]  [bold]{cm.model}[/bold] ({cm.action})")
    for err in errors:
        console.print(f"  [red]fail[/red]  {err}")
    console.print(f"\n  {len(compiled)} compiled to {config.target_path / 'compiled'}, {len(errors)} errors")
    if errors:
        raise typer.Exit(EXIT_CRITICAL)


@app.command()
def graph(
    select: SelectOption = None,
    exclude: ExcludeOption = None,
    project_dir: ProjectOption = None,
) -> None:
    """Show the execution order, layer by layer."""
    from pgforge.engine.transform import CycleError, SelectorError, load_graph, resolve_selectors

    project_dir = _resolve_project(project_dir)
    config = _load_config(project_dir)

    try:
        dag = load_graph(config.models_path)
        selected = set(resolve_selectors(dag, select or config.models.selectors, exclude))
    except (CycleError, SelectorError) as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(EXIT_CONFIG)

    for idx, layer in enumerate(dag.layers, 1):
        names = [n for n in layer if n in selected]
        if not names:
            continue
        console.print(f"[bold]Layer {idx}[/bold]")
        for name in names:
            if dag.is_source(name):
                console.print(f"  [dim]{name} (source)[/dim]")
            elif name in dag.broken:
                console.print(f"  [red]{name} (parse error)[/red]")
            else:
                model = dag.models[name]
                deps = ", ".join(sorted(dag.parents(name))) or "-"
                console.print(f"  {name} [dim]({model.materialized}; reads {deps})[/dim]")


@app.command()
def status(
    select: SelectOption = None,
    exclude: ExcludeOption = None,
    project_dir: ProjectOption = None,
) -> None:
    """Show which models exist in the database with the right kind. Exits 1 when a run is needed."""
    from pgforge.engine.transform import CycleError, SelectorError, model_status
    from pgforge.engine.transform.orchestration import EXIT_WARNING

    project_dir = _resolve_project(project_dir)
    config = _load_config(project_dir)

    conn = _connect(config)
    try:
        statuses = model_status(conn, config.models_path, select or config.models.selectors, exclude)
    except (CycleError, SelectorError) as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(EXIT_CONFIG)
    finally:
        conn.close()

    if not statuses:
        console.print("[yellow]No models found.[/yellow]")
        return

    table = Table(title=f"Models ({len(statuses)} total)")
    table.add_column("Model", style="cyan")
    table.add_column("Materialized")
    table.add_column("Status")
    table.add_column("Rows", justify="right")
    table.add_column("Detail")
    for s in statuses:
        if s.status == "synced":
            label, detail = "[green]synced[/green]", ""
        elif s.status == "missing":
            label, detail = "[red]missing[/red]", f"run: pgforge run -s {s.name}"
        else:
            label, detail = "[yellow]type mismatch[/yellow]", f"expected {s.expected_kind}, found {s.actual_kind}"
        table.add_row(
            s.name,
            s.materialized,
            label,
            f"{s.row_count:,}" if s.row_count is not None else "",
            detail,
        )
    console.print(table)

    counts = {state: sum(1 for s in statuses if s.status == state) for state in ("synced", "missing", "type_mismatch")}
    console.print(
        f"  {counts['synced']} synced, {counts['missing']} missing, {counts['type_mismatch']} type mismatched"
    )
    if any(not s.synced for s in statuses):
        raise typer.Exit(EXIT_WARNING)


def print_run_summary(result) -> None:
    """Per-model status table."""
    if not result.results:
        return
    table = Table(title="Run Summary")
    table.add_column("Model", style="cyan")
    table.add_column("Status")
    table.add_column("Action")
    table.add_column("Rows", justify="right")
    table.add_column("Time", justify="right")
    table.add_column("Detail")

    for r in result.results.values():
        style = _STATUS_STYLES.get(r.status, "")
        failed_tests = [t.expression for t in r.tests if not t.passed]
        detail = r.error or ("failed: " + ", ".join(failed_tests) if failed_tests else "")
        table.add_row(
            r.name,
            f"[{style}]{r.status}[/{style}]" if style else r.status,
            r.action,
            f"{r.row_count:,}" if r.row_count is not None else "",
            f"{r.duration_ms}ms" if r.duration_ms else "",
            detail,
        )
    console.print(table)

    counts: dict[str, int] = {}
    for r in result.results.values():
        counts[r.status] = counts.get(r.status, 0) + 1
    console.print("  " + ", ".join(f"{n} {status}" for status, n in sorted(counts.items())))
