"""Lint commands: deps and qualify."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Optional

import typer

from pgforge.cli import _load_config, _resolve_project, app, console

lint_app = typer.Typer(name="lint", help="Static checks over model files (no database needed).")
app.add_typer(lint_app)


def _report(findings: list, fix: bool) -> None:
    from pgforge.lint.linter import print_findings

    print_findings(findings)
    remaining = [f for f in findings if not f.fixed]
    fixed = len(findings) - len(remaining)
    if fix and fixed:
        console.print(f"[green]{fixed} fixed.[/green]")
    if remaining:
        hint = "" if fix else " Run with [bold]--fix[/bold] to auto-fix what can be fixed."
        console.print(f"\n[red]{len(remaining)} finding(s).[/red]{hint}")
        raise typer.Exit(1)


@lint_app.command("deps")
def lint_deps_cmd(
    fix: Annotated[bool, typer.Option("--fix", help="Rewrite -- deps: lines to match the SQL")] = False,
    project_dir: Annotated[Optional[Path], typer.Option("--project", "-p", help="Project directory (default: current dir)")] = None,
) -> None:
    """Compare declared -- deps: with the tables each model actually reads."""
    from pgforge.lint.linter import lint_deps

    project_dir = _resolve_project(project_dir)
    config = _load_config(project_dir)
    sources = config.models.sources or None
    _report(lint_deps(config.models_path, sources=sources, fix=fix), fix)


@lint_app.command("qualify")
def lint_qualify_cmd(
    fix: Annotated[bool, typer.Option("--fix", help="Qualify references that match exactly one model or source")] = False,
    project_dir: Annotated[Optional[Path], typer.Option("--project", "-p", help="Project directory (default: current dir)")] = None,
) -> None:
    """Flag table references without a schema prefix."""
    from pgforge.lint.linter import lint_qualify

    project_dir = _resolve_project(project_dir)
    config = _load_config(project_dir)
    _report(lint_qualify(config.models_path, sources=config.models.sources, fix=fix), fix)
