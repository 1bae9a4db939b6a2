"""CLI interface for pgforge.

The Typer app and shared helpers live here; each module registers its commands.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

app = typer.Typer(
    name="pgforge",
    help="SQL model transformations for PostgreSQL: views, table swaps and incremental merges.",
    no_args_is_help=True,
)
console = Console()

# Exit codes shared by every command
EXIT_CONNECTION = 11
EXIT_CONFIG = 12


@app.callback()
def main(
    log_level: Annotated[str, typer.Option("--log-level", help="Logging level (DEBUG, INFO, WARNING, ERROR)")] = "WARNING",
) -> None:
    """PostgreSQL-native model runner."""
    from pgforge import setup_logging

    setup_logging(log_level)


def _resolve_project(project_dir: Path | None = None) -> Path:
    project_dir = project_dir or Path.cwd()
    if not (project_dir / "project.yml").exists() and not (project_dir / "models").is_dir():
        console.print(f"[red]No project.yml or models/ directory found in {project_dir}[/red]")
        raise typer.Exit(EXIT_CONFIG)
    return project_dir


def _load_config(project_dir: Path):
    """Load project config, exiting with the config error code on failure."""
    from pgforge.config import ConfigError, load_project

    try:
        return load_project(project_dir)
    except ConfigError as e:
        console.print(f"[red]Invalid configuration:[/red] {e}")
        raise typer.Exit(EXIT_CONFIG)


def _connect(config):
    """Open the project's database session or exit with a connection error."""
    import psycopg

    from pgforge.engine.database import connect
    from pgforge.engine.secrets import mask_url

    url = config.database.url
    if not url:
        console.print("[red]No database URL configured.[/red] Set database.url in project.yml or DATABASE_URL.")
        raise typer.Exit(EXIT_CONFIG)
    try:
        return connect(
            url,
            statement_timeout=config.database.statement_timeout,
            lock_timeout=config.database.lock_timeout,
            application_name=config.database.application_name,
        )
    except psycopg.Error as e:
        console.print(f"[red]Could not connect to {mask_url(url)}:[/red] {str(e).strip()}")
        raise typer.Exit(EXIT_CONNECTION)


# Import submodules so they register their commands on `app`.
from pgforge.cli import lint  # noqa: E402, F401
from pgforge.cli import models  # noqa: E402, F401
