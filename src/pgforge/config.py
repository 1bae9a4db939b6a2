"""Project configuration: project.yml parsing and defaults."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

_QUALIFIED_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_$]*\.[A-Za-z_][A-Za-z0-9_$]*$")


class ConfigError(Exception):
    """project.yml is unreadable or invalid."""


class DatabaseConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    url: str = ""
    statement_timeout: str | None = None  # e.g. "30s", passed to SET statement_timeout
    lock_timeout: str | None = None
    application_name: str = "pgforge"

    @field_validator("statement_timeout", "lock_timeout", mode="before")
    @classmethod
    def _timeout_to_str(cls, value: Any) -> Any:
        # YAML reads a bare "30000" as an int; postgres takes it as milliseconds
        if isinstance(value, int):
            return str(value)
        return value


class ModelsConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    path: str = "models"
    target: str = "target"
    sources: list[str] = Field(default_factory=list)  # externally owned "schema.table" names
    selectors: list[str] = Field(default_factory=list)  # used when a command gets none

    @field_validator("sources")
    @classmethod
    def _qualified_sources(cls, value: list[str]) -> list[str]:
        for src in value:
            if not _QUALIFIED_RE.match(src):
                raise ValueError(f"source {src!r}: expected schema.table format")
        return [s.lower() for s in value]


class ProjectConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = "default"
    description: str = ""
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    models: ModelsConfig = Field(default_factory=ModelsConfig)
    project_dir: Path = Field(default_factory=Path.cwd)

    @property
    def models_path(self) -> Path:
        return self.project_dir / self.models.path

    @property
    def target_path(self) -> Path:
        return self.project_dir / self.models.target


def _expand_env_vars(value: Any) -> Any:
    """Expand ${ENV_VAR} references in string values."""
    if isinstance(value, str):
        return re.sub(
            r"\$\{(\w+)\}",
            lambda m: os.environ.get(m.group(1), m.group(0)),
            value,
        )
    if isinstance(value, dict):
        return {k: _expand_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env_vars(v) for v in value]
    return value


def load_project(project_dir: Path | None = None) -> ProjectConfig:
    """Load project.yml from the given directory (or cwd).

    The project's .env is loaded first so ``${VAR}`` references can use it.
    Without a project.yml the defaults apply. ``database.url`` falls back to
    the DATABASE_URL environment variable.
    """
    from pgforge.engine.secrets import load_env

    project_dir = Path(project_dir) if project_dir else Path.cwd()
    config_path = project_dir / "project.yml"

    load_env(project_dir)

    raw: dict[str, Any] = {}
    if config_path.exists():
        try:
            raw = yaml.safe_load(config_path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"{config_path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigError(f"{config_path}: expected a mapping at the top level")
        raw = _expand_env_vars(raw)

    db_raw = dict(raw.get("database") or {})
    url = db_raw.get("url") or ""
    if not url or url.startswith("${"):
        db_raw["url"] = os.environ.get("DATABASE_URL", "")

    try:
        return ProjectConfig(
            name=raw.get("name", project_dir.name),
            description=raw.get("description", ""),
            database=DatabaseConfig(**db_raw),
            models=ModelsConfig(**(raw.get("models") or {})),
            project_dir=project_dir,
        )
    except ValueError as e:
        raise ConfigError(f"{config_path}: {e}") from e
