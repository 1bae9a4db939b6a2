"""Loads connection secrets from a project-local .env file."""

from __future__ import annotations

import os
import re
from pathlib import Path

_URL_PASSWORD_RE = re.compile(r"(://[^:/@]+:)([^@]+)(@)")


def load_env(project_dir: Path) -> dict[str, str]:
    """Load secrets from .env file into os.environ. Returns loaded keys.

    Variables already set in the environment win over the file.
    """
    env_path = project_dir / ".env"
    loaded: dict[str, str] = {}
    if not env_path.exists():
        return loaded

    for line in env_path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, _, value = line.partition("=")
        key = key.strip()
        if key.startswith("export "):
            key = key[len("export "):].strip()
        value = value.strip()
        # Strip surrounding quotes
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
            value = value[1:-1]
        os.environ.setdefault(key, value)
        loaded[key] = value

    return loaded


def mask_url(url: str) -> str:
    """Hide the password part of a connection URL for display."""
    return _URL_PASSWORD_RE.sub(r"\1***\3", url)

