"""Exception types raised by the transformation engine."""

from __future__ import annotations

from pathlib import Path


class PgforgeError(Exception):
    """Base class for all engine errors."""


class ParseError(PgforgeError):
    """A model file has malformed or missing metadata."""

    def __init__(self, path: Path | str, line: int, message: str, model: str | None = None) -> None:
        self.path = Path(path)
        self.line = line
        self.message = message
        # Qualified name when the path itself was well-formed
        self.model = model
        super().__init__(f"{self.path}:{line}: {message}")


class CycleError(PgforgeError):
    """The dependency graph contains a cycle; no execution order exists."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Dependency cycle detected: {' → '.join(cycle)}")


class CompileError(PgforgeError):
    """A model cannot be translated for its materialization kind."""

    def __init__(self, model: str, message: str) -> None:
        self.model = model
        self.message = message
        super().__init__(f"{model}: {message}")


class SelectorError(PgforgeError):
    """A selector term is malformed or names an unknown node."""


class ExecutionError(PgforgeError):
    """The database rejected a statement while building a model."""

    def __init__(
        self,
        model: str,
        message: str,
        sqlstate: str | None = None,
        statement: str | None = None,
    ) -> None:
        self.model = model
        self.message = message
        self.sqlstate = sqlstate
        self.statement = statement
        code = f" [{sqlstate}]" if sqlstate else ""
        super().__init__(f"{model}: {message}{code}")
