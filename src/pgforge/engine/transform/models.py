"""Data classes for the SQL transformation engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Union

MATERIALIZATIONS = ("view", "table", "incremental")
TEST_KINDS = ("not_null", "unique", "accepted_values", "relationships")

# Per-model lifecycle within one invocation
PENDING = "pending"
BUILDING = "building"
BUILT = "built"
FAILED = "failed"
TEST_PENDING = "test_pending"
TEST_PASSED = "test_passed"
TEST_FAILED = "test_failed"
SKIPPED = "skipped"
PLANNED = "planned"  # dry run: compiled, nothing executed

# An upstream node in one of these states skips its descendants
BLOCKING_STATUSES = frozenset({FAILED, TEST_FAILED, SKIPPED})


@dataclass(frozen=True)
class SingleBody:
    """A model with one SQL body used for every build."""

    sql: str


@dataclass(frozen=True)
class SplitBody:
    """A two-section model: ``@base`` for full builds, ``@incremental`` for deltas."""

    base: str
    incremental: str


ModelBody = Union[SingleBody, SplitBody]


@dataclass(frozen=True)
class ModelTest:
    """A declarative assertion attached to a model."""

    kind: str  # one of TEST_KINDS
    columns: tuple[str, ...]
    values: tuple[str, ...] = ()  # accepted_values
    ref_model: str | None = None  # relationships: "schema.table"
    ref_column: str | None = None  # relationships: column in ref_model

    @property
    def expression(self) -> str:
        if self.kind == "accepted_values":
            quoted = ", ".join("'" + v.replace("'", "''") + "'" for v in self.values)
            return f"accepted_values({self.columns[0]}, [{quoted}])"
        if self.kind == "relationships":
            return f"relationships({self.columns[0]}, {self.ref_model}.{self.ref_column})"
        return f"{self.kind}({', '.join(self.columns)})"


@dataclass
class SQLModel:
    """A single SQL transformation model."""

    path: Path
    name: str  # e.g. "user_stats"
    schema: str  # e.g. "marts"
    full_name: str  # e.g. "marts.user_stats"
    sql: str  # raw file content
    body: ModelBody
    materialized: str  # "view", "table", or "incremental"
    depends_on: list[str] = field(default_factory=list)  # declared in "-- deps:"
    detected_deps: list[str] = field(default_factory=list)
    unqualified_refs: list[str] = field(default_factory=list)
    unique_key: list[str] = field(default_factory=list)
    watermark: str | None = None
    tags: list[str] = field(default_factory=list)
    tests: list[ModelTest] = field(default_factory=list)
    description: str = ""
    header_lines: dict[str, int] = field(default_factory=dict)  # key -> 1-based line

    @property
    def query(self) -> str:
        """SQL used for a full build."""
        if isinstance(self.body, SplitBody):
            return self.body.base
        return self.body.sql

    @property
    def incremental_query(self) -> str:
        """SQL used to compute an incremental delta."""
        if isinstance(self.body, SplitBody):
            return self.body.incremental
        return self.body.sql

    @property
    def dependencies(self) -> list[str]:
        """Declared and detected dependencies, without self references."""
        deps = set(self.depends_on) | set(self.detected_deps)
        deps.discard(self.full_name)
        return sorted(deps)


@dataclass
class TestResult:
    """Outcome of one assertion against a built model."""

    __test__ = False  # not a pytest class

    expression: str
    passed: bool
    violations: int = 0
    detail: str = ""
    sql: str = ""


@dataclass
class ModelResult:
    """Full result from processing a single model."""

    name: str
    status: str = PENDING
    action: str = ""  # e.g. "view", "table swap", "incremental merge"
    duration_ms: int = 0
    row_count: int | None = None
    error: str | None = None
    statements: list[str] = field(default_factory=list)
    tests: list[TestResult] = field(default_factory=list)


@dataclass
class RunResult:
    """Everything one invocation produced, in execution order."""

    results: dict[str, ModelResult] = field(default_factory=dict)
    cancelled: bool = False
    problems: list[str] = field(default_factory=list)  # errors not tied to a graph node


# Catalog sync states reported by ``status``
SYNCED = "synced"
MISSING = "missing"
TYPE_MISMATCH = "type_mismatch"


@dataclass
class ModelStatus:
    """How a model's target compares with what the catalog holds."""

    name: str
    materialized: str
    status: str  # SYNCED, MISSING or TYPE_MISMATCH
    expected_kind: str  # "view" or "table"
    actual_kind: str | None = None
    row_count: int | None = None

    @property
    def synced(self) -> bool:
        return self.status == SYNCED
