"""SQL model transformation engine.

Parses annotated SQL files, builds the dependency graph, resolves selectors,
compiles each model for its materialization (view, table swap, incremental
merge with a stored watermark), executes in dependency order and runs the
declared tests.

    from pgforge.engine.transform import run_models, discover_models, SQLModel, ...
"""

from __future__ import annotations

# Data models
from .models import (
    ModelResult,
    ModelStatus,
    ModelTest,
    RunResult,
    SingleBody,
    SplitBody,
    SQLModel,
    TestResult,
)

# Errors
from .errors import (
    CompileError,
    CycleError,
    ExecutionError,
    ParseError,
    PgforgeError,
    SelectorError,
)

# Parsing and graph
from .discovery import discover_models, parse_model, parse_test
from .graph import DependencyGraph, build_graph, find_cycle

# Selection
from .selection import resolve_selectors

# Compilation
from .compilation import (
    CompiledModel,
    ServerInfo,
    TargetState,
    compile_model,
    write_compiled,
)

# Tests and execution
from .quality import compile_test, run_tests
from .execution import describe_model, execute_compiled, read_target_state

# Orchestration
from .orchestration import (
    RunOptions,
    compile_models,
    exit_code,
    load_graph,
    model_status,
    run_model_tests,
    run_models,
)

__all__ = [
    # Models
    "ModelResult",
    "ModelStatus",
    "ModelTest",
    "RunResult",
    "SingleBody",
    "SplitBody",
    "SQLModel",
    "TestResult",
    # Errors
    "CompileError",
    "CycleError",
    "ExecutionError",
    "ParseError",
    "PgforgeError",
    "SelectorError",
    # Parsing and graph
    "DependencyGraph",
    "build_graph",
    "discover_models",
    "find_cycle",
    "parse_model",
    "parse_test",
    # Selection
    "resolve_selectors",
    # Compilation
    "CompiledModel",
    "ServerInfo",
    "TargetState",
    "compile_model",
    "write_compiled",
    # Execution and tests
    "compile_test",
    "describe_model",
    "execute_compiled",
    "read_target_state",
    "run_tests",
    # Orchestration
    "RunOptions",
    "compile_models",
    "exit_code",
    "load_graph",
    "model_status",
    "run_model_tests",
    "run_models",
]
