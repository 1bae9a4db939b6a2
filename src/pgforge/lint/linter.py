"""Static checks over model files: declared deps and schema qualification."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from rich.console import Console
from rich.table import Table

from pgforge.engine.sql_analysis import extract_unqualified_refs, parse_header
from pgforge.engine.transform.discovery import discover_models
from pgforge.engine.transform.errors import ParseError

console = Console()
logger = logging.getLogger("pgforge.lint")


@dataclass
class LintFinding:
    file: str
    line: int
    model: str
    rule: str  # "deps", "qualify" or "parse"
    message: str
    fixable: bool = False
    fixed: bool = False


def _rel(path: Path, models_dir: Path) -> str:
    try:
        return str(path.relative_to(models_dir.parent))
    except ValueError:
        return str(path)


def lint_deps(
    models_dir: Path,
    sources: list[str] | None = None,
    fix: bool = False,
) -> list[LintFinding]:
    """Compare each model's ``-- deps:`` line with the references in its SQL.

    Reports detected-but-undeclared (missing) and declared-but-undetected
    (extraneous) entries. When ``sources`` is given, detected references that
    are neither models nor declared sources are reported too. With ``fix``
    the deps line is rewritten to the sorted detected set.
    """
    models, errors = discover_models(models_dir)
    findings = _parse_findings(errors, models_dir)
    known = {m.full_name for m in models} | set(sources or [])

    for m in models:
        declared = set(m.depends_on)
        detected = set(m.detected_deps)
        file = _rel(m.path, models_dir)
        line = m.header_lines.get("deps", 1)
        model_findings: list[LintFinding] = []

        for dep in sorted(detected - declared):
            model_findings.append(LintFinding(
                file, line, m.full_name, "deps", f"missing dependency {dep} (referenced in SQL)", fixable=True,
            ))
        for dep in sorted(declared - detected):
            model_findings.append(LintFinding(
                file, line, m.full_name, "deps", f"extraneous dependency {dep} (not referenced in SQL)", fixable=True,
            ))
        if sources is not None:
            for dep in sorted(detected - known):
                findings.append(LintFinding(
                    file, line, m.full_name, "deps", f"unknown relation {dep} (not a model or declared source)",
                ))

        if fix and model_findings:
            m.path.write_text(rewrite_deps_line(m.sql, sorted(detected)))
            logger.info("Rewrote deps for %s", m.full_name)
            for f in model_findings:
                f.fixed = True
        findings.extend(model_findings)

    return findings


def rewrite_deps_line(sql: str, deps: list[str]) -> str:
    """Replace (or insert) the ``-- deps:`` header line.

    An empty list removes the line. A new line goes right after the
    ``-- materialized:`` line, or at the top of the file.
    """
    header = parse_header(sql)
    lines = sql.split("\n")
    new_line = f"-- deps: {', '.join(deps)}" if deps else None

    if "deps" in header.lines:
        idx = header.lines["deps"] - 1
        if new_line is None:
            del lines[idx]
        else:
            lines[idx] = new_line
    elif new_line is not None:
        idx = header.lines.get("materialized", 0)
        lines.insert(idx, new_line)
    return "\n".join(lines)


def lint_qualify(
    models_dir: Path,
    sources: list[str] | None = None,
    fix: bool = False,
) -> list[LintFinding]:
    """Flag table references without a schema prefix.

    Unqualified names never become graph edges. With ``fix`` a reference is
    qualified when exactly one model or declared source has that table name.
    """
    models, errors = discover_models(models_dir)
    findings = _parse_findings(errors, models_dir)
    candidates: dict[str, list[str]] = {}
    for name in sorted({m.full_name for m in models} | set(sources or [])):
        candidates.setdefault(name.split(".", 1)[1], []).append(name)

    for m in models:
        refs = extract_unqualified_refs(m.sql)
        if not refs:
            continue
        file = _rel(m.path, models_dir)
        replacements: list[tuple[int, int, str]] = []
        model_findings: list[LintFinding] = []
        for ref in refs:
            line = m.sql.count("\n", 0, ref.start) + 1
            options = [c for c in candidates.get(ref.name, []) if c != m.full_name]
            if len(options) == 1:
                message = f"unqualified table reference {ref.name} (did you mean {options[0]}?)"
            elif options:
                message = f"unqualified table reference {ref.name} (ambiguous: {', '.join(options)})"
            else:
                message = f"unqualified table reference {ref.name}"
            finding = LintFinding(file, line, m.full_name, "qualify", message, fixable=len(options) == 1)
            model_findings.append(finding)
            if fix and finding.fixable:
                replacements.append((ref.start, ref.end, options[0]))
                finding.fixed = True

        if replacements:
            sql = m.sql
            for start, end, name in sorted(replacements, reverse=True):
                sql = sql[:start] + name + sql[end:]
            m.path.write_text(sql)
            logger.info("Qualified %d reference(s) in %s", len(replacements), m.full_name)
        findings.extend(model_findings)

    return findings


def _parse_findings(errors: list[ParseError], models_dir: Path) -> list[LintFinding]:
    return [
        LintFinding(_rel(e.path, models_dir), e.line, e.model or "", "parse", e.message)
        for e in errors
    ]


def print_findings(findings: list[LintFinding], title: str = "Lint Findings") -> None:
    """Pretty-print lint findings."""
    if not findings:
        console.print("[green]All models pass linting.[/green]")
        return

    table = Table(title=title)
    table.add_column("File", style="cyan")
    table.add_column("Line", justify="right")
    table.add_column("Rule", style="yellow")
    table.add_column("Message")
    table.add_column("Fixed")

    for f in findings:
        fixed = "[green]yes[/green]" if f.fixed else ("no" if f.fixable else "")
        table.add_row(f.file, str(f.line), f.rule, f.message, fixed)

    console.print(table)
