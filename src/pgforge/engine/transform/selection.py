"""Selector language over the dependency graph.

Terms:
    marts.user_stats          exactly that node
    tag:daily                 models tagged ``daily``
    deps:marts.user_stats     the node and everything it reads, transitively
    downstream:app.users      the node and everything reading it, transitively
    tree:marts.user_stats     deps: and downstream: together

A selector is a union of terms. Exclude terms use the same grammar and are
subtracted from the union.
"""

from __future__ import annotations

import re

from .errors import SelectorError
from .graph import DependencyGraph

PREFIXES = ("tag", "deps", "downstream", "tree")

_TERM_SPLIT_RE = re.compile(r"[\s,]+")


def split_terms(selectors: list[str] | None) -> list[str]:
    """Flatten selector strings; each may hold several space/comma separated terms."""
    terms: list[str] = []
    for raw in selectors or []:
        terms.extend(t for t in _TERM_SPLIT_RE.split(raw.strip()) if t)
    return terms


def resolve_term(graph: DependencyGraph, term: str) -> set[str]:
    """Evaluate one selector term. Raises SelectorError for bad terms."""
    if ":" in term:
        prefix, _, value = term.partition(":")
        prefix = prefix.strip().lower()
        value = value.strip()
        if prefix not in PREFIXES:
            raise SelectorError(f"Unknown selector prefix {prefix!r} in {term!r} (expected one of: {', '.join(PREFIXES)})")
        if not value:
            raise SelectorError(f"Selector {term!r} is missing a value")
        if prefix == "tag":
            tag = value.lower()
            return {name for name, m in graph.models.items() if tag in m.tags}
        name = _known_node(graph, value, term)
        if prefix == "deps":
            return {name} | graph.upstream(name)
        if prefix == "downstream":
            return {name} | graph.downstream(name)
        return {name} | graph.upstream(name) | graph.downstream(name)

    return {_known_node(graph, term, term)}


def _known_node(graph: DependencyGraph, value: str, term: str) -> str:
    name = value.lower()
    if "." not in name:
        raise SelectorError(f"Selector {term!r}: model names must be schema-qualified (schema.name)")
    if name not in graph.edges:
        raise SelectorError(f"Selector {term!r}: unknown model {name!r}")
    return name


def resolve_selectors(
    graph: DependencyGraph,
    selectors: list[str] | None = None,
    exclude: list[str] | None = None,
) -> list[str]:
    """Resolve selectors to node names in topological order.

    With no selectors every model node is selected; source leaves are only
    included when a term reaches them. Every term is validated before the
    result is returned, so a bad term never leaves a partial selection.
    """
    terms = split_terms(selectors)
    if terms:
        selected: set[str] = set()
        for term in terms:
            selected |= resolve_term(graph, term)
    else:
        selected = set(graph.models) | set(graph.broken)

    for term in split_terms(exclude):
        selected -= resolve_term(graph, term)

    return [name for name in graph.order if name in selected]
