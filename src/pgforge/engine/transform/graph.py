"""Dependency graph: node set, cycle detection, deterministic ordering."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from graphlib import TopologicalSorter

from .errors import CycleError, ParseError
from .models import SQLModel


@dataclass
class DependencyGraph:
    """Models, broken models and source leaves with their read edges.

    ``edges[a]`` holds every node ``a`` reads from.
    """

    models: dict[str, SQLModel] = field(default_factory=dict)
    broken: dict[str, ParseError] = field(default_factory=dict)
    unattached: list[ParseError] = field(default_factory=list)  # files with no usable model name
    sources: set[str] = field(default_factory=set)
    edges: dict[str, set[str]] = field(default_factory=dict)
    reverse: dict[str, set[str]] = field(default_factory=dict)
    layers: list[list[str]] = field(default_factory=list)

    @property
    def order(self) -> list[str]:
        return [name for layer in self.layers for name in layer]

    def is_source(self, name: str) -> bool:
        return name in self.sources

    def parents(self, name: str) -> set[str]:
        return self.edges.get(name, set())

    def children(self, name: str) -> set[str]:
        return self.reverse.get(name, set())

    def upstream(self, name: str) -> set[str]:
        """All transitive ancestors of ``name`` (not including it)."""
        return _walk(name, self.edges)

    def downstream(self, name: str) -> set[str]:
        """All transitive descendants of ``name`` (not including it)."""
        return _walk(name, self.reverse)


def _walk(start: str, adjacency: dict[str, set[str]]) -> set[str]:
    seen: set[str] = set()
    queue = deque(adjacency.get(start, ()))
    while queue:
        node = queue.popleft()
        if node in seen:
            continue
        seen.add(node)
        queue.extend(adjacency.get(node, ()))
    return seen


def build_graph(
    models: list[SQLModel],
    broken: list[ParseError] | None = None,
) -> DependencyGraph:
    """Build the dependency graph and its topological layers.

    Edges are declared plus detected dependencies. Names referenced by a model
    but defined by no model file become source leaves. A file that failed to
    parse keeps its node (without edges) so descendants can be skipped.

    Raises CycleError, naming the cycle, before anything is ordered.
    """
    graph = DependencyGraph()
    for m in models:
        graph.models[m.full_name] = m
    for err in broken or []:
        if err.model and err.model not in graph.models:
            graph.broken[err.model] = err
        elif not err.model:
            graph.unattached.append(err)

    for name in graph.models:
        graph.edges[name] = set(graph.models[name].dependencies)
    for name in graph.broken:
        graph.edges[name] = set()

    referenced = {dep for deps in list(graph.edges.values()) for dep in deps}
    for dep in sorted(referenced):
        if dep not in graph.edges:
            graph.sources.add(dep)
            graph.edges[dep] = set()

    for name, deps in graph.edges.items():
        graph.reverse.setdefault(name, set())
        for dep in deps:
            graph.reverse.setdefault(dep, set()).add(name)

    cycle = find_cycle(graph.edges)
    if cycle:
        raise CycleError(cycle)

    graph.layers = topological_layers(graph.edges)
    return graph


def find_cycle(edges: dict[str, set[str]]) -> list[str] | None:
    """Depth-first search for a cycle, visiting nodes in name order.

    Returns the cycle as a closed path (``[a, b, c, a]``) or None.
    """
    white, gray, black = 0, 1, 2
    color = {node: white for node in edges}

    for root in sorted(edges):
        if color[root] != white:
            continue
        path: list[str] = [root]
        stack = [iter(sorted(edges[root]))]
        color[root] = gray
        while stack:
            nxt = next(stack[-1], None)
            if nxt is None:
                stack.pop()
                color[path.pop()] = black
                continue
            state = color.get(nxt, white)
            if state == gray:
                return path[path.index(nxt):] + [nxt]
            if state == white:
                color[nxt] = gray
                path.append(nxt)
                stack.append(iter(sorted(edges.get(nxt, ()))))
    return None


def topological_layers(edges: dict[str, set[str]]) -> list[list[str]]:
    """Group nodes into layers; every node comes after everything it reads.

    Each layer is sorted by name, so the flattened order is deterministic.
    """
    sorter: TopologicalSorter[str] = TopologicalSorter()
    for name, deps in edges.items():
        sorter.add(name, *deps)
    sorter.prepare()

    layers: list[list[str]] = []
    while sorter.is_active():
        ready = sorted(sorter.get_ready())
        layers.append(ready)
        for name in ready:
            sorter.done(name)
    return layers
