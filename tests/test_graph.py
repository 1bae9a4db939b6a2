"""Tests for graph construction, cycle detection and ordering."""

from pathlib import Path

import pytest

from pgforge.engine.transform import CycleError, ParseError, build_graph, find_cycle, parse_model


def _model(full_name: str, *deps: str, materialized: str = "view", tags: str = ""):
    schema, name = full_name.split(".")
    lines = [f"-- materialized: {materialized}"]
    if deps:
        lines.append(f"-- deps: {', '.join(deps)}")
    if tags:
        lines.append(f"-- tags: {tags}")
    lines.append("SELECT 1 AS id")
    return parse_model(Path(f"models/{schema}/{name}.sql"), "\n".join(lines) + "\n", schema, name)


def _position(order: list[str]) -> dict[str, int]:
    return {name: i for i, name in enumerate(order)}


def test_order_respects_every_edge():
    models = [
        _model("marts.report", "marts.user_stats", "app.events"),
        _model("marts.user_stats", "public.users", "public.posts"),
        _model("app.events", "public.raw_events"),
    ]
    graph = build_graph(models)
    pos = _position(graph.order)
    for name, deps in graph.edges.items():
        for dep in deps:
            assert pos[dep] < pos[name], f"{dep} must come before {name}"


def test_ties_are_broken_by_name():
    models = [_model("b.two"), _model("a.one"), _model("c.three", "b.two"), _model("a.zero", "b.two")]
    graph = build_graph(models)
    assert graph.layers == [["a.one", "b.two"], ["a.zero", "c.three"]]
    assert graph.order == ["a.one", "b.two", "a.zero", "c.three"]


def test_order_is_stable_across_input_order():
    models = [_model("x.a"), _model("x.b", "x.a"), _model("x.c", "x.a"), _model("y.d")]
    assert build_graph(models).order == build_graph(list(reversed(models))).order


def test_unknown_references_become_sources():
    graph = build_graph([_model("marts.user_stats", "public.users", "public.posts")])
    assert graph.sources == {"public.users", "public.posts"}
    assert graph.is_source("public.users")
    assert not graph.is_source("marts.user_stats")
    assert graph.parents("marts.user_stats") == {"public.users", "public.posts"}
    assert graph.children("public.users") == {"marts.user_stats"}


def test_upstream_and_downstream_are_transitive():
    graph = build_graph([_model("x.b", "x.a"), _model("x.c", "x.b"), _model("x.a")])
    assert graph.upstream("x.c") == {"x.a", "x.b"}
    assert graph.downstream("x.a") == {"x.b", "x.c"}
    assert graph.upstream("x.a") == set()


def test_cycle_is_reported_with_its_path():
    models = [_model("app.a", "app.b"), _model("app.b", "app.c"), _model("app.c", "app.a")]
    with pytest.raises(CycleError) as exc:
        build_graph(models)
    assert exc.value.cycle == ["app.a", "app.b", "app.c", "app.a"]
    assert str(exc.value) == "Dependency cycle detected: app.a → app.b → app.c → app.a"


def test_cycle_reported_even_when_attached_to_a_valid_chain():
    models = [_model("app.root"), _model("app.x", "app.root", "app.y"), _model("app.y", "app.x")]
    with pytest.raises(CycleError) as exc:
        build_graph(models)
    assert exc.value.cycle == ["app.x", "app.y", "app.x"]


def test_find_cycle_on_acyclic_graph():
    assert find_cycle({"a": {"b"}, "b": set(), "c": {"a", "b"}}) is None


def test_self_edge_is_a_cycle():
    assert find_cycle({"a": {"a"}}) == ["a", "a"]


def test_broken_models_keep_their_node():
    err = ParseError(Path("models/app/bad.sql"), 1, "missing materialized", model="app.bad")
    loose = ParseError(Path("models/loose.sql"), 1, "bad layout")
    graph = build_graph([_model("app.child", "app.bad")], [err, loose])
    assert "app.bad" in graph.broken
    assert not graph.is_source("app.bad")
    assert graph.order == ["app.bad", "app.child"]
    assert graph.unattached == [loose]
