from __future__ import annotations

import pytest

from dagci.dag import build_graph
from dagci.dsl import job, sh, wf
from dagci.errors import ConfigurationError, CycleError, DuplicateJobError, UnknownDependencyError


def j(name, *needs):
    return job(name, sh("noop", "true"), needs=list(needs))


def test_indegree_and_dependents():
    graph = build_graph(wf(j("a"), j("b", "a"), j("c", "a", "b")))
    assert dict(graph.indegree) == {"a": 0, "b": 1, "c": 2}
    assert graph.dependents["a"] == frozenset({"b", "c"})
    assert graph.order == ("a", "b", "c")


def test_levels_follow_declaration_order_within_stage():
    graph = build_graph(wf(j("z"), j("y"), j("x", "z"), j("w", "y", "z")))
    assert graph.levels() == [["z", "y"], ["x", "w"]]


def test_duplicate_names():
    with pytest.raises(DuplicateJobError) as exc:
        build_graph(wf(j("a"), j("b"), j("a")))
    assert exc.value.jobs == ["a"]


def test_unknown_dependency_names_both_jobs():
    with pytest.raises(UnknownDependencyError) as exc:
        build_graph(wf(j("a"), j("b", "nope")))
    assert exc.value.jobs == ["b", "nope"]
    assert "nope" in str(exc.value)


def test_cycle_detected():
    with pytest.raises(CycleError) as exc:
        build_graph(wf(j("root"), j("a", "c"), j("b", "a"), j("c", "b")))
    assert exc.value.jobs == ["a", "b", "c"]


def test_self_dependency_is_a_cycle():
    with pytest.raises(CycleError):
        build_graph(wf(j("a", "a")))


def test_config_errors_share_a_base():
    for bad in (wf(j("a"), j("a")), wf(j("a", "b")), wf(j("a", "b"), j("b", "a"))):
        with pytest.raises(ConfigurationError):
            build_graph(bad)


def test_repeated_need_counts_once():
    graph = build_graph(wf(j("a"), j("b", "a", "a")))
    assert graph.indegree["b"] == 1


def test_graph_is_read_only():
    graph = build_graph(wf(j("a")))
    with pytest.raises(TypeError):
        graph.indegree["a"] = 3  # type: ignore[index]


def test_ancestors():
    graph = build_graph(wf(j("a"), j("b", "a"), j("c"), j("d", "b")))
    assert graph.ancestors(["d"]) == ["a", "b", "d"]
    with pytest.raises(UnknownDependencyError):
        graph.ancestors(["zzz"])
