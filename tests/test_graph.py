import random

import pytest

from waveline import CycleError, DuplicateStepError, StepState, StepStatus, UnknownDependencyError, WorkflowStep
from waveline.graph import build_graph, check_acyclic


def steps(spec):
    return [WorkflowStep(id=sid, dependencies=list(deps)) for sid, deps in spec.items()]


def test_diamond_waves_and_order() -> None:
    graph = build_graph(steps({"a": [], "b": ["a"], "c": ["a"], "d": ["b", "c"]}))
    assert graph.roots() == ["a"]
    assert graph.waves() == [["a"], ["b", "c"], ["d"]]
    assert graph.topological_order() == ["a", "b", "c", "d"]
    assert graph.dependents("a") == ["b", "c"]
    assert graph.dependencies("d") == ["b", "c"]
    assert graph.descendants("b") == {"d"}
    assert set(graph.to_networkx().edges) == {("a", "b"), ("a", "c"), ("b", "d"), ("c", "d")}


def test_waves_keep_declaration_order() -> None:
    graph = build_graph(steps({"z": [], "y": [], "x": ["z", "y"]}))
    assert graph.waves() == [["z", "y"], ["x"]]


def test_duplicate_step_id() -> None:
    with pytest.raises(DuplicateStepError) as exc:
        build_graph([WorkflowStep(id="a"), WorkflowStep(id="a")])
    assert exc.value.step_id == "a"


def test_unknown_dependency() -> None:
    with pytest.raises(UnknownDependencyError) as exc:
        build_graph(steps({"a": ["missing"]}))
    assert exc.value.step_id == "a"
    assert exc.value.params["dependency"] == "missing"


def test_self_dependency_is_a_cycle() -> None:
    with pytest.raises(CycleError) as exc:
        build_graph(steps({"a": ["a"]}))
    assert exc.value.step_id == "a"


def test_cycle_reports_path() -> None:
    with pytest.raises(CycleError) as exc:
        build_graph(steps({"a": ["c"], "b": ["a"], "c": ["b"], "d": []}))
    err = exc.value
    assert err.step_id == "a"
    assert err.path == ["a", "c", "b"]
    assert "a -> c -> b -> a" in str(err)


def _random_dag(rng: random.Random, size: int) -> dict:
    ids = [f"s{i}" for i in range(size)]
    return {sid: [d for d in ids[:i] if rng.random() < 0.3] for i, sid in enumerate(ids)}


def test_random_dags_are_accepted() -> None:
    rng = random.Random(7)
    for _ in range(50):
        adjacency = _random_dag(rng, rng.randint(1, 12))
        check_acyclic(adjacency)
        order = build_graph(steps(adjacency)).topological_order()
        for sid, deps in adjacency.items():
            assert all(order.index(d) < order.index(sid) for d in deps)


def test_random_graphs_with_cycle_are_rejected() -> None:
    rng = random.Random(11)
    for _ in range(50):
        size = rng.randint(2, 12)
        adjacency = _random_dag(rng, size)
        ids = list(adjacency)
        # chain a path forward, then close it with a back edge
        lo, hi = sorted(rng.sample(range(size), 2))
        for i in range(lo + 1, hi + 1):
            if ids[i - 1] not in adjacency[ids[i]]:
                adjacency[ids[i]].append(ids[i - 1])
        adjacency[ids[lo]].append(ids[hi])
        with pytest.raises(CycleError):
            build_graph(steps(adjacency))


def test_ready_respects_dependency_outcomes() -> None:
    graph = build_graph(steps({"a": [], "b": [], "c": ["a", "b"]}))
    states = {sid: StepState(step_id=sid) for sid in ("a", "b", "c")}
    assert graph.ready(states) == ["a", "b"]

    states["a"].status = StepStatus.COMPLETED
    states["b"].status = StepStatus.RUNNING
    assert graph.ready(states) == []

    states["b"].status = StepStatus.SKIPPED
    assert graph.ready(states) == ["c"]

    states["b"].status = StepStatus.FAILED
    assert graph.ready(states) == []

    states["b"].tolerated = True
    assert graph.ready(states) == ["c"]
