"""Dependency graph construction and validation."""

from __future__ import annotations

from typing import Dict, Iterable, List, Mapping, Sequence, Set

import networkx as nx

from .errors import CycleError, DuplicateStepError, UnknownDependencyError
from .models import StepState, StepStatus, WorkflowStep
from .utils.logging import get_logger

logger = get_logger()


class StepGraph:
    """Validated adjacency map of a workflow.

    Keys preserve the declaration order of the steps so that readiness and
    wave planning are deterministic.
    """

    def __init__(self, adjacency: Dict[str, List[str]]) -> None:
        self._deps = adjacency
        self._dependents: Dict[str, List[str]] = {step_id: [] for step_id in adjacency}
        for step_id, deps in adjacency.items():
            for dep in deps:
                self._dependents[dep].append(step_id)

    def __contains__(self, step_id: object) -> bool:
        return step_id in self._deps

    def __len__(self) -> int:
        return len(self._deps)

    @property
    def adjacency(self) -> Dict[str, List[str]]:
        """Mapping of step id to the ids it depends on."""
        return {k: list(v) for k, v in self._deps.items()}

    @property
    def step_ids(self) -> List[str]:
        return list(self._deps)

    def dependencies(self, step_id: str) -> List[str]:
        return list(self._deps[step_id])

    def dependents(self, step_id: str) -> List[str]:
        return list(self._dependents[step_id])

    def roots(self) -> List[str]:
        return [step_id for step_id, deps in self._deps.items() if not deps]

    def to_networkx(self) -> nx.DiGraph:
        """Return a directed graph with edges pointing from dependency to dependent."""
        graph = nx.DiGraph()
        graph.add_nodes_from(self._deps)
        for step_id, deps in self._deps.items():
            graph.add_edges_from((dep, step_id) for dep in deps)
        return graph

    def waves(self) -> List[List[str]]:
        """Planned waves assuming every step succeeds."""
        order = {step_id: idx for idx, step_id in enumerate(self._deps)}
        return [sorted(gen, key=order.__getitem__) for gen in nx.topological_generations(self.to_networkx())]

    def topological_order(self) -> List[str]:
        return [step_id for wave in self.waves() for step_id in wave]

    def descendants(self, step_id: str) -> Set[str]:
        return set(nx.descendants(self.to_networkx(), step_id))

    def ready(self, states: Mapping[str, StepState]) -> List[str]:
        """Pending steps whose dependencies all allow them to start."""
        ready: List[str] = []
        for step_id, deps in self._deps.items():
            state = states.get(step_id)
            if state is None or state.status != StepStatus.PENDING:
                continue
            if all(dep in states and states[dep].satisfies_dependents for dep in deps):
                ready.append(step_id)
        return ready


def build_adjacency(steps: Sequence[WorkflowStep]) -> Dict[str, List[str]]:
    adjacency: Dict[str, List[str]] = {}
    for step in steps:
        if step.id in adjacency:
            raise DuplicateStepError(f"duplicate step id '{step.id}'", step_id=step.id)
        adjacency[step.id] = list(step.dependencies)
    for step_id, deps in adjacency.items():
        for dep in deps:
            if dep not in adjacency:
                raise UnknownDependencyError(
                    f"step '{step_id}' depends on unknown step '{dep}'",
                    step_id=step_id,
                    dependency=dep,
                )
    return adjacency


def check_acyclic(adjacency: Mapping[str, Iterable[str]]) -> None:
    """Depth-first search that fails on the first back edge."""
    visited: Set[str] = set()
    path: List[str] = []
    on_path: Set[str] = set()

    def visit(step_id: str) -> None:
        if step_id in on_path:
            start = path.index(step_id)
            raise CycleError(step_id, path[start:])
        if step_id in visited:
            return
        on_path.add(step_id)
        path.append(step_id)
        for dep in adjacency[step_id]:
            visit(dep)
        path.pop()
        on_path.discard(step_id)
        visited.add(step_id)

    for step_id in adjacency:
        visit(step_id)


def build_graph(steps: Sequence[WorkflowStep]) -> StepGraph:
    """Validate *steps* and return their :class:`StepGraph`.

    Raises a :class:`~waveline.errors.GraphError` subclass when ids are
    duplicated, a dependency is unknown or the dependencies form a cycle.
    """
    adjacency = build_adjacency(steps)
    try:
        check_acyclic(adjacency)
    except CycleError as exc:
        logger.error(f"CycleError: {exc}")
        raise
    logger.debug(f"built step graph with {len(adjacency)} steps")
    return StepGraph(adjacency)
