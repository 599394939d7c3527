# dag.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, List, Mapping, Tuple

from .errors import CycleError, DuplicateJobError, UnknownDependencyError
from .model import Job, PipelineDefinition


@dataclass(frozen=True)
class JobGraph:
    """
    Validated, immutable job DAG.

      jobs        name -> Job
      order       declaration order (dispatch tie-break)
      dependents  dep -> jobs that need it
      indegree    number of distinct dependencies per job
    """
    jobs: Mapping[str, Job]
    order: Tuple[str, ...]
    dependents: Mapping[str, FrozenSet[str]]
    indegree: Mapping[str, int]

    def __len__(self) -> int:
        return len(self.order)

    def __iter__(self):
        return (self.jobs[n] for n in self.order)

    def index(self, name: str) -> int:
        return self.order.index(name)

    def needs(self, name: str) -> List[str]:
        return _dedupe(self.jobs[name].needs)

    def levels(self) -> List[List[str]]:
        """Topological stages; jobs within a stage are in declaration order."""
        return topo_levels(self.order, self.dependents, self.indegree)

    def ancestors(self, names: Iterable[str]) -> List[str]:
        """`names` plus everything they transitively need, in declaration order."""
        keep = set()
        stack = list(names)
        while stack:
            n = stack.pop()
            if n in keep:
                continue
            if n not in self.jobs:
                raise UnknownDependencyError("<selection>", n, self.order)
            keep.add(n)
            stack.extend(self.needs(n))
        return [n for n in self.order if n in keep]


def _dedupe(items: Iterable[str]) -> List[str]:
    seen = set()
    out = []
    for i in items:
        if i not in seen:
            seen.add(i)
            out.append(i)
    return out


def topo_levels(
    order: Iterable[str],
    dependents: Mapping[str, Iterable[str]],
    indegree: Mapping[str, int],
) -> List[List[str]]:
    """
    Convert the DAG into topological "levels" (stages).
    Each stage could run in parallel. Raises CycleError if nodes remain.
    """
    order = list(order)
    rank = {n: i for i, n in enumerate(order)}
    indeg = dict(indegree)  # copy (we mutate it)
    q = deque(n for n in order if indeg[n] == 0)

    levels: List[List[str]] = []
    processed = 0

    while q:
        level = sorted(q, key=rank.__getitem__)
        q.clear()
        processed += len(level)

        for node in level:
            for child in dependents.get(node, ()):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(order):
        raise CycleError([n for n, d in indeg.items() if d > 0])

    return levels


def build_graph(definition: PipelineDefinition) -> JobGraph:
    """
    Validate a pipeline definition and return its job graph.

    Checks, in order: duplicate job names, unknown dependencies, cycles.
    """
    jobs = list(definition.jobs)
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        raise DuplicateJobError([n for n in names if names.count(n) > 1])

    by_name: Dict[str, Job] = {j.name: j for j in jobs}
    dependents: Dict[str, set] = {n: set() for n in names}
    indeg: Dict[str, int] = {n: 0 for n in names}

    for job in jobs:
        for dep in _dedupe(job.needs):
            if dep not in by_name:
                raise UnknownDependencyError(job.name, dep, names)
            # Edge dep -> job (dep must finish before job)
            dependents[dep].add(job.name)
            indeg[job.name] += 1

    graph = JobGraph(
        jobs=MappingProxyType(by_name),
        order=tuple(names),
        dependents=MappingProxyType({k: frozenset(v) for k, v in dependents.items()}),
        indegree=MappingProxyType(indeg),
    )
    graph.levels()  # cycle check
    return graph
