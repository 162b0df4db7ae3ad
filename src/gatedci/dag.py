# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, FrozenSet, Iterable, List, Set, Tuple

from .errors import DefinitionError
from .model import Job, JobKey, PipelineDefinition, Stage, Variant


def build_stage_graph(definition: PipelineDefinition) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build the stage-level DAG.

    Requires:
      - stage.id: str (unique)
      - stage.needs: ids of stages that must finish BEFORE this stage

    Returns (adj, indeg) where adj maps a stage to the stages that need it.
    """
    ids = [s.id for s in definition.stages]
    if len(set(ids)) != len(ids):
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        raise DefinitionError(f"Duplicate stage ids found: {dupes}")

    id_set = set(ids)
    adj: Dict[str, Set[str]] = {i: set() for i in id_set}
    indeg: Dict[str, int] = {i: 0 for i in id_set}

    for stage in definition.stages:
        for need in stage.needs:
            if need not in id_set:
                raise DefinitionError(
                    f"Stage '{stage.id}' needs missing stage '{need}'",
                    details={"known_stages": sorted(id_set)},
                )
            if need == stage.id:
                raise DefinitionError(f"Stage '{stage.id}' needs itself")
            # Edge need -> stage (need must finish before stage)
            if stage.id not in adj[need]:
                adj[need].add(stage.id)
                indeg[stage.id] += 1

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert the DAG into topological "levels".
    Every node of a level can run in parallel.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted(n for n, d in indeg.items() if d == 0))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        remaining = sorted(n for n, d in indeg.items() if d > 0)
        raise DefinitionError(
            "Stage dependencies contain a cycle",
            details={"stuck_stages": remaining},
        )

    return levels


def validate_definition(definition: PipelineDefinition) -> List[List[str]]:
    """Reject dangling or cyclic `needs`; returns the stage levels."""
    adj, indeg = build_stage_graph(definition)
    return topo_levels(adj, indeg)


# ---------------------------------------------------------------------
# Job graph (stage x matrix variant)
# ---------------------------------------------------------------------

class JobGraph:
    """
    Jobs plus Job -> Job edges. Jobs are listed in topological order
    (stage level, then stage id, then matrix order).
    """

    def __init__(self, jobs: List[Job], edges: Iterable[Tuple[JobKey, JobKey]], levels: List[List[str]]):
        self.jobs: Tuple[Job, ...] = tuple(jobs)
        self.edges: FrozenSet[Tuple[JobKey, JobKey]] = frozenset(edges)
        self.levels: Tuple[Tuple[str, ...], ...] = tuple(tuple(level) for level in levels)

        self._by_key: Dict[JobKey, Job] = {j.key: j for j in self.jobs}
        self._deps: Dict[JobKey, List[JobKey]] = {k: [] for k in self._by_key}
        self._dependents: Dict[JobKey, List[JobKey]] = {k: [] for k in self._by_key}
        for src, dst in sorted(self.edges):
            self._deps[dst].append(src)
            self._dependents[src].append(dst)

    @property
    def keys(self) -> List[JobKey]:
        return [j.key for j in self.jobs]

    def job(self, key: JobKey) -> Job:
        return self._by_key[key]

    def dependencies(self, key: JobKey) -> Tuple[JobKey, ...]:
        return tuple(self._deps[key])

    def dependents(self, key: JobKey) -> Tuple[JobKey, ...]:
        return tuple(self._dependents[key])

    def jobs_of(self, stage_id: str) -> List[Job]:
        return [j for j in self.jobs if j.stage.id == stage_id]


def _paired(upstream: Variant, downstream: Variant) -> bool:
    up = upstream.as_dict()
    down = downstream.as_dict()
    shared = set(up) & set(down)
    return all(up[a] == down[a] for a in shared)


def _expand(stage: Stage) -> List[Job]:
    variants = stage.matrix.variants()
    if not variants:
        raise DefinitionError(f"Stage '{stage.id}' matrix produces no variants (everything excluded)")
    keys = [v.key for v in variants]
    if len(set(keys)) != len(keys):
        raise DefinitionError(f"Stage '{stage.id}' matrix produces duplicate variants")
    return [Job(stage=stage, variant=v) for v in variants]


def build_job_graph(definition: PipelineDefinition) -> JobGraph:
    """
    Compile a definition into its job graph.

    Dependencies are stage-level: every job of a needed stage is a
    dependency of every job of the needing stage. A stage with
    `pairing: variant` only depends on predecessor jobs that agree with it
    on every shared matrix axis (linux coverage after linux test).
    """
    levels = validate_definition(definition)

    jobs_by_stage: Dict[str, List[Job]] = {s.id: _expand(s) for s in definition.stages}

    ordered: List[Job] = []
    for level in levels:
        for stage_id in level:
            ordered.extend(jobs_by_stage[stage_id])

    edges: Set[Tuple[JobKey, JobKey]] = set()
    for stage in definition.stages:
        for job in jobs_by_stage[stage.id]:
            for need in stage.needs:
                upstream = jobs_by_stage[need]
                if stage.pairing == "variant":
                    upstream = [u for u in upstream if _paired(u.variant, job.variant)]
                    if not upstream:
                        raise DefinitionError(
                            f"Job '{job.key}' has no matching variant in needed stage '{need}'",
                            details={"pairing": "variant"},
                        )
                for u in upstream:
                    edges.add((u.key, job.key))

    return JobGraph(ordered, edges, levels)
