# dag.py
from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Set, Tuple

from .context import Context, expand_variables
from .errors import ConfigurationError
from .model import JobSpec, NeedRef
from .rules import ActiveJobSet

log = logging.getLogger(__name__)

# Edge kinds
STAGE = "stage"  # implicit barrier: every active job of an earlier stage
NEED = "need"    # explicit `needs` entry, same pipeline
POLL = "poll"    # `needs` entry pointing at another pipeline


@dataclass(frozen=True)
class Dependency:
    upstream: str
    kind: str
    artifacts: bool = False


@dataclass(frozen=True)
class PollNode:
    """
    A synthetic upstream that is satisfied by an external (project, ref, job)
    having succeeded with artifacts. It is never part of the local job set.
    """
    project: str
    ref: str
    job: str
    artifacts: bool = False

    @property
    def id(self) -> str:
        return poll_id(self.project, self.ref, self.job)


def poll_id(project: str, ref: str, job: str) -> str:
    return f"{project}@{ref}:{job}"


@dataclass(frozen=True)
class JobGraph:
    """
    Dependency graph over the active job set.

    upstream[name]    -> dependencies of a job (jobs and poll nodes)
    downstream[node]  -> names of jobs waiting on a job or poll node
    order             -> deterministic topological order of the jobs
    """
    jobs: Mapping[str, JobSpec]
    upstream: Mapping[str, Tuple[Dependency, ...]]
    downstream: Mapping[str, Tuple[str, ...]]
    poll_nodes: Mapping[str, PollNode]
    manual: frozenset = field(default_factory=frozenset)
    order: Tuple[str, ...] = ()

    def dependencies(self, name: str) -> Tuple[Dependency, ...]:
        return self.upstream.get(name, ())

    def dependents(self, node: str) -> Tuple[str, ...]:
        return self.downstream.get(node, ())

    def topological_order(self) -> List[str]:
        return list(self.order)

    def roots(self) -> List[str]:
        return [n for n in self.order if not self.upstream.get(n)]

    def to_dict(self) -> dict:
        return {
            "order": list(self.order),
            "jobs": {
                name: [
                    {"upstream": d.upstream, "kind": d.kind, "artifacts": d.artifacts}
                    for d in self.upstream.get(name, ())
                ]
                for name in self.order
            },
            "poll": sorted(self.poll_nodes),
            "manual": sorted(self.manual),
        }


# ----------------------------------------------------------------------
# Building
# ----------------------------------------------------------------------

def _resolve_need(need: NeedRef, ctx: Context, variables: Mapping[str, str]) -> Tuple[str, str]:
    project = expand_variables(need.project, variables) if need.project is not None else ctx.project
    ref = expand_variables(need.ref, variables) if need.ref is not None else ctx.ref
    return project, ref


def _stage_edges(
    spec: JobSpec,
    active: ActiveJobSet,
    stage_idx: Dict[str, int],
) -> List[Dependency]:
    # manual jobs never hold back later stages
    own = stage_idx[spec.stage]
    return [
        Dependency(other.name, STAGE)
        for other in active.jobs.values()
        if stage_idx[other.stage] < own and not active.is_manual(other.name)
    ]


def _merge_edges(deps: List[Dependency]) -> Tuple[Dependency, ...]:
    """One edge per upstream; artifacts are handed over if any need asks for them."""
    merged: Dict[str, Dependency] = {}
    for d in deps:
        prev = merged.get(d.upstream)
        if prev is not None:
            d = Dependency(d.upstream, d.kind, prev.artifacts or d.artifacts)
        merged[d.upstream] = d
    return tuple(merged.values())


def build_graph(active: ActiveJobSet, ctx: Context) -> JobGraph:
    """
    Build the dependency graph for one pipeline run.

    - jobs without `needs` wait for every active job of every earlier stage
    - jobs with `needs` wait only for what they name
    - a need on a job excluded from this run is vacuously satisfied, unless
      its artifacts are required (then the run cannot be created)
    - if every declared need turned out vacuous, the job falls back to the
      stage barrier
    - cross-pipeline needs become poll nodes

    Raises ConfigurationError on cycles and dangling references.
    """
    stage_idx = {s: i for i, s in enumerate(active.stages)}
    variables = ctx.ci_variables()

    upstream: Dict[str, Tuple[Dependency, ...]] = {}
    poll_nodes: Dict[str, PollNode] = {}

    for name in sorted(active.jobs):
        spec = active.jobs[name]
        if spec.stage not in stage_idx:
            raise ConfigurationError("unknown_stage", f"job '{name}' uses undeclared stage '{spec.stage}'")

        if not spec.dag_mode:
            upstream[name] = tuple(_stage_edges(spec, active, stage_idx))
            continue

        deps: List[Dependency] = []
        for need in spec.needs or ():
            project, ref = _resolve_need(need, ctx, variables)

            if (project, ref) != (ctx.project, ctx.ref):
                node = PollNode(project=project, ref=ref, job=need.job, artifacts=need.artifacts)
                prev = poll_nodes.get(node.id)
                if prev is not None and prev.artifacts and not node.artifacts:
                    node = prev
                poll_nodes[node.id] = node
                deps.append(Dependency(node.id, POLL, need.artifacts))
                continue

            if need.job in active.jobs:
                target = active.jobs[need.job]
                if stage_idx[target.stage] > stage_idx[spec.stage]:
                    raise ConfigurationError(
                        "stage_order",
                        f"job '{name}' (stage {spec.stage}) needs '{need.job}' from later stage {target.stage}",
                    )
                deps.append(Dependency(need.job, NEED, need.artifacts))
            elif need.job in active.excluded:
                if need.artifacts:
                    raise ConfigurationError(
                        "missing_reference",
                        f"job '{name}' requires artifacts of '{need.job}', which is not part of this pipeline",
                    )
                log.debug("need %s -> %s is vacuous (excluded by rules)", name, need.job)
            else:
                raise ConfigurationError(
                    "missing_reference",
                    f"job '{name}' needs unknown job '{need.job}'",
                    {"known": sorted(set(active.jobs) | set(active.excluded))},
                )

        if spec.needs and not deps:
            log.debug("every need of %s is vacuous; waiting on earlier stages instead", name)
            deps = _stage_edges(spec, active, stage_idx)

        upstream[name] = _merge_edges(deps)

    downstream: Dict[str, List[str]] = {}
    for name, deps in upstream.items():
        for d in deps:
            downstream.setdefault(d.upstream, []).append(name)

    order = _topological_order(active, upstream, stage_idx)

    return JobGraph(
        jobs=MappingProxyType(dict(active.jobs)),
        upstream=MappingProxyType(upstream),
        downstream=MappingProxyType({k: tuple(sorted(v)) for k, v in downstream.items()}),
        poll_nodes=MappingProxyType(poll_nodes),
        manual=frozenset(n for n in active.jobs if active.is_manual(n)),
        order=tuple(order),
    )


def _topological_order(
    active: ActiveJobSet,
    upstream: Mapping[str, Tuple[Dependency, ...]],
    stage_idx: Mapping[str, int],
) -> List[str]:
    """
    Kahn's algorithm over local edges; ties broken by (stage, name) so the
    order is stable across runs.
    """
    indeg: Dict[str, int] = {n: 0 for n in upstream}
    children: Dict[str, Set[str]] = {n: set() for n in upstream}
    for name, deps in upstream.items():
        for d in deps:
            if d.kind == POLL:
                continue
            if name not in children[d.upstream]:
                children[d.upstream].add(name)
                indeg[name] += 1

    def key(n: str) -> Tuple[int, str]:
        return (stage_idx[active.jobs[n].stage], n)

    heap = [key(n) for n, d in indeg.items() if d == 0]
    heapq.heapify(heap)
    order: List[str] = []
    while heap:
        _, node = heapq.heappop(heap)
        order.append(node)
        for child in children[node]:
            indeg[child] -= 1
            if indeg[child] == 0:
                heapq.heappush(heap, key(child))

    if len(order) != len(indeg):
        stuck = sorted(n for n, d in indeg.items() if d > 0)
        cycle = find_cycle(upstream, stuck) or stuck
        raise ConfigurationError(
            "cycle",
            "job graph has a cycle: " + " -> ".join(cycle),
            {"cycle": cycle},
        )
    return order


def find_cycle(upstream: Mapping[str, Tuple[Dependency, ...]], start: List[str]) -> Optional[List[str]]:
    """Return one cycle as [a, b, ..., a], following need edges."""
    WHITE, GREY, BLACK = 0, 1, 2
    color: Dict[str, int] = {}

    def visit(node: str, path: List[str]) -> Optional[List[str]]:
        color[node] = GREY
        path.append(node)
        for d in upstream.get(node, ()):
            if d.kind == POLL:
                continue
            nxt = d.upstream
            state = color.get(nxt, WHITE)
            if state == GREY:
                return path[path.index(nxt):] + [nxt]
            if state == WHITE:
                found = visit(nxt, path)
                if found:
                    return found
        path.pop()
        color[node] = BLACK
        return None

    for node in start:
        if color.get(node, WHITE) == WHITE:
            found = visit(node, [])
            if found:
                return found
    return None
