from __future__ import annotations

from collections import deque
from typing import Dict, List, Mapping, Set, Tuple

from .errors import ConfigError
from .model import JobTemplate


def build_dag(jobs: Mapping[str, JobTemplate]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from job templates.

    Requires:
      - mapping keys are the job names `needs` refers to
      - job.needs: names of jobs that must finish successfully BEFORE this job
    """
    adj: Dict[str, Set[str]] = {n: set() for n in jobs}
    indeg: Dict[str, int] = {n: 0 for n in jobs}

    for name, job in jobs.items():
        for need in job.needs:
            if need not in jobs:
                raise ConfigError(
                    f"job '{name}' needs missing job '{need}'. Known jobs: {sorted(jobs)}"
                )
            # Edge need -> name (need must run before name)
            if name not in adj[need]:
                adj[need].add(name)
                indeg[name] += 1

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int], order: List[str] | None = None) -> List[List[str]]:
    """
    Convert the DAG into topological "levels"; each level can run in parallel.

    Within a level, jobs keep their declaration order (`order`) when given,
    otherwise they are sorted by name.
    """
    rank = {n: i for i, n in enumerate(order)} if order else {}
    key = (lambda n: rank.get(n, len(rank))) if rank else (lambda n: n)

    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted([n for n, d in indeg.items() if d == 0], key=key))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

        for node in level:
            for child in sorted(adj.get(node, set()), key=key):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(sorted(level, key=key))

    if processed != len(indeg):
        remaining = sorted([n for n, d in indeg.items() if d > 0])
        raise ConfigError(f"job graph has a cycle. Stuck jobs: {remaining}")

    return levels


def job_levels(jobs: Mapping[str, JobTemplate]) -> List[List[str]]:
    adj, indeg = build_dag(jobs)
    return topo_levels(adj, indeg, order=list(jobs))
