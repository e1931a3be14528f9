# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Mapping, Set, Tuple

from .errors import DefinitionError


def build_dag(needs: Mapping[str, Iterable[str]]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from a `name -> needs` mapping.

    Requires:
      - every name in a needs list is a key of the mapping
      - no job needs itself

    Returns:
      adj:   need -> dependents (need must finish BEFORE dependent)
      indeg: name -> number of distinct needs
    """
    names = list(needs)
    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in names}
    indeg: Dict[str, int] = {n: 0 for n in names}

    for name in names:
        for need in needs[name] or ():
            if need == name:
                raise DefinitionError(f"Job '{name}' needs itself", job=name)
            if need not in name_set:
                raise DefinitionError(
                    f"Job '{name}' needs missing job '{need}'",
                    job=name,
                    details={"known_jobs": sorted(name_set)},
                )
            if name not in adj[need]:
                adj[need].add(name)
                indeg[name] += 1

    return adj, indeg


def topo_levels(
    adj: Dict[str, Set[str]],
    indeg: Dict[str, int],
    order: Iterable[str] | None = None,
) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (stages).
    Each stage can run in parallel. Within a stage, names keep declaration
    order (the order of `order`, or of `indeg` when omitted).
    """
    rank = {n: i for i, n in enumerate(order if order is not None else indeg)}
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted((n for n, d in indeg.items() if d == 0), key=rank.__getitem__))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []
        nxt: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in adj.get(node, set()):
                indeg[child] -= 1
                if indeg[child] == 0:
                    nxt.append(child)

        q.extend(sorted(nxt, key=rank.__getitem__))
        levels.append(level)

    if processed != len(indeg):
        remaining = sorted(n for n, d in indeg.items() if d > 0)
        raise DefinitionError(
            "Job dependency graph has a cycle",
            details={"stuck_jobs": remaining},
        )

    return levels


def check_acyclic(needs: Mapping[str, Iterable[str]]) -> List[List[str]]:
    """Validate the `needs` graph and return its stages."""
    adj, indeg = build_dag(needs)
    return topo_levels(adj, indeg, order=list(needs))
