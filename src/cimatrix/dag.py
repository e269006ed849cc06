# dag.py
from __future__ import annotations

import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .executor import CancelToken
from .errors import PipelineCancelled


@dataclass(frozen=True)
class Stage:
    """One pipeline phase. Stages in the same level run in parallel."""
    name: str
    run: Callable[["StageContext"], Any]
    needs: Tuple[str, ...] = ()
    abort_on_cancel: bool = True  # False: still runs after a cancel, e.g. aggregation


def build_dag(nodes: Sequence[Stage]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from named nodes.

    Requires:
      - node.name: str (unique)
      - node.needs: iterable[str] (names of nodes that must run BEFORE this one)
    """
    names = [n.name for n in nodes]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ValueError(f"Duplicate stage names found: {dupes}")

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in name_set}
    indeg: Dict[str, int] = {n: 0 for n in name_set}

    for node in nodes:
        for dep in node.needs:
            if dep not in name_set:
                raise ValueError(
                    f"Stage '{node.name}' needs missing stage '{dep}'. "
                    f"Known stages: {sorted(name_set)}"
                )
            # edge dep -> node.name
            if node.name not in adj[dep]:
                adj[dep].add(node.name)
                indeg[node.name] += 1

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels".
    Each level can run in parallel.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted([n for n, d in indeg.items() if d == 0]))

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
        remaining = sorted([n for n, d in indeg.items() if d > 0])
        raise ValueError(f"DAG has a cycle (or unresolved needs). Stuck nodes: {remaining}")

    return levels


class StageContext:
    """
    Write-once store shared by the stages of one run.

    A value is published exactly once; publishing the same key twice is a
    programming error. Values only become readable by later levels, since a
    level never starts before the previous one has fully finished.
    """

    def __init__(self, cancel: Optional[CancelToken] = None):
        self.cancel = cancel or CancelToken()
        self._values: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def publish(self, key: str, value: Any) -> None:
        with self._lock:
            if key in self._values:
                raise RuntimeError(f"stage output {key!r} already published")
            self._values[key] = value

    def get(self, key: str) -> Any:
        with self._lock:
            if key not in self._values:
                raise KeyError(f"stage output {key!r} not published yet")
            return self._values[key]

    def get_or(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._values.get(key, default)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._values


def run_stages(
    stages: Iterable[Stage],
    ctx: StageContext,
    *,
    on_barrier: Optional[Callable[[int, List[str], StageContext], None]] = None,
) -> List[List[str]]:
    """
    Run stages level by level.

    The end of each level is a barrier: every stage of the level has
    returned before the next level starts. `on_barrier` runs at each
    barrier; cancellation is checked there too, so a cancelled run never
    enters a level holding an abort_on_cancel stage. The first stage
    exception aborts the run.
    """
    stages = list(stages)
    by_name = {s.name: s for s in stages}
    adj, indeg = build_dag(stages)
    levels = topo_levels(adj, indeg)

    for idx, level in enumerate(levels):
        if ctx.cancel.cancelled and any(by_name[n].abort_on_cancel for n in level):
            raise PipelineCancelled(f"cancelled before stage(s) {level}")

        if len(level) == 1:
            by_name[level[0]].run(ctx)
        else:
            with ThreadPoolExecutor(max_workers=len(level)) as pool:
                futures = {pool.submit(by_name[name].run, ctx): name for name in level}
                for future in as_completed(futures):
                    future.result()

        if on_barrier is not None:
            on_barrier(idx, level, ctx)

    return levels
