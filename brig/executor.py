"""
Executor - level-parallel drain of a DependencyGraph.

The executor implements:
- Level selection (roots going forward, leaves going backward)
- Concurrent execution of every unit in a level
- A join barrier between levels
- Fail-fast: the first collected error aborts the drain

Execution flow:
1. Compute the ready set (roots() forward, leaves() reverse)
2. Empty ready set + empty graph: done
3. Empty ready set + non-empty graph: MalformedGraph
4. Submit one call per ready unit to the thread pool
5. Wait for every call in the level; collect errors in launch order
6. Any error: raise UnitExecutionFailed for the first one; the failed level
   stays in the graph and later levels are never reached
7. Otherwise delete the level's vertices and go to 1

The same drain is used for Feature installation (forward), Compose service
startup (forward) and Compose service teardown (reverse, on a copy).
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from brig.errors import MalformedGraph, UnitExecutionFailed
from brig.graph import DependencyGraph

logger = logging.getLogger(__name__)


UnitFunc = Callable[[Any], Any]


@dataclass
class DrainResult:
    """Levels completed by a drain, in execution order."""
    levels: list[list[str]] = field(default_factory=list)

    @property
    def visited(self) -> list[str]:
        return [unit_id for level in self.levels for unit_id in level]

    def __len__(self) -> int:
        return len(self.levels)


class LevelParallelExecutor:
    """
    Drains a DependencyGraph level by level.

    Usage:
        executor = LevelParallelExecutor(name="features")
        executor.drain(graph, install_feature)          # dependencies first
        executor.drain(graph.copy(), stop, reverse=True) # dependents first

    The graph passed in is consumed: successfully processed vertices are
    deleted from it. Pass graph.copy() to keep the original.
    """

    def __init__(self, name: str = "drain", max_workers: Optional[int] = None):
        """
        Initialize the executor.

        Args:
            name: Label used in log messages and worker thread names
            max_workers: Upper bound on concurrent units per level
                         (default: the level size)
        """
        self.name = name
        self._max_workers = max_workers

    def drain(
        self,
        graph: DependencyGraph,
        fn: UnitFunc,
        reverse: bool = False,
    ) -> DrainResult:
        """
        Run fn(payload) for every vertex in dependency order.

        Args:
            graph: Graph to consume
            fn: Called once per unit with the vertex payload
            reverse: Drain leaves-first (teardown order)

        Returns:
            DrainResult with the completed levels

        Raises:
            UnitExecutionFailed: If any unit in a level raised
            MalformedGraph: If the graph has vertices but no ready level
        """
        result = DrainResult()
        direction = "reverse" if reverse else "forward"
        logger.debug(f"Starting {direction} drain: {self.name} ({len(graph)} units)")

        while True:
            ready = graph.leaves() if reverse else graph.roots()
            if not ready:
                if len(graph) > 0:
                    raise MalformedGraph(list(graph))
                break

            level = list(ready)
            logger.debug(f"  {self.name} level {len(result.levels) + 1}: {sorted(level)}")
            self._run_level(ready, fn)

            for unit_id in level:
                graph.delete_vertex(unit_id)
            result.levels.append(level)

        logger.debug(f"Completed {direction} drain: {self.name} ({len(result.levels)} levels)")
        return result

    def _run_level(self, ready: dict[str, Any], fn: UnitFunc) -> None:
        workers = self._max_workers or len(ready)
        futures: list[tuple[str, Future]] = []
        with ThreadPoolExecutor(
            max_workers=workers,
            thread_name_prefix=f"brig-{self.name}",
        ) as pool:
            for unit_id, payload in ready.items():
                futures.append((unit_id, pool.submit(fn, payload)))
            wait([future for _, future in futures])

        errors = []
        for unit_id, future in futures:
            exc = future.exception()
            if exc is not None:
                logger.error(f"    FAIL {unit_id}: {exc}")
                errors.append((unit_id, exc))

        if errors:
            unit_id, exc = errors[0]
            raise UnitExecutionFailed(unit_id, exc) from exc
