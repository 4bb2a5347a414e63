"""Tests for LevelParallelExecutor.

Covers level ordering in both directions, concurrency within a level, and
fail-fast behaviour.
"""

import random
import threading

import pytest

from brig.errors import MalformedGraph, UnitExecutionFailed
from brig.executor import DrainResult, LevelParallelExecutor
from brig.graph import DependencyGraph


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def feature_graph() -> DependencyGraph:
    """alpha depends on beta and gamma; delta is independent."""
    graph = DependencyGraph()
    for vertex_id in ("alpha", "beta", "gamma", "delta"):
        graph.add_vertex(vertex_id, vertex_id)
    graph.add_edge("beta", "alpha")
    graph.add_edge("gamma", "alpha")
    return graph


class Recorder:
    def __init__(self, fail=()):
        self.fail = set(fail)
        self.calls = []
        self._lock = threading.Lock()

    def __call__(self, payload):
        with self._lock:
            self.calls.append(payload)
        if payload in self.fail:
            raise RuntimeError(f"{payload} broke")


# =============================================================================
# TESTS
# =============================================================================


class TestForwardDrain:

    def test_levels(self, feature_graph):
        result = LevelParallelExecutor().drain(feature_graph, Recorder())

        assert [set(level) for level in result.levels] == [{"beta", "gamma", "delta"}, {"alpha"}]
        assert len(result) == 2

    def test_graph_is_consumed(self, feature_graph):
        LevelParallelExecutor().drain(feature_graph, Recorder())
        assert len(feature_graph) == 0

    def test_every_unit_runs_once(self, feature_graph):
        recorder = Recorder()
        result = LevelParallelExecutor().drain(feature_graph, recorder)

        assert sorted(recorder.calls) == ["alpha", "beta", "delta", "gamma"]
        assert sorted(result.visited) == sorted(recorder.calls)

    def test_dependencies_run_first(self, feature_graph):
        recorder = Recorder()
        LevelParallelExecutor().drain(feature_graph, recorder)

        assert recorder.calls[-1] == "alpha"

    def test_empty_graph(self):
        result = LevelParallelExecutor().drain(DependencyGraph(), Recorder())
        assert result == DrainResult()
        assert result.visited == []


class TestReverseDrain:

    def test_dependents_run_first(self, feature_graph):
        result = LevelParallelExecutor().drain(feature_graph, Recorder(), reverse=True)

        assert [set(level) for level in result.levels] == [{"alpha", "delta"}, {"beta", "gamma"}]

    def test_reverse_on_copy_leaves_original(self, feature_graph):
        LevelParallelExecutor().drain(feature_graph.copy(), Recorder(), reverse=True)
        assert len(feature_graph) == 4


class TestConcurrency:

    def test_level_runs_concurrently(self):
        graph = DependencyGraph()
        graph.add_vertex("a", "a")
        graph.add_vertex("b", "b")
        barrier = threading.Barrier(2, timeout=5)

        # Both units must be in flight at once to pass the barrier
        LevelParallelExecutor().drain(graph, lambda payload: barrier.wait())

    def test_max_workers_bound(self, feature_graph):
        recorder = Recorder()
        LevelParallelExecutor(max_workers=1).drain(feature_graph, recorder)
        assert len(recorder.calls) == 4


class TestFailures:

    def test_failure_stops_later_levels(self, feature_graph):
        recorder = Recorder(fail={"beta"})

        with pytest.raises(UnitExecutionFailed) as exc_info:
            LevelParallelExecutor().drain(feature_graph, recorder)

        assert exc_info.value.unit_id == "beta"
        assert isinstance(exc_info.value.cause, RuntimeError)
        assert "alpha" not in recorder.calls

    def test_siblings_in_failed_level_complete(self, feature_graph):
        recorder = Recorder(fail={"beta"})

        with pytest.raises(UnitExecutionFailed):
            LevelParallelExecutor().drain(feature_graph, recorder)

        assert {"beta", "gamma", "delta"} <= set(recorder.calls)

    def test_failed_level_stays_in_graph(self, feature_graph):
        with pytest.raises(UnitExecutionFailed):
            LevelParallelExecutor().drain(feature_graph, Recorder(fail={"gamma"}))

        assert set(feature_graph) == {"alpha", "beta", "gamma", "delta"}

    def test_first_error_in_launch_order(self):
        graph = DependencyGraph()
        for vertex_id in ("first", "second", "third"):
            graph.add_vertex(vertex_id, vertex_id)

        with pytest.raises(UnitExecutionFailed) as exc_info:
            LevelParallelExecutor().drain(graph, Recorder(fail={"second", "third"}))

        assert exc_info.value.unit_id == "second"

    def test_no_ready_level_is_malformed(self):
        class StuckGraph:
            def roots(self):
                return {}

            def __len__(self):
                return 2

            def __iter__(self):
                return iter(["a", "b"])

        with pytest.raises(MalformedGraph) as exc_info:
            LevelParallelExecutor().drain(StuckGraph(), Recorder())
        assert exc_info.value.remaining == ["a", "b"]


# =============================================================================
# RANDOM ACYCLIC GRAPHS
# =============================================================================


def random_dag(seed: int) -> tuple[DependencyGraph, list[tuple[str, str]]]:
    """Acyclic by construction: edges only run from lower to higher rank."""
    rng = random.Random(seed)
    ids = [f"unit-{n}" for n in range(rng.randint(1, 14))]
    rng.shuffle(ids)
    graph = DependencyGraph()
    for vertex_id in ids:
        graph.add_vertex(vertex_id, vertex_id)
    edges = []
    for i, src in enumerate(ids):
        for dst in ids[i + 1:]:
            if rng.random() < 0.3:
                graph.add_edge(src, dst)
                edges.append((src, dst))
    return graph, edges


@pytest.mark.parametrize("seed", range(25))
@pytest.mark.parametrize("reverse", [False, True])
def test_random_graph_visits_each_unit_once_after_its_prerequisites(seed, reverse):
    graph, edges = random_dag(seed)
    units = set(graph)
    recorder = Recorder()

    result = LevelParallelExecutor().drain(graph, recorder, reverse=reverse)

    assert sorted(recorder.calls) == sorted(units)
    assert sorted(result.visited) == sorted(units)
    level_of = {unit: index for index, level in enumerate(result.levels) for unit in level}
    for src, dst in edges:
        if reverse:
            assert level_of[dst] < level_of[src]
        else:
            assert level_of[src] < level_of[dst]
