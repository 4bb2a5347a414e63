"""
DependencyGraph - a DAG over named units.

Vertices are string IDs with an opaque payload (a FeatureConfig, a
ComposeService, ...). An edge A -> B means "A must complete before B".

The graph is an arena: a payload table plus forward and reverse adjacency
sets keyed by vertex ID. copy() clones the adjacency so a second traversal
(e.g. teardown) can mutate its own graph while the first one still runs.

The graph is not thread-safe. A drain is driven by a single thread; parallel
drains each work on their own copy().
"""

from typing import Any, Iterator

from brig.errors import CycleDetected, DuplicateVertex, UnknownVertex


class DependencyGraph:
    """
    Directed acyclic graph of units.

    Usage:
        graph = DependencyGraph()
        graph.add_vertex("beta", beta_cfg)
        graph.add_vertex("alpha", alpha_cfg)
        graph.add_edge("beta", "alpha")   # beta before alpha

        graph.roots()   # {"beta": beta_cfg}
    """

    def __init__(self) -> None:
        self._payloads: dict[str, Any] = {}
        self._out: dict[str, set[str]] = {}
        self._in: dict[str, set[str]] = {}

    def __len__(self) -> int:
        return len(self._payloads)

    def __contains__(self, vertex_id: object) -> bool:
        return vertex_id in self._payloads

    def __iter__(self) -> Iterator[str]:
        return iter(self._payloads)

    def __repr__(self) -> str:
        return f"DependencyGraph(vertices={len(self._payloads)}, edges={self.edge_count()})"

    def add_vertex(self, vertex_id: str, payload: Any = None) -> None:
        """
        Add a vertex.

        Raises:
            DuplicateVertex: If vertex_id is already present
        """
        if vertex_id in self._payloads:
            raise DuplicateVertex(vertex_id)
        self._payloads[vertex_id] = payload
        self._out[vertex_id] = set()
        self._in[vertex_id] = set()

    def add_edge(self, from_id: str, to_id: str) -> None:
        """
        Add a "from_id must complete before to_id" edge.

        Adding an edge that already exists is a no-op.

        Raises:
            UnknownVertex: If either endpoint is absent
            CycleDetected: If to_id already reaches from_id
        """
        for vertex_id in (from_id, to_id):
            if vertex_id not in self._payloads:
                raise UnknownVertex(vertex_id)
        if to_id in self._out[from_id]:
            return
        if from_id == to_id or self._reaches(to_id, from_id):
            raise CycleDetected(from_id, to_id)
        self._out[from_id].add(to_id)
        self._in[to_id].add(from_id)

    def delete_vertex(self, vertex_id: str) -> None:
        """
        Remove a vertex and every edge touching it.

        Raises:
            UnknownVertex: If vertex_id is absent
        """
        if vertex_id not in self._payloads:
            raise UnknownVertex(vertex_id)
        for child in self._out.pop(vertex_id):
            self._in[child].discard(vertex_id)
        for parent in self._in.pop(vertex_id):
            self._out[parent].discard(vertex_id)
        del self._payloads[vertex_id]

    def get_vertex(self, vertex_id: str) -> Any:
        """
        Return the payload stored for vertex_id.

        Raises:
            UnknownVertex: If vertex_id is absent
        """
        if vertex_id not in self._payloads:
            raise UnknownVertex(vertex_id)
        return self._payloads[vertex_id]

    def vertices(self) -> dict[str, Any]:
        return dict(self._payloads)

    def edges(self) -> list[tuple[str, str]]:
        return [(src, dst) for src, dsts in self._out.items() for dst in dsts]

    def edge_count(self) -> int:
        return sum(len(dsts) for dsts in self._out.values())

    def roots(self) -> dict[str, Any]:
        """Vertices with no incoming edges; safe to run going forward."""
        return {vid: self._payloads[vid] for vid, parents in self._in.items() if not parents}

    def leaves(self) -> dict[str, Any]:
        """Vertices with no outgoing edges; safe to run going backward."""
        return {vid: self._payloads[vid] for vid, children in self._out.items() if not children}

    def copy(self) -> "DependencyGraph":
        """Structurally independent clone; payloads are shared, not copied."""
        clone = DependencyGraph()
        clone._payloads = dict(self._payloads)
        clone._out = {vid: set(dsts) for vid, dsts in self._out.items()}
        clone._in = {vid: set(srcs) for vid, srcs in self._in.items()}
        return clone

    def _reaches(self, start: str, target: str) -> bool:
        stack = [start]
        seen = set()
        while stack:
            current = stack.pop()
            if current == target:
                return True
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._out[current])
        return False
