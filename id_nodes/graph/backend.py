"""
id_nodes In-Memory Property Graph Backend

Production uses FalkorDB. This is a dict-based in-memory graph
that implements the same semantics for development and testing.

Vertices have: id, type, properties
Edges have: id, source, target, type, properties
Both are queryable by type and property values.

Every relation of the identity service (grants, masks, term acceptance,
valid-set snapshots) is an edge between typed vertices. Edge ids are
deterministic so that an edge id behaves like a relational primary key.
"""

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Optional


@dataclass
class Vertex:
    """A vertex in the property graph."""
    id: str
    vertex_type: str
    properties: dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default=None) -> Any:
        return self.properties.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.properties[key] = value

    def __hash__(self):
        return hash(self.id)

    def __eq__(self, other):
        if not isinstance(other, Vertex):
            return False
        return self.id == other.id


@dataclass
class Edge:
    """An edge in the property graph."""
    id: str
    source_id: str
    target_id: str
    edge_type: str
    properties: dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default=None) -> Any:
        return self.properties.get(key, default)

    def __hash__(self):
        return hash(self.id)

    def __eq__(self, other):
        if not isinstance(other, Edge):
            return False
        return self.id == other.id


def edge_key(edge_type: str, source_id: str, target_id: str) -> str:
    """Deterministic edge id: one edge of a type per (source, target)."""
    return f"{edge_type.lower()}:{source_id}->{target_id}"


class PropertyGraph:
    """In-memory property graph with typed vertices and edges.

    Provides the query interface that the rest of id_nodes uses.
    In production, these queries become Cypher against FalkorDB.
    All reads and writes hold one re-entrant lock, so a bulk
    `replace_outgoing` is never observed half-applied.
    """

    def __init__(self):
        self._vertices: dict[str, Vertex] = {}
        self._edges: dict[str, Edge] = {}
        # Indexes for fast lookup
        self._vertices_by_type: dict[str, set[str]] = {}
        self._outgoing: dict[str, set[str]] = {}   # vertex_id -> set of edge_ids
        self._incoming: dict[str, set[str]] = {}   # vertex_id -> set of edge_ids
        self._lock = threading.RLock()

    # --------------------------------------------------------
    # Vertex operations
    # --------------------------------------------------------

    def add_vertex(self, vertex_id: str, vertex_type: str,
                   properties: Optional[dict] = None) -> Vertex:
        """Add a vertex. Overwrites properties if it exists."""
        with self._lock:
            vertex = Vertex(id=vertex_id, vertex_type=vertex_type,
                            properties=dict(properties or {}))
            self._vertices[vertex_id] = vertex
            self._vertices_by_type.setdefault(vertex_type, set()).add(vertex_id)
            self._outgoing.setdefault(vertex_id, set())
            self._incoming.setdefault(vertex_id, set())
            return vertex

    def get_vertex(self, vertex_id: str) -> Optional[Vertex]:
        with self._lock:
            vertex = self._vertices.get(vertex_id)
            if vertex is None:
                return None
            return Vertex(vertex.id, vertex.vertex_type, dict(vertex.properties))

    def has_vertex(self, vertex_id: str) -> bool:
        with self._lock:
            return vertex_id in self._vertices

    def get_vertices_by_type(self, vertex_type: str) -> list[Vertex]:
        with self._lock:
            ids = sorted(self._vertices_by_type.get(vertex_type, set()))
            return [self.get_vertex(vid) for vid in ids if vid in self._vertices]

    def find_vertices(self, vertex_type: str, **props) -> list[Vertex]:
        """Find vertices by type and property values."""
        return [v for v in self.get_vertices_by_type(vertex_type)
                if all(v.get(k) == val for k, val in props.items())]

    def update_vertex(self, vertex_id: str, **props) -> Optional[Vertex]:
        """Update vertex properties."""
        with self._lock:
            vertex = self._vertices.get(vertex_id)
            if vertex is None:
                return None
            vertex.properties.update(props)
            return self.get_vertex(vertex_id)

    def remove_vertex(self, vertex_id: str) -> bool:
        """Remove a vertex and all its edges."""
        with self._lock:
            if vertex_id not in self._vertices:
                return False
            for eid in list(self._outgoing.get(vertex_id, set())):
                self.remove_edge(eid)
            for eid in list(self._incoming.get(vertex_id, set())):
                self.remove_edge(eid)
            vertex = self._vertices.pop(vertex_id)
            self._vertices_by_type.get(vertex.vertex_type, set()).discard(vertex_id)
            self._outgoing.pop(vertex_id, None)
            self._incoming.pop(vertex_id, None)
            return True

    # --------------------------------------------------------
    # Edge operations
    # --------------------------------------------------------

    def add_edge(self, source_id: str, target_id: str, edge_type: str,
                 properties: Optional[dict] = None,
                 edge_id: Optional[str] = None) -> Optional[Edge]:
        """Add an edge between two vertices. Replaces an edge with the same id."""
        with self._lock:
            if source_id not in self._vertices or target_id not in self._vertices:
                return None
            if edge_id is None:
                edge_id = edge_key(edge_type, source_id, target_id)
            if edge_id in self._edges:
                self.remove_edge(edge_id)
            edge = Edge(id=edge_id, source_id=source_id, target_id=target_id,
                        edge_type=edge_type, properties=dict(properties or {}))
            self._edges[edge_id] = edge
            self._outgoing.setdefault(source_id, set()).add(edge_id)
            self._incoming.setdefault(target_id, set()).add(edge_id)
            return self._copy_edge(edge)

    def get_edge(self, edge_id: str) -> Optional[Edge]:
        with self._lock:
            edge = self._edges.get(edge_id)
            return self._copy_edge(edge) if edge else None

    def update_edge(self, edge_id: str, **props) -> Optional[Edge]:
        with self._lock:
            edge = self._edges.get(edge_id)
            if edge is None:
                return None
            edge.properties.update(props)
            return self._copy_edge(edge)

    def get_outgoing(self, vertex_id: str, edge_type: Optional[str] = None) -> list[Edge]:
        """Get all outgoing edges from a vertex, ordered by edge id."""
        with self._lock:
            return self._collect(self._outgoing.get(vertex_id, set()), edge_type)

    def get_incoming(self, vertex_id: str, edge_type: Optional[str] = None) -> list[Edge]:
        """Get all incoming edges to a vertex, ordered by edge id."""
        with self._lock:
            return self._collect(self._incoming.get(vertex_id, set()), edge_type)

    def get_edges_by_type(self, edge_type: str) -> list[Edge]:
        with self._lock:
            return self._collect(self._edges.keys(), edge_type)

    def remove_edge(self, edge_id: str) -> bool:
        """Remove an edge."""
        with self._lock:
            edge = self._edges.pop(edge_id, None)
            if edge is None:
                return False
            self._outgoing.get(edge.source_id, set()).discard(edge_id)
            self._incoming.get(edge.target_id, set()).discard(edge_id)
            return True

    def replace_outgoing(self, source_id: str, edge_type: str,
                         targets: dict[str, dict]) -> list[Edge]:
        """Atomically replace every `edge_type` edge leaving `source_id`.

        targets: target vertex id -> edge properties.
        Returns the edges that were removed.
        """
        with self._lock:
            old = self.get_outgoing(source_id, edge_type)
            for edge in old:
                self.remove_edge(edge.id)
            for target_id in sorted(targets):
                self.add_edge(source_id, target_id, edge_type, targets[target_id])
            return old

    def _collect(self, edge_ids, edge_type: Optional[str]) -> list[Edge]:
        results = []
        for eid in sorted(edge_ids):
            edge = self._edges.get(eid)
            if edge and (edge_type is None or edge.edge_type == edge_type):
                results.append(self._copy_edge(edge))
        return results

    @staticmethod
    def _copy_edge(edge: Edge) -> Edge:
        return Edge(edge.id, edge.source_id, edge.target_id,
                    edge.edge_type, dict(edge.properties))

    # --------------------------------------------------------
    # Stats
    # --------------------------------------------------------

    @property
    def vertex_count(self) -> int:
        return len(self._vertices)

    @property
    def edge_count(self) -> int:
        return len(self._edges)


# ============================================================
# Unit of work
# ============================================================

class UnitOfWork:
    """Mutations applied through a unit of work record their inverse.

    `rollback` replays the inverses newest-first. Works against any
    backend exposing the PropertyGraph interface.
    """

    def __init__(self, graph):
        self.graph = graph
        self._undo: list[Callable[[], Any]] = []

    def add_vertex(self, vertex_id: str, vertex_type: str,
                   properties: Optional[dict] = None) -> Vertex:
        previous = self.graph.get_vertex(vertex_id)
        vertex = self.graph.add_vertex(vertex_id, vertex_type, properties)
        if previous is None:
            self._undo.append(lambda: self.graph.remove_vertex(vertex_id))
        else:
            self._undo.append(lambda: self.graph.add_vertex(
                previous.id, previous.vertex_type, previous.properties))
        return vertex

    def update_vertex(self, vertex_id: str, **props) -> Optional[Vertex]:
        previous = self.graph.get_vertex(vertex_id)
        if previous is None:
            return None
        restore = {k: previous.get(k) for k in props}
        self._undo.append(lambda: self.graph.update_vertex(vertex_id, **restore))
        return self.graph.update_vertex(vertex_id, **props)

    def add_edge(self, source_id: str, target_id: str, edge_type: str,
                 properties: Optional[dict] = None,
                 edge_id: Optional[str] = None) -> Optional[Edge]:
        edge_id = edge_id or edge_key(edge_type, source_id, target_id)
        previous = self.graph.get_edge(edge_id)
        edge = self.graph.add_edge(source_id, target_id, edge_type, properties, edge_id)
        if edge is None:
            return None
        if previous is None:
            self._undo.append(lambda: self.graph.remove_edge(edge_id))
        else:
            self._undo.append(lambda: self._restore_edge(previous))
        return edge

    def update_edge(self, edge_id: str, **props) -> Optional[Edge]:
        previous = self.graph.get_edge(edge_id)
        if previous is None:
            return None
        restore = {k: previous.get(k) for k in props}
        self._undo.append(lambda: self.graph.update_edge(edge_id, **restore))
        return self.graph.update_edge(edge_id, **props)

    def remove_edge(self, edge_id: str) -> bool:
        previous = self.graph.get_edge(edge_id)
        if previous is None:
            return False
        self.graph.remove_edge(edge_id)
        self._undo.append(lambda: self._restore_edge(previous))
        return True

    def replace_outgoing(self, source_id: str, edge_type: str,
                         targets: dict[str, dict]) -> list[Edge]:
        removed = self.graph.replace_outgoing(source_id, edge_type, targets)

        def undo():
            self.graph.replace_outgoing(
                source_id, edge_type,
                {e.target_id: e.properties for e in removed})
        self._undo.append(undo)
        return removed

    def _restore_edge(self, edge: Edge) -> None:
        self.graph.add_edge(edge.source_id, edge.target_id, edge.edge_type,
                            edge.properties, edge.id)

    def rollback(self) -> None:
        while self._undo:
            self._undo.pop()()

    def __getattr__(self, name):
        # Reads pass straight through to the graph.
        return getattr(self.graph, name)


@contextmanager
def transaction(graph) -> Iterator[UnitOfWork]:
    """Run a block of mutations as one unit; undo all of them if it raises."""
    uow = UnitOfWork(graph)
    try:
        yield uow
    except BaseException:
        uow.rollback()
        raise
