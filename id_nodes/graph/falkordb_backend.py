"""
FalkorDB Property Graph Backend

Drop-in replacement for the in-memory PropertyGraph.
Same interface, backed by FalkorDB Cypher queries.

Vertex model:
  - Label = vertex_type
  - Property `_id` = our string ID (FalkorDB uses internal integer IDs)
  - All other properties stored as vertex properties

Edge model:
  - Relationship type = edge_type
  - Properties `_id`, `_source_id`, `_target_id` = our edge identity
  - Other properties stored on the relationship

Values are sent as query parameters. FalkorDB cannot store null
properties, so None values are dropped on write and read back as None.

Every query is retried on Redis connection/timeout errors and then
surfaces as StorageUnavailable. A single query executes atomically,
which is what replace_outgoing relies on.
"""

import logging
import time
from typing import Any, Optional

from falkordb import FalkorDB
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from id_nodes.core.errors import StorageUnavailable
from id_nodes.graph.backend import Vertex, Edge, edge_key
from id_nodes.graph.schema import VT

logger = logging.getLogger("id_nodes.falkordb")

def _label(name: str) -> str:
    return name.replace(" ", "_").replace("-", "_")


def _clean(props: Optional[dict]) -> dict:
    return {k: v for k, v in (props or {}).items() if v is not None}


def _row_to_vertex(record) -> Vertex:
    """Convert a FalkorDB node result to our Vertex dataclass."""
    props = dict(record.properties) if hasattr(record, 'properties') else {}
    vertex_id = props.pop("_id", str(record.id) if hasattr(record, 'id') else "?")
    labels = record.labels if hasattr(record, 'labels') else []
    vertex_type = labels[0] if labels else "Unknown"
    return Vertex(id=vertex_id, vertex_type=vertex_type, properties=props)


def _row_to_edge(record) -> Edge:
    """Convert a FalkorDB relationship result to our Edge dataclass."""
    props = dict(record.properties) if hasattr(record, 'properties') else {}
    edge_id = props.pop("_id", "?")
    source_id = props.pop("_source_id", "")
    target_id = props.pop("_target_id", "")
    edge_type = record.relation if hasattr(record, 'relation') else "UNKNOWN"
    return Edge(id=edge_id, source_id=source_id, target_id=target_id,
                edge_type=edge_type, properties=props)


class FalkorPropertyGraph:
    """FalkorDB-backed property graph. Same interface as PropertyGraph."""

    def __init__(self, host: str = "localhost", port: int = 6379,
                 password: str = "", graph_name: str = "id_nodes",
                 retries: int = 3, retry_delay_s: float = 0.05,
                 client: Any = None):
        self._graph_name = graph_name
        self._retries = retries
        self._retry_delay_s = retry_delay_s
        if client is None:
            kwargs = {"host": host, "port": port}
            if password:
                kwargs["password"] = password
            client = FalkorDB(**kwargs)
        self._db = client
        self._graph = self._db.select_graph(self._graph_name)
        self._ensure_indexes()

    @classmethod
    def from_settings(cls, settings) -> "FalkorPropertyGraph":
        return cls(host=settings.falkordb_host, port=settings.falkordb_port,
                   password=settings.falkordb_password,
                   graph_name=settings.falkordb_graph,
                   retries=settings.storage_retries,
                   retry_delay_s=settings.storage_retry_delay_s)

    def _ensure_indexes(self):
        """Index `_id` on the labels looked up by id."""
        for label in VT.ALL:
            try:
                self._graph.query(f"CREATE INDEX FOR (n:`{label}`) ON (n._id)")
            except (RedisConnectionError, RedisTimeoutError) as e:
                raise StorageUnavailable(f"FalkorDB unreachable: {e}") from e
            except Exception as e:
                # Index already exists
                logger.debug(f"Index on {label} not created: {e}")

    def _q(self, query: str, params: dict = None):
        """Execute a Cypher query with bounded retries."""
        for attempt in range(1, self._retries + 1):
            try:
                return self._graph.query(query, params or {})
            except (RedisConnectionError, RedisTimeoutError) as e:
                logger.warning(f"FalkorDB query failed (attempt {attempt}/{self._retries}): {e}")
                if attempt == self._retries:
                    raise StorageUnavailable(
                        f"FalkorDB unavailable after {self._retries} attempts: {e}") from e
                time.sleep(self._retry_delay_s * attempt)

    # --------------------------------------------------------
    # Vertex operations
    # --------------------------------------------------------

    def add_vertex(self, vertex_id: str, vertex_type: str,
                   properties: Optional[dict] = None) -> Vertex:
        props = _clean(properties)
        props["_id"] = vertex_id
        self._q(f"MERGE (n:`{_label(vertex_type)}` {{_id: $id}}) SET n = $props",
                {"id": vertex_id, "props": props})
        return Vertex(id=vertex_id, vertex_type=vertex_type,
                      properties=_clean(properties))

    def get_vertex(self, vertex_id: str) -> Optional[Vertex]:
        result = self._q("MATCH (n {_id: $id}) RETURN n LIMIT 1", {"id": vertex_id})
        if result.result_set:
            return _row_to_vertex(result.result_set[0][0])
        return None

    def has_vertex(self, vertex_id: str) -> bool:
        result = self._q("MATCH (n {_id: $id}) RETURN count(n)", {"id": vertex_id})
        return result.result_set[0][0] > 0

    def get_vertices_by_type(self, vertex_type: str) -> list[Vertex]:
        result = self._q(f"MATCH (n:`{_label(vertex_type)}`) RETURN n ORDER BY n._id")
        return [_row_to_vertex(row[0]) for row in result.result_set]

    def find_vertices(self, vertex_type: str, **props) -> list[Vertex]:
        where = " AND ".join(f"n.`{k}` = $p_{k}" for k in props) or "true"
        params = {f"p_{k}": v for k, v in props.items()}
        result = self._q(
            f"MATCH (n:`{_label(vertex_type)}`) WHERE {where} RETURN n ORDER BY n._id",
            params)
        return [_row_to_vertex(row[0]) for row in result.result_set]

    def update_vertex(self, vertex_id: str, **props) -> Optional[Vertex]:
        present = {k: v for k, v in props.items() if v is not None}
        absent = [k for k, v in props.items() if v is None]
        clauses = []
        if present:
            clauses.append("SET n += $props")
        for k in absent:
            clauses.append(f"REMOVE n.`{k}`")
        if not clauses:
            return self.get_vertex(vertex_id)
        result = self._q(f"MATCH (n {{_id: $id}}) {' '.join(clauses)} RETURN n",
                         {"id": vertex_id, "props": present})
        if result.result_set:
            return _row_to_vertex(result.result_set[0][0])
        return None

    def remove_vertex(self, vertex_id: str) -> bool:
        result = self._q("MATCH (n {_id: $id}) WITH n, n._id AS found "
                         "DETACH DELETE n RETURN count(found)", {"id": vertex_id})
        return bool(result.result_set and result.result_set[0][0])

    # --------------------------------------------------------
    # Edge operations
    # --------------------------------------------------------

    def add_edge(self, source_id: str, target_id: str, edge_type: str,
                 properties: Optional[dict] = None,
                 edge_id: Optional[str] = None) -> Optional[Edge]:
        if edge_id is None:
            edge_id = edge_key(edge_type, source_id, target_id)
        props = _clean(properties)
        props.update({"_id": edge_id, "_source_id": source_id, "_target_id": target_id})
        self._q("MATCH ()-[r {_id: $eid}]->() DELETE r", {"eid": edge_id})
        result = self._q(
            f"MATCH (a {{_id: $src}}), (b {{_id: $tgt}}) "
            f"CREATE (a)-[r:`{_label(edge_type)}`]->(b) SET r = $props RETURN r",
            {"src": source_id, "tgt": target_id, "props": props})
        if not result.result_set:
            return None
        return Edge(id=edge_id, source_id=source_id, target_id=target_id,
                    edge_type=edge_type, properties=_clean(properties))

    def get_edge(self, edge_id: str) -> Optional[Edge]:
        result = self._q("MATCH ()-[r {_id: $eid}]->() RETURN r LIMIT 1", {"eid": edge_id})
        if result.result_set:
            return _row_to_edge(result.result_set[0][0])
        return None

    def update_edge(self, edge_id: str, **props) -> Optional[Edge]:
        present = {k: v for k, v in props.items() if v is not None}
        clauses = ["SET r += $props"] if present else []
        clauses += [f"REMOVE r.`{k}`" for k, v in props.items() if v is None]
        if not clauses:
            return self.get_edge(edge_id)
        result = self._q(f"MATCH ()-[r {{_id: $eid}}]->() {' '.join(clauses)} RETURN r",
                         {"eid": edge_id, "props": present})
        if result.result_set:
            return _row_to_edge(result.result_set[0][0])
        return None

    def get_outgoing(self, vertex_id: str, edge_type: Optional[str] = None) -> list[Edge]:
        rel = f":`{_label(edge_type)}`" if edge_type else ""
        result = self._q(f"MATCH ({{_id: $id}})-[r{rel}]->() RETURN r ORDER BY r._id",
                         {"id": vertex_id})
        return [_row_to_edge(row[0]) for row in result.result_set]

    def get_incoming(self, vertex_id: str, edge_type: Optional[str] = None) -> list[Edge]:
        rel = f":`{_label(edge_type)}`" if edge_type else ""
        result = self._q(f"MATCH ()-[r{rel}]->({{_id: $id}}) RETURN r ORDER BY r._id",
                         {"id": vertex_id})
        return [_row_to_edge(row[0]) for row in result.result_set]

    def get_edges_by_type(self, edge_type: str) -> list[Edge]:
        result = self._q(f"MATCH ()-[r:`{_label(edge_type)}`]->() RETURN r ORDER BY r._id")
        return [_row_to_edge(row[0]) for row in result.result_set]

    def remove_edge(self, edge_id: str) -> bool:
        result = self._q("MATCH ()-[r {_id: $eid}]->() WITH r, r._id AS found "
                         "DELETE r RETURN count(found)", {"eid": edge_id})
        return bool(result.result_set and result.result_set[0][0])

    def replace_outgoing(self, source_id: str, edge_type: str,
                         targets: dict[str, dict]) -> list[Edge]:
        """Replace every `edge_type` edge leaving `source_id` in one query."""
        old = self.get_outgoing(source_id, edge_type)
        rel = _label(edge_type)
        rows = []
        for target_id in sorted(targets):
            props = _clean(targets[target_id])
            props.update({"_id": edge_key(edge_type, source_id, target_id),
                          "_source_id": source_id, "_target_id": target_id})
            rows.append({"target": target_id, "props": props})
        self._q(
            f"MATCH (a {{_id: $src}}) "
            f"OPTIONAL MATCH (a)-[old:`{rel}`]->() DELETE old "
            f"WITH DISTINCT a UNWIND $rows AS row "
            f"MATCH (b {{_id: row.target}}) "
            f"CREATE (a)-[r:`{rel}`]->(b) SET r = row.props",
            {"src": source_id, "rows": rows})
        return old

    # --------------------------------------------------------
    # Stats
    # --------------------------------------------------------

    @property
    def vertex_count(self) -> int:
        result = self._q("MATCH (n) RETURN count(n)")
        return result.result_set[0][0] if result.result_set else 0

    @property
    def edge_count(self) -> int:
        result = self._q("MATCH ()-[r]->() RETURN count(r)")
        return result.result_set[0][0] if result.result_set else 0

    def clear(self):
        """Drop all data in this graph."""
        self._q("MATCH (n) DETACH DELETE n")
