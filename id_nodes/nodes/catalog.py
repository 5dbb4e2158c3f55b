"""
id_nodes Node Catalog

A node is a grantable property, qualification or privilege. Nodes are
administrator-curated and read-mostly; the whole catalog is held in an
arena (NodeGraph) indexed by the stable integer node id. Relations are
id tuples, never object references, so cycles cost nothing.

Two implication relations with distinct meaning:
  implies      if X is derived, everything X implies is derived
  implied_by   Y is derived once ALL of Y.implied_by are derived

Each relation keeps a back-reference index in the arena:
  implied_from   inverse of implies      (B.implied_from contains A iff A.implies contains B)
  completes      inverse of implied_by   (P.completes contains Y iff Y.implied_by contains P)

validate_graph() checks the two indexes against each other by a table
scan. Cycles are reported but never rejected.
"""

import json
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Iterable, Optional

from id_nodes.core.errors import StructuralGraphError
from id_nodes.graph.schema import (
    VT, ET, node_vid, term_vid, int_suffix, encode_json, decode_json,
)
from id_nodes.nodes.terms import Term, term_properties, term_from_vertex

logger = logging.getLogger("id_nodes.catalog")


# ============================================================
# Definitions
# ============================================================

@dataclass(frozen=True)
class FieldSpec:
    """Designates one piece of user information by its column names.

    users: column of the user record
    classes: column of the class record
    users_classes: column of the user/class join record
    """
    users: str = ""
    classes: str = ""
    users_classes: str = ""

    def as_dict(self) -> dict:
        return {"users": self.users, "classes": self.classes,
                "users_classes": self.users_classes}

    def __str__(self):
        return self.users or self.users_classes or self.classes or "?"


@dataclass(frozen=True)
class NodeDef:
    node_id: int
    name: str
    description: dict = field(default_factory=dict)
    implies: tuple[int, ...] = ()
    implied_by: tuple[int, ...] = ()
    required_terms: tuple[int, ...] = ()
    required_fields: tuple[FieldSpec, ...] = ()
    required_verified_email: tuple[str, ...] = ()
    conflicts: tuple[int, ...] = ()
    on_granted: Optional[dict] = None
    on_revoked: Optional[dict] = None
    valid_added: Optional[dict] = None
    valid_removed: Optional[dict] = None
    # Back-references, maintained by the arena
    implied_from: tuple[int, ...] = ()
    completes: tuple[int, ...] = ()

    def message(self, event: str) -> Optional[dict]:
        return {"granted": self.on_granted, "revoked": self.on_revoked,
                "valid_added": self.valid_added,
                "valid_removed": self.valid_removed}.get(event)


@dataclass(frozen=True)
class GraphViolation:
    kind: str            # asymmetric | dangling_node | dangling_term | self_conflict | duplicate_name | cycle
    node_id: int
    detail: str
    fatal: bool = True

    def __str__(self):
        return f"[{self.kind}] node {self.node_id}: {self.detail}"


def link_back_references(nodes: Iterable[NodeDef]) -> list[NodeDef]:
    """Derive implied_from and completes from the forward relations."""
    nodes = list(nodes)
    implied_from: dict[int, set[int]] = {n.node_id: set() for n in nodes}
    completes: dict[int, set[int]] = {n.node_id: set() for n in nodes}
    for n in nodes:
        for target in n.implies:
            implied_from.setdefault(target, set()).add(n.node_id)
        for prereq in n.implied_by:
            completes.setdefault(prereq, set()).add(n.node_id)
    return [replace(n, implied_from=tuple(sorted(implied_from[n.node_id])),
                    completes=tuple(sorted(completes[n.node_id])))
            for n in nodes]


# ============================================================
# Arena
# ============================================================

class NodeGraph:
    """Arena of node definitions keyed by node id."""

    def __init__(self, nodes: Iterable[NodeDef] = (), terms: Iterable[Term] = (),
                 version: int = 0):
        self._nodes: dict[int, NodeDef] = {}
        self._by_name: dict[str, int] = {}
        self._duplicates: list[tuple[int, str]] = []
        for node in nodes:
            if node.name in self._by_name and self._by_name[node.name] != node.node_id:
                self._duplicates.append((node.node_id, node.name))
            self._nodes[node.node_id] = node
            self._by_name.setdefault(node.name, node.node_id)
        self.terms: dict[int, Term] = {t.term_id: t for t in terms}
        self.version = version
        self._conflicts: dict[int, set[int]] = {nid: set() for nid in self._nodes}
        for node in self._nodes.values():
            for other in node.conflicts:
                self._conflicts.setdefault(node.node_id, set()).add(other)
                self._conflicts.setdefault(other, set()).add(node.node_id)

    @classmethod
    def build(cls, nodes: Iterable[NodeDef], terms: Iterable[Term] = (),
              version: int = 0) -> "NodeGraph":
        """Arena from forward relations only; back-references derived."""
        return cls(link_back_references(nodes), terms, version)

    def __len__(self):
        return len(self._nodes)

    def __contains__(self, node_id) -> bool:
        return node_id in self._nodes

    def get_node(self, node_id: int) -> Optional[NodeDef]:
        return self._nodes.get(node_id)

    def list_nodes(self) -> list[NodeDef]:
        return [self._nodes[nid] for nid in sorted(self._nodes)]

    def node_ids(self) -> list[int]:
        return sorted(self._nodes)

    def find_by_name(self, name: str) -> Optional[NodeDef]:
        node_id = self._by_name.get(name)
        return self._nodes.get(node_id) if node_id is not None else None

    def conflicts_of(self, node_id: int) -> set[int]:
        """Conflict pairs are unordered: declared on either side."""
        return set(self._conflicts.get(node_id, ())) - {node_id}

    def nodes_requiring_term(self, term_id: int) -> set[int]:
        return {n.node_id for n in self._nodes.values() if term_id in n.required_terms}

    # --------------------------------------------------------
    # Validation
    # --------------------------------------------------------

    def validate_graph(self) -> list[GraphViolation]:
        """Structural violations; empty list means ok. Cycles are non-fatal."""
        violations = []
        for node_id, name in self._duplicates:
            violations.append(GraphViolation("duplicate_name", node_id,
                                             f"name '{name}' is already used"))
        for node in self.list_nodes():
            nid = node.node_id
            for ref in node.implies + node.implied_by + node.conflicts:
                if ref not in self._nodes:
                    violations.append(GraphViolation("dangling_node", nid,
                                                     f"references unknown node {ref}"))
            for term_id in node.required_terms:
                if term_id not in self.terms:
                    violations.append(GraphViolation("dangling_term", nid,
                                                     f"requires unknown term {term_id}"))
            if nid in node.conflicts:
                violations.append(GraphViolation("self_conflict", nid,
                                                 "node conflicts with itself"))
            # Forward relation vs back-reference index, both directions
            for target in node.implies:
                other = self._nodes.get(target)
                if other is not None and nid not in other.implied_from:
                    violations.append(GraphViolation(
                        "asymmetric", nid, f"implies {target} but {target} does not list it in implied_from"))
            for source in node.implied_from:
                other = self._nodes.get(source)
                if other is None or nid not in other.implies:
                    violations.append(GraphViolation(
                        "asymmetric", nid, f"lists {source} in implied_from but {source} does not imply it"))
            for prereq in node.implied_by:
                other = self._nodes.get(prereq)
                if other is not None and nid not in other.completes:
                    violations.append(GraphViolation(
                        "asymmetric", nid, f"is implied by {prereq} but {prereq} does not list it in completes"))
            for dependent in node.completes:
                other = self._nodes.get(dependent)
                if other is None or nid not in other.implied_by:
                    violations.append(GraphViolation(
                        "asymmetric", nid, f"lists {dependent} in completes but {dependent} is not implied by it"))
        for cycle in self.find_cycles():
            violations.append(GraphViolation("cycle", cycle[0],
                                             f"derivation cycle through {cycle}", fatal=False))
        return violations

    def ensure_valid(self) -> list[GraphViolation]:
        """Raise StructuralGraphError on fatal violations; return the warnings."""
        violations = self.validate_graph()
        fatal = [v for v in violations if v.fatal]
        if fatal:
            raise StructuralGraphError(fatal)
        for v in violations:
            logger.warning(f"Node graph: {v}")
        return violations

    def find_cycles(self) -> list[list[int]]:
        """Groups of nodes that can derive each other (implies or implied_by)."""
        successors: dict[int, set[int]] = {nid: set() for nid in self._nodes}
        for node in self._nodes.values():
            for target in node.implies:
                if target in successors:
                    successors[node.node_id].add(target)
            for prereq in node.implied_by:
                if prereq in successors:
                    successors[prereq].add(node.node_id)

        reach: dict[int, set[int]] = {}
        for start in successors:
            seen: set[int] = set()
            frontier = list(successors[start])
            while frontier:
                current = frontier.pop()
                if current in seen:
                    continue
                seen.add(current)
                frontier.extend(successors[current] - seen)
            reach[start] = seen

        cycles, placed = [], set()
        for nid in sorted(successors):
            if nid in placed or nid not in reach[nid]:
                continue
            group = sorted(m for m in reach[nid] if nid in reach[m])
            placed.update(group)
            cycles.append(group)
        return cycles


# ============================================================
# Catalog files
# ============================================================

def _resolve(names, index: dict[str, int], owner: str, kind: str, missing: list) -> tuple[int, ...]:
    ids = []
    for name in names or ():
        if isinstance(name, int):
            ids.append(name)
        elif name in index:
            ids.append(index[name])
        else:
            missing.append(f"{owner}: unknown {kind} '{name}'")
    return tuple(ids)


def parse_catalog(data: dict, version: int = 0) -> NodeGraph:
    """Catalog document -> arena. Nodes refer to nodes and terms by name or id.

    Back-references may be declared (implied_from, completes); when they
    are omitted they are derived from the forward relations.
    """
    terms = [Term(term_id=int(t["term_id"]), name=t["name"],
                  title=t.get("title", {}),
                  current_revision=int(t.get("current_revision", 0)),
                  contents=tuple(t.get("contents", ())))
             for t in data.get("terms", [])]
    term_index = {t.name: t.term_id for t in terms}
    node_index = {n["name"]: int(n["node_id"]) for n in data.get("nodes", [])}

    missing: list[str] = []
    declared_backrefs = False
    nodes = []
    for raw in data.get("nodes", []):
        owner = raw["name"]
        declared_backrefs |= "implied_from" in raw or "completes" in raw
        nodes.append(NodeDef(
            node_id=int(raw["node_id"]),
            name=owner,
            description=raw.get("description", {}),
            implies=_resolve(raw.get("implies"), node_index, owner, "node", missing),
            implied_by=_resolve(raw.get("implied_by"), node_index, owner, "node", missing),
            required_terms=_resolve(raw.get("required_terms"), term_index, owner, "term", missing),
            required_fields=tuple(FieldSpec(**f) for f in raw.get("required_fields", ())),
            required_verified_email=tuple(raw.get("required_verified_email", ())),
            conflicts=_resolve(raw.get("conflicts"), node_index, owner, "node", missing),
            on_granted=raw.get("on_granted"),
            on_revoked=raw.get("on_revoked"),
            valid_added=raw.get("valid_added"),
            valid_removed=raw.get("valid_removed"),
            implied_from=_resolve(raw.get("implied_from"), node_index, owner, "node", missing),
            completes=_resolve(raw.get("completes"), node_index, owner, "node", missing),
        ))
    if missing:
        raise StructuralGraphError(
            [GraphViolation("dangling_node", -1, m) for m in missing])
    if declared_backrefs:
        return NodeGraph(nodes, terms, version)
    return NodeGraph.build(nodes, terms, version)


def load_catalog(path) -> NodeGraph:
    path = Path(path)
    with path.open(encoding="utf-8") as f:
        data = json.load(f)
    graph = parse_catalog(data)
    logger.info(f"Loaded catalog {path}: {len(graph)} nodes, {len(graph.terms)} terms")
    return graph


# ============================================================
# Persistence in the property graph
# ============================================================

def node_properties(node: NodeDef) -> dict:
    return {
        "node_id": node.node_id,
        "name": node.name,
        "description": encode_json(node.description),
        "required_fields": encode_json([f.as_dict() for f in node.required_fields]),
        "required_verified_email": list(node.required_verified_email),
        "on_granted": encode_json(node.on_granted),
        "on_revoked": encode_json(node.on_revoked),
        "valid_added": encode_json(node.valid_added),
        "valid_removed": encode_json(node.valid_removed),
    }


def install_catalog(graph, catalog: NodeGraph) -> None:
    """Write terms, nodes and their relations. Existing relations are replaced."""
    for term in catalog.terms.values():
        graph.add_vertex(term_vid(term.term_id), VT.TERM, term_properties(term))
    for node in catalog.list_nodes():
        graph.add_vertex(node_vid(node.node_id), VT.PRIVILEGE_NODE, node_properties(node))
    for node in catalog.list_nodes():
        src = node_vid(node.node_id)
        graph.replace_outgoing(src, ET.IMPLIES, {node_vid(t): {} for t in node.implies})
        graph.replace_outgoing(src, ET.IMPLIED_BY, {node_vid(p): {} for p in node.implied_by})
        graph.replace_outgoing(src, ET.REQUIRES_TERM,
                               {term_vid(t): {} for t in node.required_terms})
        graph.replace_outgoing(src, ET.CONFLICTS_WITH, {node_vid(c): {} for c in node.conflicts})
    logger.info(f"Installed catalog: {len(catalog)} nodes, {len(catalog.terms)} terms")


def load_node_graph(graph, version: int = 0) -> NodeGraph:
    """Read the arena back from the property graph.

    Back-references come from incoming edges, so an edge whose other end
    is not a PrivilegeNode shows up as an asymmetry.
    """
    terms = [term_from_vertex(v) for v in graph.get_vertices_by_type(VT.TERM)]
    nodes = []
    for vertex in graph.get_vertices_by_type(VT.PRIVILEGE_NODE):
        vid = vertex.id

        def targets(edge_type):
            return tuple(sorted(int_suffix(e.target_id) for e in graph.get_outgoing(vid, edge_type)))

        def sources(edge_type):
            return tuple(sorted(int_suffix(e.source_id) for e in graph.get_incoming(vid, edge_type)))

        nodes.append(NodeDef(
            node_id=int(vertex.get("node_id", int_suffix(vid))),
            name=vertex.get("name", ""),
            description=decode_json(vertex.get("description"), {}),
            implies=targets(ET.IMPLIES),
            implied_by=targets(ET.IMPLIED_BY),
            required_terms=targets(ET.REQUIRES_TERM),
            required_fields=tuple(FieldSpec(**f) for f in decode_json(vertex.get("required_fields"), [])),
            required_verified_email=tuple(vertex.get("required_verified_email") or ()),
            conflicts=targets(ET.CONFLICTS_WITH),
            on_granted=decode_json(vertex.get("on_granted")),
            on_revoked=decode_json(vertex.get("on_revoked")),
            valid_added=decode_json(vertex.get("valid_added")),
            valid_removed=decode_json(vertex.get("valid_removed")),
            implied_from=sources(ET.IMPLIES),
            completes=sources(ET.IMPLIED_BY),
        ))
    return NodeGraph(nodes, terms, version)
