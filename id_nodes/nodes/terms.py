"""
id_nodes Legal Terms and Acceptance Tracking

A user's acceptance is tied to one revision of a term. Acceptance of a
revision older than the term's current revision counts as `pending`.

Acceptance records are ACCEPTED edges (user -> term) carrying the
revision and status (users_term_status).
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from id_nodes.core.errors import PolicyError, PolicyResult
from id_nodes.graph.backend import edge_key
from id_nodes.graph.schema import (
    VT, ET, term_vid, user_vid, int_suffix, encode_json, decode_json,
)

logger = logging.getLogger("id_nodes.terms")


class TermStatus(Enum):
    OK = "ok"
    NO = "no"
    PENDING = "pending"


@dataclass(frozen=True)
class Term:
    term_id: int
    name: str
    title: dict = field(default_factory=dict)    # locale -> text
    current_revision: int = 0
    contents: tuple[str, ...] = ()               # revision texts, oldest first

    def content_of(self, revision: int) -> Optional[str]:
        if 0 <= revision < len(self.contents):
            return self.contents[revision]
        return None


def term_properties(term: Term) -> dict:
    return {
        "term_id": term.term_id,
        "name": term.name,
        "title": encode_json(term.title),
        "current_revision": term.current_revision,
        "contents": list(term.contents),
    }


def term_from_vertex(vertex) -> Term:
    return Term(
        term_id=int(vertex.get("term_id", int_suffix(vertex.id))),
        name=vertex.get("name", ""),
        title=decode_json(vertex.get("title"), {}),
        current_revision=int(vertex.get("current_revision", 0)),
        contents=tuple(vertex.get("contents") or ()),
    )


def gate_passes(statuses: dict[int, TermStatus], required_terms, condition: str) -> bool:
    """Term-gate check for one node.

    condition "ok": every required term is accepted at its current revision.
    condition "not_no": no required term is explicitly rejected.
    """
    for term_id in required_terms:
        status = statuses.get(term_id, TermStatus.PENDING)
        if condition == "ok" and status is not TermStatus.OK:
            return False
        if condition == "not_no" and status is TermStatus.NO:
            return False
    return True


class TermTracker:
    """Per (user, term) acceptance status.

    may_accept: callable(user_id, term_id) -> bool. Soft check that the
    user holds some node requiring the term before `ok`/`no` is recorded.
    """

    def __init__(self, graph, may_accept: Optional[Callable[[int, int], bool]] = None):
        self.graph = graph
        self.may_accept = may_accept

    def get_term(self, term_id: int) -> Optional[Term]:
        vertex = self.graph.get_vertex(term_vid(term_id))
        if vertex is None or vertex.vertex_type != VT.TERM:
            return None
        return term_from_vertex(vertex)

    def list_terms(self) -> list[Term]:
        terms = [term_from_vertex(v) for v in self.graph.get_vertices_by_type(VT.TERM)]
        return sorted(terms, key=lambda t: t.term_id)

    def get_status(self, user_id: int, term_id: int) -> TermStatus:
        term = self.get_term(term_id)
        if term is None:
            return TermStatus.PENDING
        edge = self.graph.get_edge(edge_key(ET.ACCEPTED, user_vid(user_id), term_vid(term_id)))
        if edge is None:
            return TermStatus.PENDING
        if int(edge.get("revision", -1)) < term.current_revision:
            return TermStatus.PENDING
        return TermStatus(edge.get("status", TermStatus.PENDING.value))

    def statuses(self, user_id: int) -> dict[int, TermStatus]:
        """Status of every term for one user (terms without records are pending)."""
        current = {t.term_id: t.current_revision for t in self.list_terms()}
        result = {term_id: TermStatus.PENDING for term_id in current}
        for edge in self.graph.get_outgoing(user_vid(user_id), ET.ACCEPTED):
            term_id = int_suffix(edge.target_id)
            if term_id not in current:
                continue
            if int(edge.get("revision", -1)) >= current[term_id]:
                result[term_id] = TermStatus(edge.get("status", TermStatus.PENDING.value))
        return result

    def set_status(self, uow, user_id: int, term_id: int, revision: int,
                   status: TermStatus) -> PolicyResult:
        """Record a user's decision on one revision of a term.

        Writes through `uow` so the caller controls the transaction.
        """
        if not self.graph.has_vertex(user_vid(user_id)):
            return PolicyResult.reject(PolicyError.E_NOT_FOUND, f"User {user_id} not found")
        term = self.get_term(term_id)
        if term is None:
            return PolicyResult.reject(PolicyError.E_NOT_FOUND, f"Term {term_id} not found")
        if revision != term.current_revision:
            return PolicyResult.reject(
                PolicyError.E_STALE,
                f"Revision {revision} of term '{term.name}' is not current "
                f"(current is {term.current_revision})")
        if status is not TermStatus.PENDING and self.may_accept is not None:
            if not self.may_accept(user_id, term_id):
                return PolicyResult.reject(
                    PolicyError.E_TRANSITION,
                    f"User {user_id} holds no node requiring term '{term.name}'")
        uow.add_edge(user_vid(user_id), term_vid(term_id), ET.ACCEPTED,
                     {"revision": revision, "status": status.value})
        logger.info(f"User {user_id} set term '{term.name}' r{revision} to {status.value}")
        return PolicyResult(ok=True, value=status)
