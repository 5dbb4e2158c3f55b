"""
id_nodes Grant Ledger, Mask Store and Valid-Set Snapshots

Per (user, node) records, each an edge from the user vertex to the
node vertex:

  GRANTED  accepted, expires_at, granted_at, granted_by     (users_nodes)
  MASKED   masked_at, masked_by                              (users_masks)
  VALID    term_ok, term_semi                                (users_valids)

Reads go to the graph directly. Writes take a unit of work (or the
graph itself) so the workflow decides the transaction boundary.
"""

from dataclasses import dataclass
from typing import Optional

from id_nodes.graph.backend import edge_key
from id_nodes.graph.schema import ET, node_vid, user_vid, int_suffix, now_ms


@dataclass(frozen=True)
class Grant:
    user_id: int
    node_id: int
    accepted: bool                  # False: pending request by the user
    expires_at: Optional[int] = None   # epoch ms
    granted_at: Optional[int] = None
    granted_by: str = ""

    def is_expired(self, now: int) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def is_approved(self, now: int) -> bool:
        return self.accepted and not self.is_expired(now)

    @property
    def state(self) -> str:
        return "approved" if self.accepted else "requested"


def _grant_from_edge(edge) -> Grant:
    expires = edge.get("expires_at")
    granted_at = edge.get("granted_at")
    return Grant(
        user_id=int_suffix(edge.source_id),
        node_id=int_suffix(edge.target_id),
        accepted=bool(edge.get("accepted", False)),
        expires_at=int(expires) if expires is not None else None,
        granted_at=int(granted_at) if granted_at is not None else None,
        granted_by=edge.get("granted_by", "") or "",
    )


class GrantLedger:

    def __init__(self, graph):
        self.graph = graph

    def get(self, user_id: int, node_id: int) -> Optional[Grant]:
        edge = self.graph.get_edge(edge_key(ET.GRANTED, user_vid(user_id), node_vid(node_id)))
        return _grant_from_edge(edge) if edge else None

    def grants(self, user_id: int) -> list[Grant]:
        return [_grant_from_edge(e) for e in self.graph.get_outgoing(user_vid(user_id), ET.GRANTED)]

    def approved_nodes(self, user_id: int, now: Optional[int] = None) -> set[int]:
        """Accepted and unexpired. Expired rows count as absent."""
        now = now_ms() if now is None else now
        return {g.node_id for g in self.grants(user_id) if g.is_approved(now)}

    def expired(self, now: Optional[int] = None) -> list[Grant]:
        now = now_ms() if now is None else now
        grants = [_grant_from_edge(e) for e in self.graph.get_edges_by_type(ET.GRANTED)]
        return [g for g in grants if g.is_expired(now)]

    def put(self, uow, grant: Grant) -> Grant:
        uow.add_edge(user_vid(grant.user_id), node_vid(grant.node_id), ET.GRANTED, {
            "accepted": grant.accepted,
            "expires_at": grant.expires_at,
            "granted_at": grant.granted_at,
            "granted_by": grant.granted_by,
        })
        return grant

    def delete(self, uow, user_id: int, node_id: int) -> bool:
        return uow.remove_edge(edge_key(ET.GRANTED, user_vid(user_id), node_vid(node_id)))


class MaskStore:

    def __init__(self, graph):
        self.graph = graph

    def is_masked(self, user_id: int, node_id: int) -> bool:
        return self.graph.get_edge(
            edge_key(ET.MASKED, user_vid(user_id), node_vid(node_id))) is not None

    def masked_nodes(self, user_id: int) -> set[int]:
        return {int_suffix(e.target_id)
                for e in self.graph.get_outgoing(user_vid(user_id), ET.MASKED)}

    def mask(self, uow, user_id: int, node_id: int, masked_by: str = "") -> None:
        uow.add_edge(user_vid(user_id), node_vid(node_id), ET.MASKED,
                     {"masked_at": now_ms(), "masked_by": masked_by})

    def unmask(self, uow, user_id: int, node_id: int) -> bool:
        return uow.remove_edge(edge_key(ET.MASKED, user_vid(user_id), node_vid(node_id)))


class ValidStore:
    """Persisted valid-set snapshot. Fully derived; only the closure engine writes it."""

    def __init__(self, graph):
        self.graph = graph

    def snapshot(self, user_id: int) -> dict[int, tuple[bool, bool]]:
        """node_id -> (term_ok, term_semi)"""
        return {int_suffix(e.target_id): (bool(e.get("term_ok")), bool(e.get("term_semi")))
                for e in self.graph.get_outgoing(user_vid(user_id), ET.VALID)}

    def replace(self, uow, user_id: int, rows: dict[int, tuple[bool, bool]]) -> None:
        """Swap the whole snapshot in one step."""
        uow.replace_outgoing(user_vid(user_id), ET.VALID, {
            node_vid(node_id): {"term_ok": ok, "term_semi": semi}
            for node_id, (ok, semi) in rows.items()
        })
