"""
id_nodes Audit Log

Append-only, hash-chained record of every committed workflow mutation
(grant, approve, request, revoke, mask, unmask, term decision, expiry sweep).

Entries are AuditEntry vertices written through the same unit of work
as the mutation they describe, so a rolled-back operation leaves no
entry behind. Nothing is deleted. Nothing is modified.
"""

import hashlib
import threading
from dataclasses import dataclass, field
from typing import Optional

from id_nodes.graph.schema import VT, audit_vid, decode_json, encode_json, now_ms


@dataclass
class AuditEntry:
    index: int
    action: str
    user_id: int
    subject: dict = field(default_factory=dict)   # node_id / term_id / revoked ...
    actor: str = ""
    timestamp: int = 0
    prev_hash: str = ""
    entry_hash: str = ""

    def compute_hash(self) -> str:
        h = hashlib.sha256()
        h.update(str(self.index).encode())
        h.update(self.action.encode())
        h.update(str(self.user_id).encode())
        h.update(encode_json(self.subject).encode())
        h.update(self.actor.encode())
        h.update(str(self.timestamp).encode())
        h.update(self.prev_hash.encode())
        return h.hexdigest()


def _entry_from_vertex(vertex) -> AuditEntry:
    return AuditEntry(
        index=int(vertex.get("index")),
        action=vertex.get("action", ""),
        user_id=int(vertex.get("user_id")),
        subject=decode_json(vertex.get("subject"), {}),
        actor=vertex.get("actor", "") or "",
        timestamp=int(vertex.get("timestamp", 0)),
        prev_hash=vertex.get("prev_hash", "") or "",
        entry_hash=vertex.get("entry_hash", ""),
    )


class AuditLog:
    """The service's permanent, append-only mutation history."""

    def __init__(self, graph):
        self.graph = graph
        self._lock = threading.Lock()

    def entries(self) -> list[AuditEntry]:
        entries = [_entry_from_vertex(v) for v in self.graph.get_vertices_by_type(VT.AUDIT_ENTRY)]
        return sorted(entries, key=lambda e: e.index)

    @property
    def length(self) -> int:
        return len(self.entries())

    @property
    def head(self) -> Optional[AuditEntry]:
        entries = self.entries()
        return entries[-1] if entries else None

    def append(self, uow, action: str, user_id: int, subject: Optional[dict] = None,
               actor: str = "") -> AuditEntry:
        """Append through `uow`; the entry disappears if the unit of work rolls back."""
        with self._lock:
            head = self.head
            entry = AuditEntry(
                index=head.index + 1 if head else 0,
                action=action,
                user_id=user_id,
                subject=subject or {},
                actor=actor,
                timestamp=now_ms(),
                prev_hash=head.entry_hash if head else "",
            )
            entry.entry_hash = entry.compute_hash()
            uow.add_vertex(audit_vid(entry.index), VT.AUDIT_ENTRY, {
                "index": entry.index,
                "action": entry.action,
                "user_id": entry.user_id,
                "subject": encode_json(entry.subject),
                "actor": entry.actor,
                "timestamp": entry.timestamp,
                "prev_hash": entry.prev_hash,
                "entry_hash": entry.entry_hash,
            })
            return entry

    def verify_chain(self) -> bool:
        """True if every entry links to its predecessor and its hash recomputes."""
        entries = self.entries()
        for i, entry in enumerate(entries):
            if entry.index != i:
                return False
            expected_prev = entries[i - 1].entry_hash if i else ""
            if entry.prev_hash != expected_prev:
                return False
            if entry.entry_hash != entry.compute_hash():
                return False
        return True

    def for_user(self, user_id: int) -> list[AuditEntry]:
        return [e for e in self.entries() if e.user_id == user_id]
