"""
id_nodes User Directory

The user record, class records and the user/class join records, as the
policy engine sees them: field values to check required information,
per-column locks set by granted nodes, and the nodes a user's
enrollments approve.

Lock designators are "<table>.<column>", e.g. "users.student_id" or
"users_classes.grade".
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from id_nodes.core.errors import PolicyError, PolicyResult
from id_nodes.graph.backend import edge_key
from id_nodes.graph.schema import (
    VT, ET, user_vid, class_vid, node_vid, int_suffix, encode_json, decode_json,
)

logger = logging.getLogger("id_nodes.users")


@dataclass(frozen=True)
class UserRecord:
    user_id: int
    record: dict = field(default_factory=dict)
    verified_emails: tuple[str, ...] = ()
    locked_fields: tuple[str, ...] = ()


def _filled(value: Any) -> bool:
    return value is not None and value != ""


def lock_designators(fields: Iterable) -> set[str]:
    locks = set()
    for spec in fields:
        if spec.users:
            locks.add(f"users.{spec.users}")
        if spec.classes:
            locks.add(f"classes.{spec.classes}")
        if spec.users_classes:
            locks.add(f"users_classes.{spec.users_classes}")
    return locks


class UserDirectory:

    def __init__(self, graph):
        self.graph = graph

    # --------------------------------------------------------
    # Users
    # --------------------------------------------------------

    def create_user(self, uow, user_id: int, record: Optional[dict] = None,
                    verified_emails: Iterable[str] = ()) -> PolicyResult:
        if self.graph.has_vertex(user_vid(user_id)):
            return PolicyResult.reject(PolicyError.E_DUPLICATE, f"User {user_id} already exists")
        uow.add_vertex(user_vid(user_id), VT.USER, {
            "user_id": user_id,
            "record": encode_json(record or {}),
            "verified_emails": list(verified_emails),
            "locked_fields": [],
        })
        return PolicyResult(ok=True, value=self.get_user(user_id))

    def get_user(self, user_id: int) -> Optional[UserRecord]:
        vertex = self.graph.get_vertex(user_vid(user_id))
        if vertex is None or vertex.vertex_type != VT.USER:
            return None
        return UserRecord(
            user_id=user_id,
            record=decode_json(vertex.get("record"), {}),
            verified_emails=tuple(vertex.get("verified_emails") or ()),
            locked_fields=tuple(vertex.get("locked_fields") or ()),
        )

    def exists(self, user_id: int) -> bool:
        return self.get_user(user_id) is not None

    def update_field(self, uow, user_id: int, column: str, value: Any) -> PolicyResult:
        user = self.get_user(user_id)
        if user is None:
            return PolicyResult.reject(PolicyError.E_NOT_FOUND, f"User {user_id} not found")
        if f"users.{column}" in user.locked_fields:
            return PolicyResult.reject(PolicyError.E_LOCKED,
                                       f"Field '{column}' is locked by a granted node")
        record = dict(user.record)
        record[column] = value
        uow.update_vertex(user_vid(user_id), record=encode_json(record))
        return PolicyResult(ok=True, value=record)

    def add_verified_email(self, uow, user_id: int, address: str) -> PolicyResult:
        user = self.get_user(user_id)
        if user is None:
            return PolicyResult.reject(PolicyError.E_NOT_FOUND, f"User {user_id} not found")
        emails = sorted(set(user.verified_emails) | {address.lower()})
        uow.update_vertex(user_vid(user_id), verified_emails=emails)
        return PolicyResult(ok=True, value=emails)

    def set_locks(self, uow, user_id: int, fields: Iterable) -> set[str]:
        """Lock exactly the columns designated by `fields`."""
        locks = lock_designators(fields)
        uow.update_vertex(user_vid(user_id), locked_fields=sorted(locks))
        return locks

    # --------------------------------------------------------
    # Required information
    # --------------------------------------------------------

    def field_supplied(self, user_id: int, spec) -> bool:
        """Any of the designated columns holds a value for this user."""
        user = self.get_user(user_id)
        if user is None:
            return False
        if spec.users and _filled(user.record.get(spec.users)):
            return True
        if spec.users_classes or spec.classes:
            for edge in self.graph.get_outgoing(user_vid(user_id), ET.ENROLLED):
                joined = decode_json(edge.get("record"), {})
                if spec.users_classes and _filled(joined.get(spec.users_classes)):
                    return True
                if spec.classes:
                    klass = self.graph.get_vertex(edge.target_id)
                    if klass and _filled(decode_json(klass.get("record"), {}).get(spec.classes)):
                        return True
        return False

    def missing_fields(self, user_id: int, specs: Iterable) -> list:
        return [spec for spec in specs if not self.field_supplied(user_id, spec)]

    def missing_verified_email(self, user_id: int, domains: Iterable[str]) -> list[str]:
        user = self.get_user(user_id)
        emails = user.verified_emails if user else ()
        owned = {e.rsplit("@", 1)[-1].lower() for e in emails if "@" in e}
        return [d for d in domains if d.lower() not in owned]

    # --------------------------------------------------------
    # Classes and enrollment
    # --------------------------------------------------------

    def add_class(self, uow, class_id: int, name: str, record: Optional[dict] = None,
                  implies: Iterable[int] = ()) -> None:
        uow.add_vertex(class_vid(class_id), VT.CLASS, {
            "class_id": class_id, "name": name, "record": encode_json(record or {}),
        })
        uow.replace_outgoing(class_vid(class_id), ET.CLASS_IMPLIES,
                             {node_vid(n): {} for n in implies})

    def _locked_join_columns(self, user_id: int) -> set[str]:
        user = self.get_user(user_id)
        prefix = "users_classes."
        return {f[len(prefix):] for f in (user.locked_fields if user else ())
                if f.startswith(prefix)}

    def enroll(self, uow, user_id: int, class_id: int,
               record: Optional[dict] = None) -> PolicyResult:
        if not self.exists(user_id):
            return PolicyResult.reject(PolicyError.E_NOT_FOUND, f"User {user_id} not found")
        if not self.graph.has_vertex(class_vid(class_id)):
            return PolicyResult.reject(PolicyError.E_NOT_FOUND, f"Class {class_id} not found")
        record = record or {}
        existing = self.graph.get_edge(edge_key(ET.ENROLLED, user_vid(user_id), class_vid(class_id)))
        if existing is not None:
            current = decode_json(existing.get("record"), {})
            changed = sorted(col for col in self._locked_join_columns(user_id)
                             if _filled(current.get(col)) and record.get(col) != current.get(col))
            if changed:
                return PolicyResult.reject(PolicyError.E_LOCKED,
                                           f"Enrollment fields {', '.join(changed)} are locked "
                                           f"by a granted node")
        uow.add_edge(user_vid(user_id), class_vid(class_id), ET.ENROLLED,
                     {"record": encode_json(record)})
        return PolicyResult(ok=True)

    def unenroll(self, uow, user_id: int, class_id: int) -> PolicyResult:
        key = edge_key(ET.ENROLLED, user_vid(user_id), class_vid(class_id))
        existing = self.graph.get_edge(key)
        if existing is None:
            return PolicyResult.reject(PolicyError.E_NOT_FOUND,
                                       f"User {user_id} is not enrolled in class {class_id}")
        current = decode_json(existing.get("record"), {})
        held = sorted(col for col in self._locked_join_columns(user_id) if _filled(current.get(col)))
        if held:
            return PolicyResult.reject(PolicyError.E_LOCKED,
                                       f"Enrollment fields {', '.join(held)} are locked "
                                       f"by a granted node")
        uow.remove_edge(key)
        return PolicyResult(ok=True)

    def enrollment_nodes(self, user_id: int) -> set[int]:
        """Nodes approved because the user is enrolled in a class implying them."""
        nodes = set()
        for edge in self.graph.get_outgoing(user_vid(user_id), ET.ENROLLED):
            for implied in self.graph.get_outgoing(edge.target_id, ET.CLASS_IMPLIES):
                nodes.add(int_suffix(implied.target_id))
        return nodes
