"""
id_nodes Grant / Revoke Workflow

Every mutation of a user's privileges goes through here:

  1. take the user's lock
  2. open one unit of work
  3. check preconditions, mutate the ledger / masks / term status
  4. rerun the closure engine and replace the valid-set snapshot
  5. append the audit entry
  6. commit; on any rejection or error, roll everything back
  7. dispatch notifications (never fails the operation)

State per (user, node):

  absent -> requested (accepted=False) -> approved (accepted=True) -> expired | revoked -> absent

absent -> approved and requested -> approved are administrator/system
actions (grant). approved -> expired happens lazily: the closure engine
treats an expired grant as absent; sweep_expired deletes stale rows.
"""

import logging
from typing import Callable, Optional

from id_nodes.core.errors import PolicyError, PolicyResult
from id_nodes.core.locks import LocalUserLocks
from id_nodes.core.log import AuditLog
from id_nodes.core.notify import LogDispatcher, Notification, dispatch_all
from id_nodes.graph.backend import transaction
from id_nodes.graph.schema import now_ms
from id_nodes.nodes.catalog import NodeGraph, load_node_graph
from id_nodes.nodes.closure import ClosureEngine, ClosureResult
from id_nodes.nodes.ledger import Grant, GrantLedger, MaskStore, ValidStore
from id_nodes.nodes.terms import TermStatus, TermTracker
from id_nodes.users.directory import UserDirectory

logger = logging.getLogger("id_nodes.workflow")


class _Rejected(Exception):
    """Unwinds the unit of work when a policy check fails mid-operation."""

    def __init__(self, result: PolicyResult):
        super().__init__(result.error_detail)
        self.result = result


def _reject(error: PolicyError, detail: str):
    raise _Rejected(PolicyResult.reject(error, detail))


class NodeWorkflow:
    """Grant, request, revoke, mask and accept-term operations for users."""

    def __init__(self, graph, node_graph: NodeGraph, locks=None,
                 dispatcher=None, audit: Optional[AuditLog] = None):
        self.graph = graph
        self.node_graph = node_graph
        self.locks = locks or LocalUserLocks()
        self.dispatcher = dispatcher or LogDispatcher()
        self.audit = audit or AuditLog(graph)
        self.ledger = GrantLedger(graph)
        self.masks = MaskStore(graph)
        self.valids = ValidStore(graph)
        self.users = UserDirectory(graph)
        self.terms = TermTracker(graph, may_accept=self._may_accept)
        self.engine = ClosureEngine(node_graph, self.ledger, self.terms,
                                    self.masks, self.valids, self.users)

    def replace_graph(self, node_graph: NodeGraph) -> None:
        """Swap in an edited catalog. Stored snapshots refresh on next mutation."""
        node_graph.ensure_valid()
        self.node_graph = node_graph
        self.engine.replace_graph(node_graph)

    def reload_graph(self) -> NodeGraph:
        """Re-read the catalog from storage as the next version and swap it in."""
        node_graph = load_node_graph(self.graph, version=self.node_graph.version + 1)
        self.replace_graph(node_graph)
        logger.info(f"Node graph reloaded: v{node_graph.version}, {len(node_graph)} nodes")
        return node_graph

    # --------------------------------------------------------
    # Operation frame
    # --------------------------------------------------------

    def _run(self, user_id: int, action: str, body: Callable, subject: dict,
             actor: str = "", refresh: bool = True, now: Optional[int] = None) -> PolicyResult:
        notifications: list[Notification] = []
        with self.locks.hold(user_id):
            try:
                with transaction(self.graph) as uow:
                    result = body(uow, notifications)
                    if refresh:
                        closure, change = self.engine.refresh(uow, user_id, now)
                        result.closure = closure
                        notifications.extend(self._valid_notifications(user_id, change))
                    if result.revoked:
                        subject = dict(subject, revoked=result.revoked)
                    self.audit.append(uow, action, user_id, subject, actor)
            except _Rejected as rejected:
                logger.info(f"{action} for user {user_id} rejected: "
                            f"{rejected.result.error.value} {rejected.result.error_detail}")
                return rejected.result
        failed = dispatch_all(self.dispatcher, notifications)
        if failed:
            logger.warning(f"{failed} notification(s) for user {user_id} were not delivered")
        return result

    def _notification(self, user_id: int, node_id: int, event: str) -> Notification:
        node = self.node_graph.get_node(node_id)
        return Notification(user_id=user_id, node_id=node_id,
                            node_name=node.name if node else str(node_id),
                            event=event, message=node.message(event) if node else None)

    def _valid_notifications(self, user_id: int, change) -> list[Notification]:
        return ([self._notification(user_id, n, "valid_added") for n in sorted(change.added)]
                + [self._notification(user_id, n, "valid_removed") for n in sorted(change.removed)])

    def _require(self, user_id: int, node_id: int):
        if not self.users.exists(user_id):
            _reject(PolicyError.E_NOT_FOUND, f"User {user_id} not found")
        node = self.node_graph.get_node(node_id)
        if node is None:
            _reject(PolicyError.E_NOT_FOUND, f"Node {node_id} not found")
        return node

    def _check_required_information(self, user_id: int, node) -> None:
        missing = self.users.missing_fields(user_id, node.required_fields)
        if missing:
            _reject(PolicyError.E_FIELDS,
                    f"Node '{node.name}' requires {', '.join(str(f) for f in missing)}")
        domains = self.users.missing_verified_email(user_id, node.required_verified_email)
        if domains:
            _reject(PolicyError.E_EMAIL,
                    f"Node '{node.name}' requires a verified email at {', '.join(domains)}")

    def _sync_locks(self, uow, user_id: int, now: Optional[int] = None) -> None:
        """Lock exactly the fields required by the user's approved grants."""
        now = now_ms() if now is None else now
        fields = []
        for grant in self.ledger.grants(user_id):
            node = self.node_graph.get_node(grant.node_id)
            if node is not None and grant.is_approved(now):
                fields.extend(node.required_fields)
        self.users.set_locks(uow, user_id, fields)

    # --------------------------------------------------------
    # Grants
    # --------------------------------------------------------

    def grant(self, user_id: int, node_id: int, expires_at: Optional[int] = None,
              granted_by: str = "") -> PolicyResult:
        """Approve a node for a user, revoking any approved node it conflicts with."""
        return self._grant(user_id, node_id, expires_at, granted_by, pending_only=False)

    def approve(self, user_id: int, node_id: int, expires_at: Optional[int] = None,
                granted_by: str = "") -> PolicyResult:
        """requested -> approved"""
        return self._grant(user_id, node_id, expires_at, granted_by, pending_only=True)

    def _grant(self, user_id: int, node_id: int, expires_at: Optional[int],
               granted_by: str, pending_only: bool) -> PolicyResult:
        now = now_ms()

        def body(uow, notifications):
            node = self._require(user_id, node_id)
            if pending_only:
                existing = self.ledger.get(user_id, node_id)
                if existing is None or existing.accepted:
                    _reject(PolicyError.E_NOT_FOUND,
                            f"No pending request of user {user_id} for node {node_id}")
            if expires_at is not None and expires_at <= now:
                _reject(PolicyError.E_TRANSITION, "Expiry time is in the past")
            self._check_required_information(user_id, node)

            revoked = []
            conflicting = self.node_graph.conflicts_of(node_id)
            enrolled = self.users.enrollment_nodes(user_id)
            for other in sorted(conflicting):
                if other in enrolled:
                    _reject(PolicyError.E_CONFLICT,
                            f"Node '{node.name}' conflicts with node {other}, "
                            f"which is approved by class enrollment")
                existing = self.ledger.get(user_id, other)
                if existing is not None and existing.is_approved(now):
                    self.ledger.delete(uow, user_id, other)
                    revoked.append(other)
                    notifications.append(self._notification(user_id, other, "revoked"))
                    logger.info(f"Revoked node {other} from user {user_id}: "
                                f"conflicts with node {node_id}")

            grant = self.ledger.put(uow, Grant(user_id=user_id, node_id=node_id, accepted=True,
                                               expires_at=expires_at, granted_at=now,
                                               granted_by=granted_by))
            self._sync_locks(uow, user_id, now)
            notifications.append(self._notification(user_id, node_id, "granted"))
            return PolicyResult(ok=True, value=grant, revoked=revoked)

        return self._run(user_id, "approve" if pending_only else "grant", body,
                         {"node_id": node_id}, actor=granted_by, now=now)

    def request_grant(self, user_id: int, node_id: int) -> PolicyResult:
        """Record a user's request. Does not change any derived set."""

        def body(uow, notifications):
            node = self._require(user_id, node_id)
            existing = self.ledger.get(user_id, node_id)
            if existing is not None and existing.is_approved(now_ms()):
                _reject(PolicyError.E_TRANSITION, f"Node '{node.name}' is already granted")
            if existing is not None and not existing.accepted:
                _reject(PolicyError.E_TRANSITION, f"Node '{node.name}' is already requested")
            self._check_required_information(user_id, node)
            grant = self.ledger.put(uow, Grant(user_id=user_id, node_id=node_id,
                                               accepted=False, granted_at=now_ms()))
            return PolicyResult(ok=True, value=grant)

        return self._run(user_id, "request", body, {"node_id": node_id},
                         actor=f"user:{user_id}", refresh=False)

    def revoke(self, user_id: int, node_id: int, revoked_by: str = "") -> PolicyResult:
        """Delete the grant record. Nodes only associated through it drop on recompute."""
        now = now_ms()

        def body(uow, notifications):
            existing = self.ledger.get(user_id, node_id)
            if existing is None:
                _reject(PolicyError.E_NOT_FOUND,
                        f"User {user_id} has no grant or request for node {node_id}")
            self.ledger.delete(uow, user_id, node_id)
            self._sync_locks(uow, user_id, now)
            # An expired grant was already lost; nothing to announce
            if existing.is_approved(now):
                notifications.append(self._notification(user_id, node_id, "revoked"))
            return PolicyResult(ok=True, value=existing, revoked=[node_id])

        return self._run(user_id, "revoke", body, {"node_id": node_id}, actor=revoked_by, now=now)

    # --------------------------------------------------------
    # Masks
    # --------------------------------------------------------

    def mask(self, user_id: int, node_id: int, masked_by: str = "") -> PolicyResult:

        def body(uow, notifications):
            node = self._require(user_id, node_id)
            self.masks.mask(uow, user_id, node_id, masked_by)
            return PolicyResult(ok=True, value=node)

        return self._run(user_id, "mask", body, {"node_id": node_id}, actor=masked_by)

    def unmask(self, user_id: int, node_id: int, unmasked_by: str = "") -> PolicyResult:

        def body(uow, notifications):
            node = self._require(user_id, node_id)
            if not self.masks.unmask(uow, user_id, node_id):
                _reject(PolicyError.E_NOT_FOUND, f"Node '{node.name}' is not masked for user {user_id}")
            return PolicyResult(ok=True, value=node)

        return self._run(user_id, "unmask", body, {"node_id": node_id}, actor=unmasked_by)

    # --------------------------------------------------------
    # Terms
    # --------------------------------------------------------

    def _may_accept(self, user_id: int, term_id: int) -> bool:
        """The term is required by a node the user holds or has requested."""
        held = set(self.engine.compute(user_id).associated)
        held |= {g.node_id for g in self.ledger.grants(user_id) if not g.accepted}
        return bool(held & self.node_graph.nodes_requiring_term(term_id))

    def set_term_status(self, user_id: int, term_id: int, revision: int,
                        status: TermStatus) -> PolicyResult:

        def body(uow, notifications):
            result = self.terms.set_status(uow, user_id, term_id, revision, status)
            if not result.ok:
                raise _Rejected(result)
            return result

        return self._run(user_id, "term", body,
                         {"term_id": term_id, "revision": revision, "status": status.value},
                         actor=f"user:{user_id}")

    def accept_term(self, user_id: int, term_id: int) -> PolicyResult:
        """Accept the current revision of a term."""
        term = self.terms.get_term(term_id)
        if term is None:
            return PolicyResult.reject(PolicyError.E_NOT_FOUND, f"Term {term_id} not found")
        return self.set_term_status(user_id, term_id, term.current_revision, TermStatus.OK)

    # --------------------------------------------------------
    # Enrollment and maintenance
    # --------------------------------------------------------

    def add_class(self, class_id: int, name: str, record: Optional[dict] = None,
                  implies=()) -> PolicyResult:
        unknown = [n for n in implies if n not in self.node_graph]
        if unknown:
            return PolicyResult.reject(PolicyError.E_NOT_FOUND, f"Unknown nodes {unknown}")
        with transaction(self.graph) as uow:
            self.users.add_class(uow, class_id, name, record, implies)
        return PolicyResult(ok=True, value=class_id)

    def enroll(self, user_id: int, class_id: int, record: Optional[dict] = None) -> PolicyResult:

        def body(uow, notifications):
            result = self.users.enroll(uow, user_id, class_id, record)
            if not result.ok:
                raise _Rejected(result)
            return result

        return self._run(user_id, "enroll", body, {"class_id": class_id})

    def unenroll(self, user_id: int, class_id: int) -> PolicyResult:

        def body(uow, notifications):
            result = self.users.unenroll(uow, user_id, class_id)
            if not result.ok:
                raise _Rejected(result)
            self._sync_locks(uow, user_id)
            return result

        return self._run(user_id, "unenroll", body, {"class_id": class_id})

    def refresh(self, user_id: int) -> ClosureResult:
        """Recompute and store the snapshot without any other mutation."""
        with self.locks.hold(user_id):
            with transaction(self.graph) as uow:
                closure, change = self.engine.refresh(uow, user_id)
        dispatch_all(self.dispatcher, self._valid_notifications(user_id, change))
        return closure

    def sweep_expired(self, now: Optional[int] = None) -> dict[int, list[int]]:
        """Delete expired grant rows and refresh each affected user."""
        now = now_ms() if now is None else now
        by_user: dict[int, list[int]] = {}
        for grant in self.ledger.expired(now):
            by_user.setdefault(grant.user_id, []).append(grant.node_id)

        swept = {}
        for user_id, node_ids in sorted(by_user.items()):

            def body(uow, notifications, user_id=user_id, node_ids=node_ids):
                removed = []
                for node_id in sorted(node_ids):
                    # Re-read under the lock; the grant may have been renewed.
                    current = self.ledger.get(user_id, node_id)
                    if current is not None and current.is_expired(now):
                        self.ledger.delete(uow, user_id, node_id)
                        removed.append(node_id)
                        notifications.append(self._notification(user_id, node_id, "revoked"))
                self._sync_locks(uow, user_id, now)
                return PolicyResult(ok=True, revoked=removed)

            result = self._run(user_id, "expire", body, {}, actor="system", now=now)
            if result.revoked:
                swept[user_id] = result.revoked
        if swept:
            logger.info(f"Expired grants swept for {len(swept)} user(s)")
        return swept

    # --------------------------------------------------------
    # Reads
    # --------------------------------------------------------

    def closure(self, user_id: int, now: Optional[int] = None) -> ClosureResult:
        return self.engine.compute(user_id, now)

    def valid_set(self, user_id: int) -> dict[int, tuple[bool, bool]]:
        return self.valids.snapshot(user_id)

    def create_user(self, user_id: int, record: Optional[dict] = None,
                    verified_emails=()) -> PolicyResult:
        with transaction(self.graph) as uow:
            return self.users.create_user(uow, user_id, record, verified_emails)

    def update_field(self, user_id: int, column: str, value) -> PolicyResult:
        with self.locks.hold(user_id):
            with transaction(self.graph) as uow:
                return self.users.update_field(uow, user_id, column, value)

    def add_verified_email(self, user_id: int, address: str) -> PolicyResult:
        with self.locks.hold(user_id):
            with transaction(self.graph) as uow:
                return self.users.add_verified_email(uow, user_id, address)
