"""
id_nodes Closure Engine

Computes, for one user, the derived node sets from the approved nodes,
the node graph, term acceptance and masks:

  associated          least set containing the approved nodes and closed under
                        (a) X in S, X implies Y             => Y in S
                        (b) every node of Y.implied_by in S  => Y in S
  semi_acknowledged   the same closure, admitting only nodes whose required
                      terms are none explicitly rejected
  acknowledged        the same closure, admitting only nodes whose required
                      terms are all accepted at the current revision
  valid               associated - masked

Each set is a least fixed point reached by iterate-to-quiescence over the
arena: scan every node, add those that qualify, repeat until a full pass
adds nothing. Passes only add, and the arena is finite, so this
terminates on any graph including cycles. The result does not depend on
the scan order.

acknowledged <= semi_acknowledged <= associated always holds, because the
admission conditions are nested and the closure rules are shared.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional, Sequence

from id_nodes.graph.schema import now_ms
from id_nodes.nodes.catalog import NodeGraph, NodeDef
from id_nodes.nodes.terms import TermStatus, gate_passes

logger = logging.getLogger("id_nodes.closure")


@dataclass(frozen=True)
class ClosureResult:
    user_id: int
    approved: frozenset
    associated: frozenset
    semi_acknowledged: frozenset
    acknowledged: frozenset
    masked: frozenset
    valid: frozenset
    passes: int = 0

    def flags(self) -> dict[int, tuple[bool, bool]]:
        """Valid-set rows: node_id -> (term_ok, term_semi)"""
        return {nid: (nid in self.acknowledged, nid in self.semi_acknowledged)
                for nid in sorted(self.valid)}

    def as_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "approved": sorted(self.approved),
            "associated": sorted(self.associated),
            "semi_acknowledged": sorted(self.semi_acknowledged),
            "acknowledged": sorted(self.acknowledged),
            "masked": sorted(self.masked),
            "valid": sorted(self.valid),
        }


def least_fixed_point(graph: NodeGraph, seeds: Iterable[int],
                      admits: Callable[[NodeDef], bool],
                      order: Optional[Sequence[int]] = None) -> tuple[frozenset, int]:
    """Smallest admitted set containing the admitted seeds, closed under implication.

    Returns (members, passes). Seeds unknown to the graph are ignored.
    """
    seeds = set(seeds)
    order = list(order) if order is not None else graph.node_ids()
    members: set[int] = set()
    passes = 0
    while True:
        passes += 1
        added = False
        for nid in order:
            if nid in members:
                continue
            node = graph.get_node(nid)
            if node is None or not admits(node):
                continue
            if (nid in seeds
                    or any(src in members for src in node.implied_from)
                    or (node.implied_by and all(p in members for p in node.implied_by))):
                members.add(nid)
                added = True
        if not added:
            return frozenset(members), passes


def compute_closure(graph: NodeGraph, user_id: int, approved: Iterable[int],
                    statuses: dict[int, TermStatus], masked: Iterable[int] = (),
                    order: Optional[Sequence[int]] = None) -> ClosureResult:
    """Pure closure computation over in-memory inputs."""
    approved = frozenset(n for n in approved if n in graph)
    associated, passes = least_fixed_point(graph, approved, lambda n: True, order)
    semi, _ = least_fixed_point(
        graph, approved, lambda n: gate_passes(statuses, n.required_terms, "not_no"), order)
    acknowledged, _ = least_fixed_point(
        graph, approved, lambda n: gate_passes(statuses, n.required_terms, "ok"), order)
    masked = frozenset(masked)
    return ClosureResult(
        user_id=user_id,
        approved=approved,
        associated=associated,
        semi_acknowledged=semi,
        acknowledged=acknowledged,
        masked=masked,
        valid=associated - masked,
        passes=passes,
    )


@dataclass
class ValidChange:
    """Difference between the stored snapshot and a fresh closure."""
    added: set[int] = field(default_factory=set)
    removed: set[int] = field(default_factory=set)
    reflagged: set[int] = field(default_factory=set)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed or self.reflagged)


class ClosureEngine:
    """Reads a user's inputs from the stores, computes, and persists the snapshot."""

    def __init__(self, node_graph: NodeGraph, ledger, terms, masks, valids, users):
        self.ledger = ledger
        self.terms = terms
        self.masks = masks
        self.valids = valids
        self.users = users
        self.replace_graph(node_graph)

    def replace_graph(self, node_graph: NodeGraph) -> None:
        """Install a new arena; drops everything cached for the old one."""
        self.node_graph = node_graph
        self.version = node_graph.version
        self._order = node_graph.node_ids()

    @property
    def scan_order(self) -> list[int]:
        return self._order

    def approved_nodes(self, user_id: int, now: Optional[int] = None) -> set[int]:
        """Granted (accepted, unexpired) plus enrollment-approved nodes."""
        approved = self.ledger.approved_nodes(user_id, now)
        approved |= self.users.enrollment_nodes(user_id)
        unknown = {n for n in approved if n not in self.node_graph}
        if unknown:
            logger.warning(f"User {user_id} holds unknown nodes {sorted(unknown)}; ignored")
        return approved - unknown

    def compute(self, user_id: int, now: Optional[int] = None,
                order: Optional[Sequence[int]] = None) -> ClosureResult:
        now = now_ms() if now is None else now
        return compute_closure(
            self.node_graph, user_id,
            approved=self.approved_nodes(user_id, now),
            statuses=self.terms.statuses(user_id),
            masked=self.masks.masked_nodes(user_id),
            order=self.scan_order if order is None else order,
        )

    def refresh(self, uow, user_id: int, now: Optional[int] = None) -> tuple[ClosureResult, ValidChange]:
        """Recompute and replace the user's valid-set snapshot through `uow`.

        The caller holds the user's lock.
        """
        result = self.compute(user_id, now)
        before = self.valids.snapshot(user_id)
        after = result.flags()
        change = ValidChange(
            added=set(after) - set(before),
            removed=set(before) - set(after),
            reflagged={n for n in set(after) & set(before) if after[n] != before[n]},
        )
        if change.changed:
            self.valids.replace(uow, user_id, after)
        logger.debug(f"Closure for user {user_id}: {len(result.valid)} valid "
                     f"({len(result.acknowledged)} acknowledged) in {result.passes} passes")
        return result, change
