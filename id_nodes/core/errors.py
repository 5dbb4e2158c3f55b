"""
id_nodes Policy Outcomes

Policy decisions are deterministic: every rejection carries a code.
Rejections are returned to the caller as a PolicyResult, never raised.

Two failure kinds are not policy outcomes and are raised instead:
  - StructuralGraphError: the node catalog is malformed (fatal at startup)
  - StorageUnavailable: the data-access layer gave up after retries
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class PolicyError(Enum):
    """Deterministic error codes for policy rejections."""
    E_NOT_FOUND = "E_NOT_FOUND"     # node, term, grant, user or name absent
    E_CONFLICT = "E_CONFLICT"       # conflicting approval could not be revoked
    E_FIELDS = "E_FIELDS"           # required fields not supplied
    E_EMAIL = "E_EMAIL"             # required verified email domain missing
    E_STALE = "E_STALE"             # acceptance against an outdated term revision
    E_TRANSITION = "E_TRANSITION"   # state change not allowed from current state
    E_LOCKED = "E_LOCKED"           # field locked by a granted node
    E_DUPLICATE = "E_DUPLICATE"     # name already reserved
    E_EMPTY = "E_EMPTY"             # empty name


@dataclass
class PolicyResult:
    """Result of a policy operation."""
    ok: bool
    error: Optional[PolicyError] = None
    error_detail: str = ""
    value: Any = None
    revoked: list[int] = field(default_factory=list)
    closure: Any = None

    @classmethod
    def reject(cls, error: PolicyError, detail: str = "") -> "PolicyResult":
        return cls(ok=False, error=error, error_detail=detail)


class StructuralGraphError(ValueError):
    """The node graph violates a structural invariant."""

    def __init__(self, violations):
        self.violations = list(violations)
        lines = "; ".join(str(v) for v in self.violations)
        super().__init__(f"Node graph is malformed: {lines}")


class StorageUnavailable(RuntimeError):
    """Transient storage failure. Safe to retry the whole operation."""
