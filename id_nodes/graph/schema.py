"""
id_nodes Graph Schema

Vertex and edge type constants, plus the id conventions that map the
identity service's relations onto the property graph:

  nodes, node_implies          PrivilegeNode vertices, IMPLIES / IMPLIED_BY edges
  terms, term_revisions        Term vertices (contents list on the vertex)
  users_nodes                  GRANTED   user -> node
  users_term_status            ACCEPTED  user -> term
  users_masks                  MASKED    user -> node
  users_valids                 VALID     user -> node
  reserved_usernames, hosts    ReservedUsername / Host vertices
"""

import json
import time
from typing import Any, Optional


# ============================================================
# Vertex Type Constants
# ============================================================

class VT:
    """Vertex type constants."""
    PRIVILEGE_NODE = "PrivilegeNode"
    TERM = "Term"
    USER = "User"
    CLASS = "Class"
    RESERVED_USERNAME = "ReservedUsername"
    HOST = "Host"
    AUDIT_ENTRY = "AuditEntry"

    ALL = (PRIVILEGE_NODE, TERM, USER, CLASS, RESERVED_USERNAME, HOST, AUDIT_ENTRY)


class ET:
    """Edge type constants."""
    IMPLIES = "IMPLIES"                 # node -> implied node
    IMPLIED_BY = "IMPLIED_BY"           # node -> one of its conjunctive prerequisites
    REQUIRES_TERM = "REQUIRES_TERM"     # node -> term
    CONFLICTS_WITH = "CONFLICTS_WITH"   # node -> node, read as unordered
    GRANTED = "GRANTED"                 # user -> node
    ACCEPTED = "ACCEPTED"               # user -> term
    MASKED = "MASKED"                   # user -> node
    VALID = "VALID"                     # user -> node
    ENROLLED = "ENROLLED"               # user -> class
    CLASS_IMPLIES = "CLASS_IMPLIES"     # class -> node


# ============================================================
# Id conventions
# ============================================================

def node_vid(node_id: int) -> str:
    return f"node:{node_id}"


def term_vid(term_id: int) -> str:
    return f"term:{term_id}"


def user_vid(user_id: int) -> str:
    return f"user:{user_id}"


def class_vid(class_id: int) -> str:
    return f"class:{class_id}"


def reserved_vid(name: str) -> str:
    return f"reserved:{name}"


def host_vid(hostname: str) -> str:
    return f"host:{hostname}"


def audit_vid(index: int) -> str:
    return f"audit:{index:012d}"


def int_suffix(vertex_id: str) -> int:
    """'node:17' -> 17"""
    return int(vertex_id.split(":", 1)[1])


def now_ms() -> int:
    return int(time.time() * 1000)


# ============================================================
# Structured properties
# ============================================================
# FalkorDB stores scalars and homogeneous lists only, so maps
# (translations, field designators) are kept as JSON strings.

def encode_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, sort_keys=True, ensure_ascii=False)


def decode_json(raw: Optional[str], default: Any = None) -> Any:
    if raw is None or raw == "":
        return default
    return json.loads(raw)
