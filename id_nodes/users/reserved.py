"""
Reserved user names.

A name is unavailable when it is a registered host name or an explicitly
reserved user name.
"""

import logging

from id_nodes.core.errors import PolicyError, PolicyResult
from id_nodes.graph.schema import VT, reserved_vid, host_vid, now_ms

logger = logging.getLogger("id_nodes.reserved")


class ReservedNames:

    def __init__(self, graph):
        self.graph = graph

    def is_reserved(self, name: str) -> bool:
        """Check hosts and reserved user names."""
        return (self.graph.has_vertex(host_vid(name))
                or self.graph.has_vertex(reserved_vid(name)))

    def list(self) -> list[str]:
        return sorted(v.get("name") for v in self.graph.get_vertices_by_type(VT.RESERVED_USERNAME))

    def insert(self, name: str) -> PolicyResult:
        if name == "":
            return PolicyResult.reject(PolicyError.E_EMPTY, "Reserved user name is empty")
        if self.is_reserved(name):
            return PolicyResult.reject(PolicyError.E_DUPLICATE, f"User name '{name}' is already taken")
        self.graph.add_vertex(reserved_vid(name), VT.RESERVED_USERNAME,
                              {"name": name, "reserved_at": now_ms()})
        logger.info(f"Reserved user name '{name}'")
        return PolicyResult(ok=True, value=name)

    def remove(self, name: str) -> PolicyResult:
        if name == "":
            return PolicyResult.reject(PolicyError.E_EMPTY, "Reserved user name is empty")
        if not self.graph.remove_vertex(reserved_vid(name)):
            return PolicyResult.reject(PolicyError.E_NOT_FOUND, f"User name '{name}' is not reserved")
        logger.info(f"Released user name '{name}'")
        return PolicyResult(ok=True, value=name)

    def add_host(self, hostname: str) -> PolicyResult:
        if hostname == "":
            return PolicyResult.reject(PolicyError.E_EMPTY, "Host name is empty")
        self.graph.add_vertex(host_vid(hostname), VT.HOST, {"name": hostname})
        return PolicyResult(ok=True, value=hostname)
