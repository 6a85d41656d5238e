"""Graph build and read operations."""

from safetykg.graph.builder import GraphBuilder, apply_modifications, resolve_node_keys

__all__ = ["GraphBuilder", "apply_modifications", "resolve_node_keys"]
