"""Connection validation and cycle detection.

Both run on every interactive connection attempt, before an edge is
committed to the graph. They never raise for structural problems: a rejected
connection comes back as a ValidationResult carrying the reason.
"""

from __future__ import annotations

import logging
from collections import defaultdict

from flowrun.core.graph_schema import (
    Connection,
    Edge,
    Node,
    ValidationResult,
    create_edge_with_label,
    find_cycle,
)
from flowrun.core.node_registry import valid_source_handles, valid_target_handles

logger = logging.getLogger(__name__)

__all__ = [
    "check_connection",
    "create_edge_with_label",
    "find_cycle",
    "validate_connection",
    "would_create_cycle",
]


def _as_connection(connection: Connection | Edge | dict) -> Connection:
    if isinstance(connection, Connection):
        return connection
    if isinstance(connection, Edge):
        return Connection(
            source=connection.source,
            target=connection.target,
            source_handle=connection.source_handle,
            target_handle=connection.target_handle,
        )
    return Connection.model_validate(connection)


def validate_connection(
    connection: Connection | dict,
    nodes: list[Node],
    edges: list[Edge],
) -> ValidationResult:
    """Decide whether a proposed edge is structurally legal.

    Checks run in a fixed order and the first failure wins.
    """
    conn = _as_connection(connection)

    if not conn.source or not conn.target:
        return ValidationResult(valid=False, reason="Connection must have source and target")

    if conn.source == conn.target:
        return ValidationResult(valid=False, reason="Cannot connect a node to itself")

    source_node = next((n for n in nodes if n.id == conn.source), None)
    target_node = next((n for n in nodes if n.id == conn.target), None)
    if source_node is None or target_node is None:
        return ValidationResult(valid=False, reason="Source or target node not found")

    if target_node.definition.inputs == 0:
        return ValidationResult(
            valid=False, reason="Trigger nodes cannot have incoming connections"
        )

    if not source_node.definition.outputs:
        return ValidationResult(valid=False, reason="Source node has no outputs")

    for edge in edges:
        if (
            edge.source == conn.source
            and edge.target == conn.target
            and edge.source_handle == conn.source_handle
            and edge.target_handle == conn.target_handle
        ):
            return ValidationResult(valid=False, reason="Connection already exists")

    if any(e.target == conn.target and e.target_handle == conn.target_handle for e in edges):
        return ValidationResult(valid=False, reason="Target already has an incoming connection")

    if conn.source_handle and conn.source_handle not in valid_source_handles(source_node.type):
        return ValidationResult(valid=False, reason="Invalid source handle")

    if conn.target_handle and conn.target_handle not in valid_target_handles(target_node.type):
        return ValidationResult(valid=False, reason="Invalid target handle")

    return ValidationResult(valid=True)


def would_create_cycle(connection: Connection | dict, edges: list[Edge]) -> bool:
    """Return True if adding the connection would close a directed cycle.

    Builds the adjacency list with the proposed edge added and walks it
    depth-first from the proposed target; a cycle forms iff the proposed
    source is reachable. O(V+E).
    """
    conn = _as_connection(connection)
    if not conn.source or not conn.target:
        return False
    if conn.source == conn.target:
        return True

    adjacency: dict[str, list[str]] = defaultdict(list)
    for edge in edges:
        adjacency[edge.source].append(edge.target)
    adjacency[conn.source].append(conn.target)

    visited: set[str] = set()
    stack = [conn.target]
    while stack:
        current = stack.pop()
        if current == conn.source:
            return True
        if current in visited:
            continue
        visited.add(current)
        stack.extend(n for n in adjacency[current] if n not in visited)

    return False


def check_connection(
    connection: Connection | dict,
    nodes: list[Node],
    edges: list[Edge],
) -> ValidationResult:
    """Structural validation followed by the cycle check."""
    result = validate_connection(connection, nodes, edges)
    if not result.valid:
        return result
    if would_create_cycle(connection, edges):
        return ValidationResult(valid=False, reason="Connection would create a cycle")
    return result

