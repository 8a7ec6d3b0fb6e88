"""Topological scheduling of workflow nodes.

Produces the deterministic order in which the run controller executes a
graph. Every node with no incoming edge seeds the queue, not only triggers.
"""

from __future__ import annotations

import logging
from collections import deque

import networkx as nx

from flowrun.core.errors import CyclicGraphError
from flowrun.core.graph_schema import Edge, Node

logger = logging.getLogger(__name__)


def topological_order(
    nodes: list[Node],
    edges: list[Edge],
    *,
    strict: bool = False,
) -> list[str]:
    """Order node IDs so that every edge's source precedes its target.

    Kahn's algorithm with a FIFO queue. Ties are broken by node insertion
    order, so identical input always yields the same order. Edges that
    reference unknown nodes are ignored.

    If a residual cycle leaves nodes unorderable, a warning is logged and the
    orderable prefix is returned. With strict=True a CyclicGraphError is
    raised instead.
    """
    # dict keeps insertion order and collapses duplicate IDs
    node_ids = list(dict.fromkeys(n.id for n in nodes))
    known = set(node_ids)

    in_degree: dict[str, int] = {node_id: 0 for node_id in node_ids}
    successors: dict[str, list[str]] = {node_id: [] for node_id in node_ids}
    for edge in edges:
        if edge.source not in known or edge.target not in known:
            continue
        successors[edge.source].append(edge.target)
        in_degree[edge.target] += 1

    queue = deque(node_id for node_id in node_ids if in_degree[node_id] == 0)
    order: list[str] = []

    while queue:
        node_id = queue.popleft()
        order.append(node_id)
        for successor in successors[node_id]:
            in_degree[successor] -= 1
            if in_degree[successor] == 0:
                queue.append(successor)

    if len(order) < len(in_degree):
        stuck = residual_nodes(nodes, order)
        if strict:
            raise CyclicGraphError(
                f"Cycle detected involving nodes: {', '.join(stuck)}", cycle_members=stuck
            )
        logger.warning(
            f"Graph contains a cycle; {len(stuck)} node(s) cannot be scheduled: "
            f"{', '.join(stuck)}"
        )

    return order


def residual_nodes(nodes: list[Node], order: list[str]) -> list[str]:
    """Node IDs missing from an order, in insertion order."""
    scheduled = set(order)
    seen: set[str] = set()
    missing = []
    for node in nodes:
        if node.id not in scheduled and node.id not in seen:
            missing.append(node.id)
            seen.add(node.id)
    return missing


def execution_levels(nodes: list[Node], edges: list[Edge]) -> list[list[str]]:
    """Group nodes into topological generations.

    Nodes within a level have no dependencies on each other. Raises
    CyclicGraphError if the graph is not a DAG.
    """
    G = nx.DiGraph()
    G.add_nodes_from(n.id for n in nodes)
    known = set(G.nodes)
    G.add_edges_from(
        (e.source, e.target) for e in edges if e.source in known and e.target in known
    )
    position = {n.id: i for i, n in enumerate(nodes)}
    try:
        return [
            sorted(level, key=lambda node_id: position[node_id])
            for level in nx.topological_generations(G)
        ]
    except nx.NetworkXUnfeasible as e:
        raise CyclicGraphError(f"Graph is not acyclic: {e}") from e
