"""Tests for connection validation and cycle detection."""

import dataclasses

import pytest
from conftest import make_edge, make_graph, make_node

from flowrun.core import node_registry
from flowrun.core.graph_schema import Connection, Edge
from flowrun.core.node_registry import NodeType
from flowrun.core.validation import (
    check_connection,
    find_cycle,
    validate_connection,
    would_create_cycle,
)


@pytest.fixture
def graph():
    """trigger -> a, with b and c unconnected; check is a condition node."""
    return make_graph(
        [
            make_node("manual-trigger", "trigger"),
            make_node("transform", "a"),
            make_node("transform", "b"),
            make_node("transform", "c"),
            make_node("condition", "check"),
        ],
        [make_edge("trigger", "a")],
    )


def _check(graph, **conn):
    return validate_connection(conn, graph.nodes, graph.edges)


class TestValidateConnection:
    """Tests for the ordered structural rules."""

    def test_valid_connection(self, graph):
        result = _check(graph, source="a", target="b")
        assert result.valid
        assert result.reason is None

    @pytest.mark.parametrize(
        "conn",
        [
            {"source": None, "target": "a"},
            {"source": "a", "target": None},
            {"source": "", "target": ""},
        ],
    )
    def test_missing_endpoint(self, graph, conn):
        result = validate_connection(conn, graph.nodes, graph.edges)
        assert not result.valid
        assert result.reason == "Connection must have source and target"

    def test_self_connection(self, graph):
        assert _check(graph, source="a", target="a").reason == "Cannot connect a node to itself"

    def test_unknown_node(self, graph):
        assert _check(graph, source="a", target="ghost").reason == "Source or target node not found"
        assert _check(graph, source="ghost", target="a").reason == "Source or target node not found"

    def test_trigger_target(self, graph):
        result = _check(graph, source="a", target="trigger")
        assert result.reason == "Trigger nodes cannot have incoming connections"

    def test_source_without_outputs(self, graph, monkeypatch):
        """A node kind declaring no outputs cannot be a source."""
        patched = dict(node_registry.NODE_DEFINITIONS)
        patched[NodeType.TRANSFORM] = dataclasses.replace(
            patched[NodeType.TRANSFORM], outputs=()
        )
        monkeypatch.setattr(node_registry, "NODE_DEFINITIONS", patched)

        assert _check(graph, source="b", target="c").reason == "Source node has no outputs"

    def test_duplicate_connection(self, graph):
        result = _check(graph, source="trigger", target="a")
        assert result.reason == "Connection already exists"

    def test_target_slot_taken(self, graph):
        """A second edge into an occupied input is refused."""
        result = _check(graph, source="b", target="a")
        assert result.reason == "Target already has an incoming connection"

    def test_invalid_source_handle(self, graph):
        result = _check(graph, source="check", target="b", source_handle="maybe")
        assert result.reason == "Invalid source handle"

    def test_invalid_target_handle(self, graph):
        result = _check(graph, source="a", target="b", target_handle="secondary")
        assert result.reason == "Invalid target handle"

    def test_declared_handles_accepted(self, graph):
        assert _check(graph, source="check", target="b", source_handle="true").valid
        assert _check(graph, source="a", target="b", target_handle="input").valid

    def test_rules_checked_in_order(self, graph):
        """Earlier rules win when several fail at once."""
        # Self-connection on a trigger: rule 2 beats rule 4
        assert _check(graph, source="trigger", target="trigger").reason == (
            "Cannot connect a node to itself"
        )
        # Duplicate beats slot conflict
        assert _check(graph, source="trigger", target="a").reason == "Connection already exists"

    def test_accepts_connection_models(self, graph):
        conn = Connection(source="a", target="b")
        assert validate_connection(conn, graph.nodes, graph.edges).valid

    def test_does_not_check_cycles(self, graph):
        """Structural validation alone accepts a loop-closing edge."""
        graph.edges.append(Edge(source="a", target="b"))
        assert _check(graph, source="b", target="a", target_handle="input").valid


class TestWouldCreateCycle:
    """Tests for the proposed-edge cycle check."""

    def test_back_edge(self):
        edges = [Edge(source="a", target="b"), Edge(source="b", target="c")]
        assert would_create_cycle({"source": "c", "target": "a"}, edges)

    def test_forward_edge(self):
        edges = [Edge(source="a", target="b"), Edge(source="b", target="c")]
        assert not would_create_cycle({"source": "a", "target": "c"}, edges)

    def test_self_loop(self):
        assert would_create_cycle({"source": "a", "target": "a"}, [])

    def test_unrelated_branch(self):
        edges = [Edge(source="a", target="b"), Edge(source="a", target="c")]
        assert not would_create_cycle({"source": "b", "target": "c"}, edges)

    def test_long_chain(self):
        """Deep chains are walked without recursion."""
        edges = [Edge(source=f"n{i}", target=f"n{i + 1}") for i in range(5000)]
        assert would_create_cycle({"source": "n5000", "target": "n0"}, edges)
        assert not would_create_cycle({"source": "n0", "target": "n5000"}, edges)

    def test_incomplete_connection(self):
        assert not would_create_cycle({"source": "a"}, [])


class TestCheckConnection:
    """Tests for the combined gate used by the editor."""

    def test_cycle_reason(self, graph):
        graph.edges.append(Edge(source="a", target="b"))
        result = check_connection(
            {"source": "b", "target": "a", "targetHandle": "input"}, graph.nodes, graph.edges
        )
        assert not result.valid
        assert result.reason == "Connection would create a cycle"

    def test_structural_reason_first(self, graph):
        result = check_connection({"source": "a", "target": "a"}, graph.nodes, graph.edges)
        assert result.reason == "Cannot connect a node to itself"

    def test_valid(self, graph):
        assert check_connection({"source": "a", "target": "b"}, graph.nodes, graph.edges).valid


class TestGraphHelpers:
    def test_find_cycle(self):
        graph = make_graph(
            [make_node("transform", "a"), make_node("transform", "b"), make_node("transform", "c")],
            [make_edge("a", "b"), make_edge("b", "c"), make_edge("c", "b")],
        )
        assert set(find_cycle(graph.nodes, graph.edges)) == {"b", "c"}

    def test_find_cycle_acyclic(self, diamond_graph):
        assert find_cycle(diamond_graph.nodes, diamond_graph.edges) is None


    def test_find_cycle_ignores_self_loops(self):
        graph = make_graph([make_node("transform", "a")], [make_edge("a", "a")])
        assert find_cycle(graph.nodes, graph.edges) is None
