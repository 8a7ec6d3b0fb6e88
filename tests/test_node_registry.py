"""Tests for the node type registry."""

import pytest

from flowrun.core.graph_schema import SendSmsNode, create_node
from flowrun.core.node_registry import (
    NODE_DEFINITIONS,
    NodeCategory,
    NodeType,
    create_node_data,
    default_source_handle,
    get_node_definition,
    nodes_by_category,
    valid_source_handles,
    valid_target_handles,
)


class TestDefinitions:
    """Tests for the static node definitions."""

    def test_every_type_has_a_definition(self):
        """Each of the eight node kinds is registered."""
        assert set(NODE_DEFINITIONS) == set(NodeType)
        assert len(NODE_DEFINITIONS) == 8

    def test_triggers_have_no_inputs(self):
        """Trigger nodes cannot receive connections."""
        for definition in NODE_DEFINITIONS.values():
            if definition.category == NodeCategory.TRIGGER:
                assert definition.inputs == 0
            else:
                assert definition.inputs == 1

    @pytest.mark.parametrize(
        "node_type,outputs",
        [
            ("manual-trigger", ["output"]),
            ("webhook-trigger", ["output"]),
            ("http-request", ["output", "error"]),
            ("send-email", ["success", "error"]),
            ("send-sms", ["success", "error"]),
            ("delay", ["output"]),
            ("condition", ["true", "false"]),
            ("transform", ["output"]),
        ],
    )
    def test_port_shapes(self, node_type, outputs):
        """Output handles match each type's port shape."""
        assert valid_source_handles(node_type) == outputs
        assert default_source_handle(node_type) == outputs[0]

    def test_target_handles(self):
        """Only non-trigger nodes expose the input handle."""
        assert valid_target_handles("manual-trigger") == []
        assert valid_target_handles(NodeType.DELAY) == ["input"]

    def test_lookup_accepts_enum_or_string(self):
        """Definitions can be fetched by enum member or string value."""
        assert get_node_definition("condition") is get_node_definition(NodeType.CONDITION)

    def test_unknown_type_raises(self):
        """Unknown types are not silently accepted."""
        with pytest.raises(ValueError):
            get_node_definition("ftp-upload")

    def test_nodes_by_category(self):
        """Palette grouping covers all categories in declaration order."""
        grouped = nodes_by_category()
        assert [d.type for d in grouped[NodeCategory.TRIGGER]] == [
            NodeType.MANUAL_TRIGGER,
            NodeType.WEBHOOK_TRIGGER,
        ]
        assert [d.type for d in grouped[NodeCategory.LOGIC]] == [
            NodeType.CONDITION,
            NodeType.TRANSFORM,
        ]
        assert sum(len(v) for v in grouped.values()) == 8


class TestCreateNode:
    """Tests for building new nodes from defaults."""

    def test_create_node_data_fills_defaults(self):
        """Defaults come from the definition, overrides win."""
        data = create_node_data("delay", node_id="wait", duration=5)
        assert data["id"] == "wait"
        assert data["type"] == "delay"
        assert data["label"] == "Delay"
        assert data["config"] == {"duration": 5, "unit": "minutes"}

    def test_create_node_data_generates_ids(self):
        """Each new node gets a fresh ID."""
        assert create_node_data("transform")["id"] != create_node_data("transform")["id"]

    def test_defaults_are_not_shared(self):
        """Mutating one node's config does not leak into the registry."""
        data = create_node_data("webhook-trigger")
        data["config"]["headers"]["X-Test"] = "1"
        assert NODE_DEFINITIONS[NodeType.WEBHOOK_TRIGGER].default_config["headers"] == {}

    def test_create_node_returns_typed_node(self):
        """create_node validates into the matching node class."""
        node = create_node("send-sms", node_id="sms", message="hello")
        assert isinstance(node, SendSmsNode)
        assert node.config.message == "hello"
        assert node.category == NodeCategory.ACTION
