"""Node type registry.

Every node kind the engine understands, with its category, port shape and
default configuration. The validator reads port shapes from here to decide
which handles are legal, and the executors use the declared handles when
reporting which outputs fired.
"""

from __future__ import annotations

import uuid
from copy import deepcopy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class NodeType(str, Enum):
    """Supported node kinds"""

    MANUAL_TRIGGER = "manual-trigger"
    WEBHOOK_TRIGGER = "webhook-trigger"
    HTTP_REQUEST = "http-request"
    SEND_EMAIL = "send-email"
    SEND_SMS = "send-sms"
    DELAY = "delay"
    CONDITION = "condition"
    TRANSFORM = "transform"


class NodeCategory(str, Enum):
    """Palette grouping, derived from the node type"""

    TRIGGER = "trigger"
    ACTION = "action"
    LOGIC = "logic"


@dataclass
class NodeDefinition:
    """Static description of a node kind."""

    type: NodeType
    category: NodeCategory
    label: str
    description: str
    icon: str
    inputs: int  # 0 or 1
    outputs: tuple[str, ...]  # Declared output handle names, primary handle first
    default_config: dict[str, Any] = field(default_factory=dict)

    @property
    def has_named_outputs(self) -> bool:
        return self.outputs != ("output",)


NODE_DEFINITIONS: dict[NodeType, NodeDefinition] = {
    NodeType.MANUAL_TRIGGER: NodeDefinition(
        type=NodeType.MANUAL_TRIGGER,
        category=NodeCategory.TRIGGER,
        label="Manual Trigger",
        description="Start workflow manually",
        icon="play",
        inputs=0,
        outputs=("output",),
        default_config={"name": "Manual Start"},
    ),
    NodeType.WEBHOOK_TRIGGER: NodeDefinition(
        type=NodeType.WEBHOOK_TRIGGER,
        category=NodeCategory.TRIGGER,
        label="Webhook",
        description="Start workflow via HTTP webhook",
        icon="webhook",
        inputs=0,
        outputs=("output",),
        default_config={"url": "", "method": "POST", "headers": {}},
    ),
    NodeType.HTTP_REQUEST: NodeDefinition(
        type=NodeType.HTTP_REQUEST,
        category=NodeCategory.ACTION,
        label="HTTP Request",
        description="Make an HTTP request",
        icon="globe",
        inputs=1,
        outputs=("output", "error"),
        default_config={"url": "", "method": "GET", "headers": {}, "body": "", "timeout": 30000},
    ),
    NodeType.SEND_EMAIL: NodeDefinition(
        type=NodeType.SEND_EMAIL,
        category=NodeCategory.ACTION,
        label="Send Email",
        description="Send an email message",
        icon="mail",
        inputs=1,
        outputs=("success", "error"),
        default_config={"to": "", "subject": "", "body": "", "cc": ""},
    ),
    NodeType.SEND_SMS: NodeDefinition(
        type=NodeType.SEND_SMS,
        category=NodeCategory.ACTION,
        label="Send SMS",
        description="Send an SMS message",
        icon="message",
        inputs=1,
        outputs=("success", "error"),
        default_config={"phone_number": "", "message": ""},
    ),
    NodeType.DELAY: NodeDefinition(
        type=NodeType.DELAY,
        category=NodeCategory.ACTION,
        label="Delay",
        description="Wait for a specified time",
        icon="clock",
        inputs=1,
        outputs=("output",),
        default_config={"duration": 1, "unit": "minutes"},
    ),
    NodeType.CONDITION: NodeDefinition(
        type=NodeType.CONDITION,
        category=NodeCategory.LOGIC,
        label="Condition",
        description="Branch based on a condition",
        icon="git-branch",
        inputs=1,
        outputs=("true", "false"),
        default_config={"expression": "", "operator": "equals", "value": ""},
    ),
    NodeType.TRANSFORM: NodeDefinition(
        type=NodeType.TRANSFORM,
        category=NodeCategory.LOGIC,
        label="Transform",
        description="Transform data fields",
        icon="shuffle",
        inputs=1,
        outputs=("output",),
        default_config={"transformations": []},
    ),
}


def get_node_definition(node_type: NodeType | str) -> NodeDefinition:
    """Look up the definition for a node type (enum or its string value)."""
    return NODE_DEFINITIONS[NodeType(node_type)]


def nodes_by_category() -> dict[NodeCategory, list[NodeDefinition]]:
    """Group definitions by category, in declaration order."""
    grouped: dict[NodeCategory, list[NodeDefinition]] = {c: [] for c in NodeCategory}
    for definition in NODE_DEFINITIONS.values():
        grouped[definition.category].append(definition)
    return grouped


def valid_source_handles(node_type: NodeType | str) -> list[str]:
    """Output handles a node of this type exposes."""
    return list(get_node_definition(node_type).outputs)


def valid_target_handles(node_type: NodeType | str) -> list[str]:
    """Input handles a node of this type exposes (triggers have none)."""
    return ["input"] if get_node_definition(node_type).inputs > 0 else []


def default_source_handle(node_type: NodeType | str) -> str | None:
    """Handle an unlabeled outgoing edge is attached to."""
    outputs = get_node_definition(node_type).outputs
    return outputs[0] if outputs else None


def create_node_data(
    node_type: NodeType | str,
    node_id: str | None = None,
    label: str | None = None,
    **config: Any,
) -> dict[str, Any]:
    """Build the raw dict for a new node, filled from the type's defaults.

    The result is accepted by the Node schema (see graph_schema.parse_node).
    """
    definition = get_node_definition(node_type)
    merged = deepcopy(definition.default_config)
    merged.update(config)
    return {
        "id": node_id or str(uuid.uuid4()),
        "type": definition.type.value,
        "label": label or definition.label,
        "config": merged,
    }
