"""Workflow graph schema definitions using Pydantic models.

A workflow is a directed graph of typed nodes (triggers, actions, logic)
joined by edges that run from a named output handle on the source to the
input handle on the target. The node is a closed tagged union over the eight
node kinds, each carrying its own config model.

The graph must stay acyclic. Edits made through WorkflowGraph.connect() are
gated by the connection validator and the cycle detector before anything is
committed, and validate_graph() reports problems in graphs loaded from files.
"""

from __future__ import annotations

import json
import logging
import uuid
from pathlib import Path
from typing import Annotated, Any, Literal, Union

import networkx as nx
import yaml
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from flowrun.core.errors import WorkflowLoadError
from flowrun.core.node_registry import (
    NodeCategory,
    NodeDefinition,
    NodeType,
    create_node_data,
    default_source_handle,
    get_node_definition,
    valid_source_handles,
    valid_target_handles,
)

logger = logging.getLogger(__name__)


# ========== Node configuration ==========


class _NodeConfig(BaseModel):
    """Base for per-type config. Unknown keys are kept; forms validate them."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)


class ManualTriggerConfig(_NodeConfig):
    name: str = "Manual Start"


class WebhookTriggerConfig(_NodeConfig):
    url: str = ""
    method: str = "POST"
    headers: dict[str, Any] = Field(default_factory=dict)


class HttpRequestConfig(_NodeConfig):
    url: str = ""
    method: str = "GET"
    headers: dict[str, Any] = Field(default_factory=dict)
    body: str | None = ""
    timeout: int | None = 30000


class SendEmailConfig(_NodeConfig):
    to: str = ""
    subject: str = ""
    body: str = ""
    cc: str | None = ""


class SendSmsConfig(_NodeConfig):
    phone_number: str = Field(
        default="", validation_alias=AliasChoices("phone_number", "phoneNumber")
    )
    message: str = ""


class DelayConfig(_NodeConfig):
    duration: float = 1
    unit: str = "minutes"  # seconds | minutes | hours


class ConditionConfig(_NodeConfig):
    """Condition evaluated against the node's input.

    `expression` is a dot path into the input ("user.age"). Older exports
    call it `field`; both spellings are accepted.
    """

    expression: str = Field(default="", validation_alias=AliasChoices("expression", "field"))
    operator: str = "equals"
    value: Any = ""


class Transformation(BaseModel):
    """One field mutation applied by a transform node"""

    model_config = ConfigDict(extra="allow")

    field: str
    operation: str
    value: Any = None


class TransformConfig(_NodeConfig):
    transformations: list[Transformation] = Field(default_factory=list)


# ========== Nodes ==========


class _BaseNode(BaseModel):
    """Fields shared by every node kind"""

    id: str
    label: str | None = None
    position: dict[str, float] | None = None  # Canvas metadata, unused by the engine

    @field_validator("id")
    @classmethod
    def validate_node_id(cls, v):
        if not v or not v.strip():
            raise ValueError("Node ID must be a non-empty string")
        return v

    @property
    def node_type(self) -> NodeType:
        return NodeType(self.type)

    @property
    def definition(self) -> NodeDefinition:
        return get_node_definition(self.type)

    @property
    def category(self) -> NodeCategory:
        return self.definition.category

    @property
    def display_name(self) -> str:
        return self.label or self.id


class ManualTriggerNode(_BaseNode):
    type: Literal["manual-trigger"] = "manual-trigger"
    config: ManualTriggerConfig = Field(default_factory=ManualTriggerConfig)


class WebhookTriggerNode(_BaseNode):
    type: Literal["webhook-trigger"] = "webhook-trigger"
    config: WebhookTriggerConfig = Field(default_factory=WebhookTriggerConfig)


class HttpRequestNode(_BaseNode):
    type: Literal["http-request"] = "http-request"
    config: HttpRequestConfig = Field(default_factory=HttpRequestConfig)


class SendEmailNode(_BaseNode):
    type: Literal["send-email"] = "send-email"
    config: SendEmailConfig = Field(default_factory=SendEmailConfig)


class SendSmsNode(_BaseNode):
    type: Literal["send-sms"] = "send-sms"
    config: SendSmsConfig = Field(default_factory=SendSmsConfig)


class DelayNode(_BaseNode):
    type: Literal["delay"] = "delay"
    config: DelayConfig = Field(default_factory=DelayConfig)


class ConditionNode(_BaseNode):
    type: Literal["condition"] = "condition"
    config: ConditionConfig = Field(default_factory=ConditionConfig)


class TransformNode(_BaseNode):
    type: Literal["transform"] = "transform"
    config: TransformConfig = Field(default_factory=TransformConfig)


Node = Annotated[
    Union[
        ManualTriggerNode,
        WebhookTriggerNode,
        HttpRequestNode,
        SendEmailNode,
        SendSmsNode,
        DelayNode,
        ConditionNode,
        TransformNode,
    ],
    Field(discriminator="type"),
]

_node_adapter: TypeAdapter = TypeAdapter(Node)


def _normalize_raw_node(raw: Any) -> Any:
    """Accept the canvas export shape: {id, position, data: {label, type, config}}."""
    if not isinstance(raw, dict) or "data" not in raw:
        return raw
    data = raw.get("data") or {}
    flat = {k: v for k, v in raw.items() if k != "data"}
    flat["type"] = data.get("type", raw.get("type"))
    flat.setdefault("label", data.get("label"))
    flat["config"] = data.get("config", {})
    return flat


def parse_node(raw: dict[str, Any]) -> Node:
    """Validate a raw dict into the matching node class."""
    return _node_adapter.validate_python(_normalize_raw_node(raw))


# ========== Edges ==========


class Connection(BaseModel):
    """A proposed edge that has not been committed yet"""

    model_config = ConfigDict(populate_by_name=True)

    source: str | None = None
    target: str | None = None
    source_handle: str | None = Field(default=None, alias="sourceHandle")
    target_handle: str | None = Field(default=None, alias="targetHandle")


class Edge(BaseModel):
    """Directed edge from a source output handle to a target input handle"""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    source: str
    target: str
    source_handle: str | None = Field(default=None, alias="sourceHandle")
    target_handle: str | None = Field(default=None, alias="targetHandle")
    label: str | None = None
    condition: Literal["true", "false"] | None = None  # Branch tag for condition outputs

    @model_validator(mode="before")
    @classmethod
    def lift_condition_from_data(cls, values: Any) -> Any:
        """Canvas exports keep the branch tag under data.condition."""
        if isinstance(values, dict) and "condition" not in values:
            data = values.get("data")
            if isinstance(data, dict) and data.get("condition") in ("true", "false"):
                values = {**values, "condition": data["condition"]}
        return values

    @field_validator("condition", mode="before")
    @classmethod
    def stringify_condition(cls, v):
        # YAML reads `condition: true` as a bool
        if isinstance(v, bool):
            return "true" if v else "false"
        return v

    def output_handle(self, source_type: NodeType | str) -> str | None:
        """Output handle this edge hangs off.

        Explicit source handle first, then the branch tag, then the source
        type's primary output.
        """
        return self.source_handle or self.condition or default_source_handle(source_type)


class ValidationResult(BaseModel):
    """Outcome of validating a proposed connection"""

    valid: bool
    reason: str | None = None


def find_cycle(nodes: list[Node], edges: list[Edge]) -> list[str] | None:
    """Return the node IDs of one cycle in the graph, or None if acyclic.

    Self-loops are not considered; validate_graph reports them on their own.
    """
    G = nx.DiGraph()
    G.add_nodes_from(n.id for n in nodes)
    G.add_edges_from((e.source, e.target) for e in edges if e.source != e.target)
    try:
        cycle = nx.find_cycle(G)
    except nx.NetworkXNoCycle:
        return None
    return [u for u, _ in cycle]


# ========== Workflow ==========


class WorkflowGraph(BaseModel):
    """Complete workflow definition, also used as the in-memory graph store"""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = "Untitled Workflow"
    description: str | None = None

    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)

    @field_validator("nodes", mode="before")
    @classmethod
    def normalize_nodes(cls, v):
        if isinstance(v, list):
            return [_normalize_raw_node(n) for n in v]
        return v

    @field_validator("edges", mode="before")
    @classmethod
    def drop_incomplete_edges(cls, v):
        """Edges without both endpoints are dropped on load, with a warning."""
        if not isinstance(v, list):
            return v
        kept = []
        for edge in v:
            if isinstance(edge, dict) and (not edge.get("source") or not edge.get("target")):
                logger.warning(f"Dropping edge without source and target: {edge}")
                continue
            kept.append(edge)
        return kept

    # ========== Lookups ==========

    def get_node(self, node_id: str) -> Node | None:
        return next((n for n in self.nodes if n.id == node_id), None)

    def node_map(self) -> dict[str, Node]:
        """O(1) lookup map for nodes by ID."""
        return {n.id: n for n in self.nodes}

    def get_node_edges(self, node_id: str) -> tuple[list[Edge], list[Edge]]:
        """Return (incoming, outgoing) edges for a node."""
        incoming = [e for e in self.edges if e.target == node_id]
        outgoing = [e for e in self.edges if e.source == node_id]
        return incoming, outgoing

    def get_entry_nodes(self) -> list[str]:
        """Nodes without incoming edges, in insertion order."""
        targets = {e.target for e in self.edges}
        return [n.id for n in self.nodes if n.id not in targets]

    # ========== Mutations ==========

    def add_node(self, node: Node | dict[str, Any]) -> str:
        """Add a node and return its ID."""
        if isinstance(node, dict):
            node = parse_node(node)
        if self.get_node(node.id) is not None:
            raise ValueError(f"Duplicate node ID: '{node.id}'")
        self.nodes.append(node)
        return node.id

    def update_node_config(self, node_id: str, **changes: Any) -> None:
        """Mutate a node's config in place."""
        node = self.get_node(node_id)
        if node is None:
            raise KeyError(f"Node '{node_id}' not found")
        for key, value in changes.items():
            setattr(node.config, key, value)

    def remove_nodes(self, node_ids: list[str]) -> None:
        """Remove nodes together with every edge touching them."""
        doomed = set(node_ids)
        self.nodes = [n for n in self.nodes if n.id not in doomed]
        self.edges = [e for e in self.edges if e.source not in doomed and e.target not in doomed]

    def connect(self, connection: Connection | dict[str, Any]) -> ValidationResult:
        """Commit a connection if it passes validation and keeps the graph acyclic.

        Condition branches get a Yes/No label and a branch tag.
        """
        from flowrun.core.validation import check_connection

        if isinstance(connection, dict):
            connection = Connection.model_validate(connection)

        result = check_connection(connection, self.nodes, self.edges)
        if not result.valid:
            logger.info(
                f"Rejected connection {connection.source} -> {connection.target}: {result.reason}"
            )
            return result

        self.edges.append(create_edge_with_label(connection, self.nodes))
        return result

    def remove_edges(self, edge_ids: list[str]) -> None:
        doomed = set(edge_ids)
        self.edges = [e for e in self.edges if e.id not in doomed]

    def snapshot(self) -> WorkflowGraph:
        """Owned deep copy; later edits to this graph do not reach the copy."""
        return self.model_copy(deep=True)

    # ========== Validation ==========

    def validate_graph(self) -> list[str]:
        """
        Validate graph structure.
        Returns list of validation errors.
        """
        errors = []

        seen_node_ids = set()
        for node in self.nodes:
            if node.id in seen_node_ids:
                errors.append(f"Duplicate node ID: '{node.id}'")
            seen_node_ids.add(node.id)
        node_ids = seen_node_ids
        node_map = self.node_map()

        seen_edge_ids = set()
        for edge in self.edges:
            if edge.id in seen_edge_ids:
                errors.append(f"Duplicate edge ID: '{edge.id}'")
            seen_edge_ids.add(edge.id)

        occupied_slots: dict[tuple[str, str | None], str] = {}
        for edge in self.edges:
            if edge.source not in node_ids:
                errors.append(f"Edge {edge.id}: source '{edge.source}' not found")
            if edge.target not in node_ids:
                errors.append(f"Edge {edge.id}: target '{edge.target}' not found")
            if edge.source == edge.target:
                errors.append(f"Edge {edge.id}: node '{edge.source}' is connected to itself")

            source = node_map.get(edge.source)
            target = node_map.get(edge.target)
            if target is not None and target.definition.inputs == 0:
                errors.append(
                    f"Edge {edge.id}: trigger node '{edge.target}' cannot have incoming connections"
                )
            if target is not None and edge.target_handle is not None:
                if edge.target_handle not in valid_target_handles(target.type):
                    errors.append(
                        f"Edge {edge.id}: invalid target handle '{edge.target_handle}'"
                    )
            if source is not None and edge.source_handle is not None:
                if edge.source_handle not in valid_source_handles(source.type):
                    errors.append(
                        f"Edge {edge.id}: invalid source handle '{edge.source_handle}' "
                        f"for {source.type} node '{edge.source}'"
                    )

            slot = (edge.target, edge.target_handle)
            if slot in occupied_slots:
                errors.append(
                    f"Edge {edge.id}: target '{edge.target}' already has an incoming "
                    f"connection (edge {occupied_slots[slot]})"
                )
            else:
                occupied_slots[slot] = edge.id

        cycle = find_cycle(self.nodes, self.edges)
        if cycle:
            errors.append(f"Cycle detected: {' -> '.join(cycle + [cycle[0]])}")

        return errors

    # ========== Loading ==========

    @classmethod
    def from_file(cls, path: str | Path) -> WorkflowGraph:
        """Load a workflow from a YAML or JSON file.

        Raises:
            WorkflowLoadError: unreadable file, bad syntax or non-mapping content
            pydantic.ValidationError: content does not match the schema
        """
        path = Path(path)
        try:
            text = path.read_text()
        except OSError as e:
            raise WorkflowLoadError(f"Cannot read workflow file '{path}': {e}") from e

        try:
            if path.suffix.lower() == ".json":
                data = json.loads(text)
            else:
                data = yaml.safe_load(text)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise WorkflowLoadError(f"Error parsing workflow file '{path}': {e}") from e

        if not isinstance(data, dict):
            raise WorkflowLoadError(
                f"Invalid content in '{path}'. Expected a mapping, got {type(data).__name__}."
            )
        # Canvas exports wrap the graph in {"workflow": {...}}
        if "workflow" in data and isinstance(data["workflow"], dict):
            data = data["workflow"]
        return cls.model_validate(data)


def create_node(
    node_type: NodeType | str,
    node_id: str | None = None,
    label: str | None = None,
    **config: Any,
) -> Node:
    """Create a node of the given type with registry defaults."""
    return parse_node(create_node_data(node_type, node_id=node_id, label=label, **config))


def load_workflow_file(path: str | Path) -> WorkflowGraph:
    """Load a workflow definition from YAML or JSON."""
    return WorkflowGraph.from_file(path)


def create_edge_with_label(connection: Connection, nodes: list[Node]) -> Edge:
    """Build an edge for a validated connection, labelling condition branches."""
    source_node = next((n for n in nodes if n.id == connection.source), None)

    label = None
    condition = None
    if source_node is not None and source_node.type == NodeType.CONDITION.value:
        if connection.source_handle == "true":
            label, condition = "Yes", "true"
        elif connection.source_handle == "false":
            label, condition = "No", "false"

    return Edge(
        source=connection.source,
        target=connection.target,
        source_handle=connection.source_handle,
        target_handle=connection.target_handle,
        label=label,
        condition=condition,
    )


__all__ = [
    "ConditionConfig",
    "ConditionNode",
    "Connection",
    "DelayConfig",
    "DelayNode",
    "Edge",
    "HttpRequestConfig",
    "HttpRequestNode",
    "ManualTriggerConfig",
    "ManualTriggerNode",
    "Node",
    "SendEmailConfig",
    "SendEmailNode",
    "SendSmsConfig",
    "SendSmsNode",
    "Transformation",
    "TransformConfig",
    "TransformNode",
    "ValidationError",
    "ValidationResult",
    "WebhookTriggerConfig",
    "WebhookTriggerNode",
    "WorkflowGraph",
    "create_edge_with_label",
    "create_node",
    "find_cycle",
    "load_workflow_file",
    "parse_node",
]
