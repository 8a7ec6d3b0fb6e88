# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the flowrun test suite.

This module provides foundational fixtures used across all test modules:
- Graph builders for nodes and edges
- Ready-made workflows (linear, diamond, branching scenarios)
- Deterministic engine settings
- Workflow files on disk

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
    Helper functions (make_node, make_edge, make_graph) are importable
    from conftest for tests that need custom shapes.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
import yaml

from flowrun.config import EngineSettings
from flowrun.core.execution_state import ExecutionStore
from flowrun.core.graph_schema import WorkflowGraph
from flowrun.core.node_registry import create_node_data


# =============================================================================
# Graph Builders
# =============================================================================


def make_node(node_type: str, node_id: str, **config: Any) -> dict[str, Any]:
    """Raw node dict with registry defaults and the given config overrides."""
    return create_node_data(node_type, node_id=node_id, label=node_id, **config)


def make_edge(
    source: str,
    target: str,
    source_handle: str | None = None,
    target_handle: str | None = None,
    **extra: Any,
) -> dict[str, Any]:
    """Raw edge dict in the camelCase shape the editor exports."""
    edge = {
        "id": f"e-{source}-{target}-{source_handle or 'out'}",
        "source": source,
        "target": target,
        "sourceHandle": source_handle,
        "targetHandle": target_handle,
    }
    edge.update(extra)
    return edge


def make_graph(nodes: list[dict], edges: list[dict], name: str = "Test Workflow") -> WorkflowGraph:
    return WorkflowGraph.model_validate({"name": name, "nodes": nodes, "edges": edges})


# =============================================================================
# Settings and Stores
# =============================================================================


@pytest.fixture
def fast_settings() -> EngineSettings:
    """No pacing, actions always succeed, seeded randomness."""
    return EngineSettings(
        execution_speed_ms=0,
        http_success_rate=1.0,
        messaging_success_rate=1.0,
        random_seed=42,
    )


@pytest.fixture
def store() -> ExecutionStore:
    return ExecutionStore(execution_speed=0)


# =============================================================================
# Workflows
# =============================================================================


@pytest.fixture
def linear_graph() -> WorkflowGraph:
    """trigger -> transform -> email"""
    return make_graph(
        [
            make_node("manual-trigger", "trigger"),
            make_node(
                "transform",
                "shape",
                transformations=[{"field": "greeting", "operation": "set", "value": "hi"}],
            ),
            make_node("send-email", "notify", to="ops@example.com", subject="Done"),
        ],
        [
            make_edge("trigger", "shape"),
            make_edge("shape", "notify"),
        ],
    )


@pytest.fixture
def diamond_graph() -> WorkflowGraph:
    """trigger -> a -> {b, c} -> d"""
    return make_graph(
        [
            make_node("manual-trigger", "trigger"),
            make_node("transform", "a"),
            make_node("transform", "b"),
            make_node("transform", "c"),
            make_node("transform", "d"),
        ],
        [
            make_edge("trigger", "a"),
            make_edge("a", "b"),
            make_edge("a", "c"),
            make_edge("b", "d", target_handle="input"),
            make_edge("c", "d"),
        ],
    )


@pytest.fixture
def branching_graph() -> WorkflowGraph:
    """trigger -> set x=1 -> condition(x equals 1) -> true: email, false: sms."""
    return make_graph(
        [
            make_node("manual-trigger", "trigger"),
            make_node(
                "transform",
                "set_x",
                transformations=[{"field": "x", "operation": "set", "value": 1}],
            ),
            make_node("condition", "check", expression="transformed.x", operator="equals", value="1"),
            make_node("send-email", "email", to="a@example.com"),
            make_node("send-sms", "sms", phone_number="+15550100"),
        ],
        [
            make_edge("trigger", "set_x"),
            make_edge("set_x", "check"),
            make_edge("check", "email", "true"),
            make_edge("check", "sms", "false"),
        ],
    )


@pytest.fixture
def workflow_file(tmp_path: Path, branching_graph: WorkflowGraph) -> Path:
    """Branching workflow written as YAML with camelCase edge handles."""
    path = tmp_path / "workflow.yaml"
    data = branching_graph.model_dump(mode="json", by_alias=True)
    path.write_text(yaml.safe_dump(data, sort_keys=False))
    return path
