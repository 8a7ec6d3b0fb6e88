"""FastAPI backend for the flowrun preview.

This module provides:
- Stateless endpoints for validating, ordering and connecting workflow graphs
- Run endpoints that start simulated runs and expose pause/resume/stop/step

Architecture Notes:
- Runs live in an in-memory registry owned by this server process. Each run
  has its own RunController and ExecutionStore; nothing is persisted, and
  runs are lost when the server restarts.
- A started run executes as an asyncio task on the server's event loop.
  Runs created in step mode have no task until resumed.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from flowrun import __version__
from flowrun.config import EngineSettings, load_settings
from flowrun.core.errors import ConfigError, CyclicGraphError, RunInProgressError
from flowrun.core.execution_state import ExecutionStatus, ExecutionStore
from flowrun.core.graph_schema import Connection, ValidationResult, WorkflowGraph
from flowrun.core.node_registry import NODE_DEFINITIONS
from flowrun.core.run_controller import RunController
from flowrun.core.scheduler import execution_levels, residual_nodes, topological_order
from flowrun.core.validation import check_connection

logger = logging.getLogger(__name__)

app = FastAPI(
    title="flowrun API",
    description="Validate, order and preview automation workflows",
    version=__version__,
)

# CORS for local development - the editor usually runs on a dev server port
ALLOWED_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ========== Run registry ==========


@dataclass
class RunRecord:
    """One run owned by this server"""

    id: str
    workflow: WorkflowGraph
    controller: RunController
    store: ExecutionStore
    task: asyncio.Task | None = None


_runs: dict[str, RunRecord] = {}
_settings: EngineSettings | None = None


def get_settings() -> EngineSettings:
    """Load engine settings once per process."""
    global _settings
    if _settings is None:
        try:
            _settings = load_settings()
        except ConfigError as e:
            logger.warning(f"Using default engine settings: {e}")
            _settings = EngineSettings()
    return _settings


def _get_run(run_id: str) -> RunRecord:
    record = _runs.get(run_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return record


async def _drive(record: RunRecord, coro) -> None:
    """Run a controller coroutine, recording unexpected failures on the store."""
    try:
        await coro
    except Exception as e:
        logger.error(f"Run {record.id} failed: {e}")
        record.store.set_error()


def _spawn(record: RunRecord, coro) -> None:
    record.task = asyncio.create_task(_drive(record, coro))


# ========== API Models ==========


class WorkflowRequest(BaseModel):
    """Request carrying a workflow graph"""

    graph: WorkflowGraph


class OrderRequest(BaseModel):
    graph: WorkflowGraph
    strict: bool = False


class ConnectionCheckRequest(BaseModel):
    """Request to check a proposed connection against a graph"""

    graph: WorkflowGraph
    connection: Connection


class RunRequest(BaseModel):
    """Request to start a simulated run"""

    graph: WorkflowGraph
    speed_ms: int | None = Field(default=None, ge=0)
    seed: int | None = None
    stop_on_error: bool | None = None
    step_mode: bool = False


class SpeedRequest(BaseModel):
    speed_ms: int = Field(ge=0)


class GraphValidationResponse(BaseModel):
    valid: bool
    errors: list[str]


class OrderResponse(BaseModel):
    order: list[str]
    unschedulable: list[str]
    levels: list[list[str]] | None = None


class RunSummary(BaseModel):
    """Run status response"""

    run_id: str
    workflow_name: str
    status: ExecutionStatus
    current_node_id: str | None = None
    order: list[str]
    has_more_steps: bool


class StepResponse(RunSummary):
    more: bool


def _summary(record: RunRecord) -> RunSummary:
    return RunSummary(
        run_id=record.id,
        workflow_name=record.workflow.name,
        status=record.store.status,
        current_node_id=record.store.current_node_id,
        order=record.controller.get_execution_order(),
        has_more_steps=record.controller.has_more_steps,
    )


# ========== Graph Endpoints ==========


@app.get("/api/node-types")
async def list_node_types() -> list[dict[str, Any]]:
    """Node palette: every node type with its ports and default config."""
    return [
        {
            "type": d.type.value,
            "category": d.category.value,
            "label": d.label,
            "description": d.description,
            "icon": d.icon,
            "inputs": d.inputs,
            "outputs": list(d.outputs),
            "default_config": d.default_config,
        }
        for d in NODE_DEFINITIONS.values()
    ]


@app.post("/api/workflows/validate")
async def validate_workflow(request: WorkflowRequest) -> GraphValidationResponse:
    """Whole-graph structural check."""
    errors = request.graph.validate_graph()
    return GraphValidationResponse(valid=not errors, errors=errors)


@app.post("/api/workflows/order")
async def order_workflow(request: OrderRequest) -> OrderResponse:
    """Execution order a run of this graph would follow."""
    graph = request.graph
    try:
        order = topological_order(graph.nodes, graph.edges, strict=request.strict)
    except CyclicGraphError as e:
        raise HTTPException(
            status_code=422, detail={"error": str(e), "cycle_members": e.cycle_members}
        ) from e

    unschedulable = residual_nodes(graph.nodes, order)
    levels = None if unschedulable else execution_levels(graph.nodes, graph.edges)
    return OrderResponse(order=order, unschedulable=unschedulable, levels=levels)


@app.post("/api/connections/validate")
async def validate_connection_endpoint(request: ConnectionCheckRequest) -> ValidationResult:
    """Would this connection be accepted by the editor?"""
    return check_connection(request.connection, request.graph.nodes, request.graph.edges)


# ========== Run Endpoints ==========


@app.post("/api/runs", status_code=201)
async def create_run(request: RunRequest) -> RunSummary:
    """Start a simulated run (or prepare one for stepping)."""
    errors = request.graph.validate_graph()
    if errors:
        raise HTTPException(status_code=400, detail={"validation_errors": errors})

    overrides: dict[str, Any] = {}
    if request.speed_ms is not None:
        overrides["execution_speed_ms"] = request.speed_ms
    if request.seed is not None:
        overrides["random_seed"] = request.seed
    if request.stop_on_error is not None:
        overrides["stop_on_error"] = request.stop_on_error
    settings = get_settings().model_copy(update=overrides)

    store = ExecutionStore(execution_speed=settings.execution_speed_ms)
    controller = RunController(request.graph, store=store, settings=settings)
    record = RunRecord(
        id=str(uuid.uuid4()),
        workflow=request.graph,
        controller=controller,
        store=store,
    )
    _runs[record.id] = record

    if request.step_mode:
        controller.initialize()
    else:
        _spawn(record, controller.start())
        # Let the run start so the response reflects it
        await asyncio.sleep(0)

    logger.info(f"Created run {record.id} for workflow '{request.graph.name}'")
    return _summary(record)


@app.get("/api/runs")
async def list_runs() -> list[RunSummary]:
    return [_summary(r) for r in _runs.values()]


@app.get("/api/runs/{run_id}")
async def get_run(run_id: str) -> dict[str, Any]:
    """Full run state: statuses, node states, logs and outputs."""
    record = _get_run(run_id)
    return {
        "run_id": record.id,
        "order": record.controller.get_execution_order(),
        "has_more_steps": record.controller.has_more_steps,
        **record.store.snapshot(),
    }


@app.post("/api/runs/{run_id}/pause")
async def pause_run(run_id: str) -> RunSummary:
    record = _get_run(run_id)
    if record.store.status != ExecutionStatus.RUNNING:
        raise HTTPException(
            status_code=409, detail=f"Cannot pause run in '{record.store.status.value}' state"
        )
    record.controller.pause()
    return _summary(record)


@app.post("/api/runs/{run_id}/resume")
async def resume_run(run_id: str) -> RunSummary:
    record = _get_run(run_id)
    if record.store.status != ExecutionStatus.PAUSED:
        raise HTTPException(
            status_code=409, detail=f"Cannot resume run in '{record.store.status.value}' state"
        )
    record.controller.resume()
    # A stepped run has no loop yet; continue it in the background
    if not record.controller.loop_active and record.controller.has_more_steps:
        _spawn(record, record.controller.run())
    return _summary(record)


@app.post("/api/runs/{run_id}/stop")
async def stop_run(run_id: str) -> RunSummary:
    record = _get_run(run_id)
    record.controller.stop()
    return _summary(record)


@app.post("/api/runs/{run_id}/step")
async def step_run(run_id: str) -> StepResponse:
    """Execute exactly one node."""
    record = _get_run(run_id)
    try:
        more = await record.controller.step()
    except RunInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return StepResponse(**_summary(record).model_dump(), more=more)


@app.put("/api/runs/{run_id}/speed")
async def set_run_speed(run_id: str, request: SpeedRequest) -> RunSummary:
    """Change the pause between nodes; applies from the next node."""
    record = _get_run(run_id)
    record.store.set_execution_speed(request.speed_ms)
    return _summary(record)
