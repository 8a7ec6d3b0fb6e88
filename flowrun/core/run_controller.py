"""Run controller.

Drives one workflow run through time: takes a private snapshot of the graph,
computes the execution order, executes nodes one at a time, hands each
node's output to its successors, marks branches that can no longer be
reached as skipped, and publishes everything to an ExecutionStore.

Run states: idle -> running -> (paused <-> running) -> completed | error.
stop() returns any state to idle.

The loop has three suspension points: the pause barrier between nodes, the
pacing wait after each executed node, and a delay node's own wait. stop()
releases all three through a single stop event. A node that is already
executing is allowed to finish.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from flowrun.config import EngineSettings
from flowrun.core.errors import RunInProgressError
from flowrun.core.execution_state import (
    ExecutionStatus,
    ExecutionStore,
    NodeStatus,
)
from flowrun.core.executors import (
    ExecutionContext,
    NodeExecutionResult,
    execute_node,
    node_not_found,
)
from flowrun.core.graph_schema import Edge, Node, WorkflowGraph
from flowrun.core.scheduler import topological_order

logger = logging.getLogger(__name__)

SKIP_MESSAGE = "Node skipped due to branch condition"

GraphSource = WorkflowGraph | Callable[[], WorkflowGraph]


class RunController:
    """Executes a workflow graph node by node with interactive control.

    Each controller owns its order, index and flags; construct one per
    workflow (or per run). The graph source is read only when a run is
    initialized, so edits made afterwards do not reach the run.
    """

    def __init__(
        self,
        graph: GraphSource,
        store: ExecutionStore | None = None,
        settings: EngineSettings | None = None,
        rng: random.Random | None = None,
    ):
        self.settings = settings or EngineSettings()
        self.store = store or ExecutionStore(execution_speed=self.settings.execution_speed_ms)
        self._graph_source = graph
        self._rng = rng

        self.nodes: list[Node] = []
        self.edges: list[Edge] = []
        self._node_map: dict[str, Node] = {}
        self.execution_order: list[str] = []
        self.current_index = 0
        self.skipped: set[str] = set()

        self._stopped = False
        self._finished = False
        self._loop_active = False
        self._waiting = False
        self._executing: str | None = None
        self._stop_event = asyncio.Event()
        self._resume_event = asyncio.Event()
        self._resume_event.set()
        self.context = ExecutionContext(self.settings, rng, self._stop_event)

    # ========== Lifecycle ==========

    def _resolve_graph(self) -> WorkflowGraph:
        if isinstance(self._graph_source, WorkflowGraph):
            return self._graph_source
        return self._graph_source()

    def initialize(self) -> None:
        """Snapshot the graph, compute the order and reset run flags."""
        snapshot = self._resolve_graph().snapshot()
        self.nodes = snapshot.nodes
        self.edges = snapshot.edges
        self._node_map = snapshot.node_map()
        self.execution_order = topological_order(
            self.nodes, self.edges, strict=self.settings.fail_on_cycle
        )
        self.current_index = 0
        self.skipped = set()

        self._stopped = False
        self._finished = False
        self._waiting = False
        self._stop_event = asyncio.Event()
        self._resume_event = asyncio.Event()
        self._resume_event.set()
        rng = self._rng or random.Random(self.settings.random_seed)
        self.context = ExecutionContext(self.settings, rng, self._stop_event)

    def _begin_run(self) -> None:
        self.initialize()
        self.store.reset()
        self.store.start_execution()
        for node_id in self.execution_order:
            self.store.set_node_state(node_id, status=NodeStatus.PENDING)
        logger.info(f"Starting run with {len(self.execution_order)} node(s)")

    async def start(self) -> None:
        """Start a fresh run and drive it to the end (or until stopped)."""
        if self._loop_active or self.store.status in (
            ExecutionStatus.RUNNING,
            ExecutionStatus.PAUSED,
        ):
            raise RunInProgressError("A run is already in progress")
        self._begin_run()
        await self.run()

    async def run(self) -> None:
        """Drive the order from the current index.

        Used by start(), and to continue a run that was advanced with step().
        """
        if self._loop_active:
            raise RunInProgressError("The run loop is already active")
        self._loop_active = True
        try:
            await self._run_loop()
        finally:
            self._loop_active = False

    async def _run_loop(self) -> None:
        while self.current_index < len(self.execution_order):
            if self._stopped:
                logger.info("Run stopped")
                return

            if not self._resume_event.is_set():
                await self._wait_while_paused()
                if self._stopped:
                    logger.info("Run stopped while paused")
                    return
                # step() may have advanced or ended the run while we were parked
                if self._finished:
                    return
                if self.current_index >= len(self.execution_order):
                    break

            node_id = self.execution_order[self.current_index]
            executed = await self._process_node(node_id)
            self.current_index += 1

            if self._finished or self._stopped:
                return
            if executed and self.current_index < len(self.execution_order):
                await self.context.sleep(self.store.execution_speed / 1000)

        self._complete()

    async def _wait_while_paused(self) -> None:
        if self._waiting:
            raise RuntimeError("Pause barrier already has a waiter")
        self._waiting = True
        try:
            await self._resume_event.wait()
        finally:
            self._waiting = False

    def _complete(self) -> None:
        if self._finished or self._stopped:
            return
        self._finished = True
        self.store.complete_execution()
        logger.info("Run completed")

    # ========== Control ==========

    def pause(self) -> None:
        """Arm the pause barrier. The current node, if any, finishes first."""
        if self.store.status != ExecutionStatus.RUNNING:
            return
        self._resume_event.clear()
        self.store.pause_execution()

    def resume(self) -> None:
        if self.store.status != ExecutionStatus.PAUSED:
            return
        self.store.resume_execution()
        self._resume_event.set()

    def stop(self) -> None:
        """Abort the run. Pending waits are released immediately."""
        self._stopped = True
        self._stop_event.set()
        self._resume_event.set()
        self.store.stop_execution()

    async def step(self) -> bool:
        """Execute exactly one node of the order.

        The first call while idle initializes a run the same way start()
        does. Returns True while more nodes remain.
        Raises RunInProgressError while the loop is running, or while a
        paused run still has a node inside its executor.
        """
        if self.store.status == ExecutionStatus.RUNNING and self._loop_active:
            raise RunInProgressError("Cannot step while the run is executing; pause it first")
        if self._executing is not None:
            raise RunInProgressError(
                f"Node {self._executing} is still executing; step once it has finished"
            )

        if self.store.status == ExecutionStatus.IDLE:
            self._begin_run()
            self._resume_event.clear()
            self.store.pause_execution()

        if self._finished:
            return False
        if self.current_index >= len(self.execution_order):
            self._complete()
            return False

        node_id = self.execution_order[self.current_index]
        await self._process_node(node_id)
        self.current_index += 1

        if self.current_index >= len(self.execution_order):
            self._complete()
        if self._finished or self._stopped:
            # wake a loop parked at the barrier so it can exit
            self._resume_event.set()
            return False
        return True

    def get_execution_order(self) -> list[str]:
        return list(self.execution_order)

    @property
    def has_more_steps(self) -> bool:
        return not self._finished and self.current_index < len(self.execution_order)

    @property
    def loop_active(self) -> bool:
        return self._loop_active

    @property
    def executing_node_id(self) -> str | None:
        """ID of the node currently inside its executor, if any."""
        return self._executing

    # ========== Node execution ==========

    async def _process_node(self, node_id: str) -> bool:
        """Run (or skip) one node. Returns False if it was skipped."""
        node = self._node_map.get(node_id)
        name = node.display_name if node else node_id

        if node_id in self.skipped:
            self.store.set_node_state(node_id, status=NodeStatus.SKIPPED)
            self.store.add_log(node_id, name, NodeStatus.SKIPPED, SKIP_MESSAGE)
            return False

        self._executing = node_id
        try:
            result = await self._execute(node_id, node, name)
        finally:
            self._executing = None

        # a node that fired no handles (exception, missing node) leaves its downstream runnable
        if result.active_output_handles:
            self._propagate_skips(node_id, result.active_output_handles)

        if not result.success and self.settings.stop_on_error and not self._stopped:
            logger.warning(f"Stopping run after failure of node {node_id}")
            self._finished = True
            self.store.set_error()
        return True

    async def _execute(self, node_id: str, node: Node | None, name: str) -> NodeExecutionResult:
        self.store.set_current_node(node_id)
        input_data = self._collect_inputs(node_id)
        self.store.set_node_state(
            node_id, status=NodeStatus.RUNNING, started_at=datetime.now(UTC), input=input_data
        )
        node_type = node.type if node else "unknown"
        started = time.perf_counter()

        try:
            if node is None:
                result = node_not_found()
            else:
                result = await execute_node(node, input_data, self.context)
        except Exception as e:
            duration_ms = int((time.perf_counter() - started) * 1000)
            logger.error(f"Node {node_id} failed: {e}")
            self.store.set_node_state(
                node_id, status=NodeStatus.ERROR, completed_at=datetime.now(UTC), error=str(e)
            )
            self.store.add_log(
                node_id,
                name,
                NodeStatus.ERROR,
                f"{node_type} failed with exception",
                input=input_data,
                error=str(e),
                duration_ms=duration_ms,
            )
            result = NodeExecutionResult(success=False, error=str(e))
        else:
            duration_ms = int((time.perf_counter() - started) * 1000)
            self._record_result(node_id, name, node_type, input_data, result, duration_ms)
        return result

    def _record_result(
        self,
        node_id: str,
        name: str,
        node_type: str,
        input_data: dict[str, Any],
        result: NodeExecutionResult,
        duration_ms: int,
    ) -> None:
        status = NodeStatus.SUCCESS if result.success else NodeStatus.ERROR
        self.store.set_node_state(
            node_id,
            status=status,
            completed_at=datetime.now(UTC),
            output=result.output,
            error=result.error,
        )
        if result.output is not None:
            self.store.set_execution_data(node_id, result.output)

        if result.success:
            message = f"{node_type} executed successfully"
        else:
            message = f"{node_type} failed: {result.error}"
        self.store.add_log(
            node_id,
            name,
            status,
            message,
            input=input_data,
            output=result.output,
            error=result.error,
            duration_ms=duration_ms,
        )

    def _collect_inputs(self, node_id: str) -> dict[str, Any]:
        """Assemble a node's input from the recorded outputs of its sources.

        Outputs are keyed by the edge's source handle ("input" when unset);
        a later edge with the same key overwrites an earlier one. A single
        dict-valued contribution is passed through flat.
        """
        inputs: dict[str, Any] = {}
        for edge in self.edges:
            if edge.target != node_id:
                continue
            # Use 'in' so falsy outputs are still delivered
            if edge.source not in self.store.execution_data:
                continue
            inputs[edge.source_handle or "input"] = self.store.execution_data[edge.source]

        if len(inputs) == 1:
            only = next(iter(inputs.values()))
            if isinstance(only, dict):
                return dict(only)
        return inputs

    # ========== Skip propagation ==========

    def _reachable(self, start: list[str]) -> set[str]:
        """Nodes reachable from `start` (inclusive) in the run's snapshot."""
        successors: dict[str, list[str]] = {}
        for edge in self.edges:
            successors.setdefault(edge.source, []).append(edge.target)

        seen: set[str] = set()
        queue = deque(start)
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            queue.extend(successors.get(current, []))
        return seen

    def _propagate_skips(self, node_id: str, active_handles: list[str]) -> None:
        """Add everything reachable only through inactive outgoing edges to the skip-set.

        A candidate is kept runnable if some other parent that is still live
        (not a candidate, not skipped, not this node) feeds it.
        """
        node = self._node_map.get(node_id)
        outgoing = [e for e in self.edges if e.source == node_id]
        if not outgoing:
            return

        active_targets = []
        inactive_targets = []
        for edge in outgoing:
            handle = edge.output_handle(node.type) if node else edge.source_handle
            if handle in active_handles:
                active_targets.append(edge.target)
            else:
                inactive_targets.append(edge.target)

        if not inactive_targets:
            return

        candidates = self._reachable(inactive_targets) - self._reachable(active_targets)
        candidates -= set(self.execution_order[: self.current_index + 1])

        changed = True
        while changed:
            changed = False
            for candidate in list(candidates):
                for edge in self.edges:
                    if edge.target != candidate:
                        continue
                    parent = edge.source
                    if parent == node_id or parent in candidates or parent in self.skipped:
                        continue
                    candidates.discard(candidate)
                    changed = True
                    break

        if candidates:
            logger.info(f"Skipping {len(candidates)} node(s) downstream of {node_id}")
        self.skipped.update(candidates)
