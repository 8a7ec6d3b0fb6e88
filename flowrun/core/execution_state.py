"""Execution state store.

The run controller publishes everything observable about a run here: the
overall status, which node is current, per-node status and timing, the last
output of every node, and an append-only log. Front ends (CLI live monitor,
preview API) read the store or subscribe to its change events.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, PrivateAttr

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class ExecutionStatus(str, Enum):
    """Status of a run as a whole"""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"


class NodeStatus(str, Enum):
    """Status of a single node within a run"""

    IDLE = "idle"
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


class StoreEvent(str, Enum):
    """Change notifications delivered to subscribers"""

    STATUS = "status"
    CURRENT_NODE = "current_node"
    NODE_STATE = "node_state"
    LOG = "log"
    EXECUTION_DATA = "execution_data"
    SPEED = "speed"
    RESET = "reset"


class NodeExecutionState(BaseModel):
    """Per-node record for the current run."""

    node_id: str
    status: NodeStatus = NodeStatus.IDLE
    started_at: datetime | None = None
    completed_at: datetime | None = None
    input: Any = None
    output: Any = None
    error: str | None = None

    @property
    def duration_ms(self) -> int | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return int((self.completed_at - self.started_at).total_seconds() * 1000)


class ExecutionLog(BaseModel):
    """Immutable entry in the run log."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=_utc_now)
    node_id: str
    node_name: str
    status: NodeStatus
    message: str
    input: Any = None
    output: Any = None
    error: str | None = None
    duration_ms: int | None = None


Subscriber = Callable[[StoreEvent, Any], None]


class ExecutionStore(BaseModel):
    """Observable state of one run.

    Status transitions are guarded the same way for every caller: pause only
    from running, resume only from paused. Everything else is set as asked.
    """

    status: ExecutionStatus = ExecutionStatus.IDLE
    current_node_id: str | None = None
    node_states: dict[str, NodeExecutionState] = Field(default_factory=dict)
    logs: list[ExecutionLog] = Field(default_factory=list)
    execution_data: dict[str, Any] = Field(default_factory=dict)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    execution_speed: int = Field(default=1000, ge=0)  # ms between steps

    _subscribers: list[Subscriber] = PrivateAttr(default_factory=list)

    # ========== Subscriptions ==========

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a change observer. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _emit(self, event: StoreEvent, payload: Any = None) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event, payload)
            except Exception as e:
                logger.warning(f"Execution store subscriber failed on {event.value}: {e}")

    # ========== Getters ==========

    @property
    def is_running(self) -> bool:
        return self.status == ExecutionStatus.RUNNING

    @property
    def is_paused(self) -> bool:
        return self.status == ExecutionStatus.PAUSED

    @property
    def is_completed(self) -> bool:
        return self.status == ExecutionStatus.COMPLETED

    @property
    def is_error(self) -> bool:
        return self.status == ExecutionStatus.ERROR

    def get_node_status(self, node_id: str) -> NodeStatus:
        state = self.node_states.get(node_id)
        return state.status if state else NodeStatus.IDLE

    # ========== Actions ==========

    def _set_status(self, status: ExecutionStatus) -> None:
        self.status = status
        self._emit(StoreEvent.STATUS, status)

    def start_execution(self) -> None:
        self.started_at = _utc_now()
        self.completed_at = None
        self.logs = []
        self.execution_data = {}
        self._set_status(ExecutionStatus.RUNNING)

    def pause_execution(self) -> None:
        if self.status == ExecutionStatus.RUNNING:
            self._set_status(ExecutionStatus.PAUSED)

    def resume_execution(self) -> None:
        if self.status == ExecutionStatus.PAUSED:
            self._set_status(ExecutionStatus.RUNNING)

    def stop_execution(self) -> None:
        self.current_node_id = None
        self.completed_at = _utc_now()
        self._set_status(ExecutionStatus.IDLE)

    def complete_execution(self) -> None:
        self.current_node_id = None
        self.completed_at = _utc_now()
        self._set_status(ExecutionStatus.COMPLETED)

    def set_error(self) -> None:
        self.completed_at = _utc_now()
        self._set_status(ExecutionStatus.ERROR)

    def set_current_node(self, node_id: str | None) -> None:
        self.current_node_id = node_id
        self._emit(StoreEvent.CURRENT_NODE, node_id)

    def set_node_state(self, node_id: str, **changes: Any) -> NodeExecutionState:
        """Merge changes into a node's state, creating it if needed."""
        current = self.node_states.get(node_id) or NodeExecutionState(node_id=node_id)
        state = current.model_copy(update=changes)
        self.node_states[node_id] = state
        self._emit(StoreEvent.NODE_STATE, state)
        return state

    def add_log(
        self,
        node_id: str,
        node_name: str,
        status: NodeStatus,
        message: str,
        **details: Any,
    ) -> ExecutionLog:
        """Append a log entry; id and timestamp are assigned here."""
        entry = ExecutionLog(
            node_id=node_id, node_name=node_name, status=status, message=message, **details
        )
        self.logs.append(entry)
        self._emit(StoreEvent.LOG, entry)
        return entry

    def set_execution_data(self, node_id: str, data: Any) -> None:
        self.execution_data[node_id] = data
        self._emit(StoreEvent.EXECUTION_DATA, {"node_id": node_id, "data": data})

    def set_execution_speed(self, speed_ms: int) -> None:
        if speed_ms < 0:
            raise ValueError(f"Execution speed must be >= 0, got {speed_ms}")
        self.execution_speed = int(speed_ms)
        self._emit(StoreEvent.SPEED, self.execution_speed)

    def reset(self) -> None:
        """Clear everything except the execution speed."""
        self.status = ExecutionStatus.IDLE
        self.current_node_id = None
        self.node_states = {}
        self.logs = []
        self.execution_data = {}
        self.started_at = None
        self.completed_at = None
        self._emit(StoreEvent.RESET)

    def snapshot(self) -> dict[str, Any]:
        """JSON-compatible view of the whole store."""
        return self.model_dump(mode="json")
