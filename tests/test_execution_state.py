"""Tests for the execution state store."""

import logging
from datetime import timedelta

import pytest

from flowrun.core.execution_state import (
    ExecutionStatus,
    ExecutionStore,
    NodeExecutionState,
    NodeStatus,
    StoreEvent,
    _utc_now,
)


class TestStatusTransitions:
    """Tests for guarded status changes."""

    def test_initial_state(self, store):
        assert store.status == ExecutionStatus.IDLE
        assert not store.is_running
        assert store.get_node_status("anything") == NodeStatus.IDLE

    def test_start_clears_previous_run(self, store):
        store.add_log("n", "N", NodeStatus.SUCCESS, "done")
        store.set_execution_data("n", {"x": 1})
        store.start_execution()

        assert store.is_running
        assert store.logs == []
        assert store.execution_data == {}
        assert store.started_at is not None

    def test_pause_only_from_running(self, store):
        store.pause_execution()
        assert store.status == ExecutionStatus.IDLE

        store.start_execution()
        store.pause_execution()
        assert store.is_paused

    def test_resume_only_from_paused(self, store):
        store.resume_execution()
        assert store.status == ExecutionStatus.IDLE

        store.start_execution()
        store.pause_execution()
        store.resume_execution()
        assert store.is_running

    def test_stop_returns_to_idle(self, store):
        store.start_execution()
        store.set_current_node("a")
        store.stop_execution()

        assert store.status == ExecutionStatus.IDLE
        assert store.current_node_id is None
        assert store.completed_at is not None

    def test_complete_and_error(self, store):
        store.start_execution()
        store.complete_execution()
        assert store.is_completed

        store.start_execution()
        store.set_error()
        assert store.is_error


class TestNodeStateAndLogs:
    def test_set_node_state_merges(self, store):
        store.set_node_state("a", status=NodeStatus.RUNNING, input={"x": 1})
        store.set_node_state("a", status=NodeStatus.SUCCESS, output={"y": 2})

        state = store.node_states["a"]
        assert state.status == NodeStatus.SUCCESS
        assert state.input == {"x": 1}
        assert state.output == {"y": 2}
        assert store.get_node_status("a") == NodeStatus.SUCCESS

    def test_duration(self):
        state = NodeExecutionState(node_id="a")
        assert state.duration_ms is None

        started = _utc_now()
        state = state.model_copy(
            update={"started_at": started, "completed_at": started + timedelta(milliseconds=250)}
        )
        assert state.duration_ms == 250

    def test_logs_are_appended_with_ids(self, store):
        first = store.add_log("a", "A", NodeStatus.SUCCESS, "ok", duration_ms=5)
        second = store.add_log("b", "B", NodeStatus.ERROR, "bad", error="boom")

        assert [log.node_id for log in store.logs] == ["a", "b"]
        assert first.id != second.id
        assert first.duration_ms == 5
        assert second.error == "boom"
        assert first.timestamp <= second.timestamp

    def test_speed(self, store):
        store.set_execution_speed(250)
        assert store.execution_speed == 250
        with pytest.raises(ValueError):
            store.set_execution_speed(-1)

    def test_reset_keeps_speed(self, store):
        store.set_execution_speed(300)
        store.start_execution()
        store.set_node_state("a", status=NodeStatus.SUCCESS)
        store.add_log("a", "A", NodeStatus.SUCCESS, "ok")
        store.reset()

        assert store.status == ExecutionStatus.IDLE
        assert store.node_states == {}
        assert store.logs == []
        assert store.started_at is None
        assert store.execution_speed == 300

    def test_snapshot_is_json_compatible(self, store):
        store.start_execution()
        store.set_node_state("a", status=NodeStatus.SUCCESS)
        snap = store.snapshot()

        assert snap["status"] == "running"
        assert snap["node_states"]["a"]["status"] == "success"
        assert isinstance(snap["started_at"], str)


class TestSubscriptions:
    def test_events_delivered_in_order(self, store):
        events = []
        store.subscribe(lambda event, payload: events.append(event))

        store.start_execution()
        store.set_current_node("a")
        store.set_node_state("a", status=NodeStatus.RUNNING)
        store.add_log("a", "A", NodeStatus.RUNNING, "started")
        store.set_execution_data("a", {})
        store.set_execution_speed(10)
        store.reset()

        assert events == [
            StoreEvent.STATUS,
            StoreEvent.CURRENT_NODE,
            StoreEvent.NODE_STATE,
            StoreEvent.LOG,
            StoreEvent.EXECUTION_DATA,
            StoreEvent.SPEED,
            StoreEvent.RESET,
        ]

    def test_unsubscribe(self, store):
        events = []
        unsubscribe = store.subscribe(lambda event, payload: events.append(event))
        unsubscribe()
        unsubscribe()
        store.start_execution()
        assert events == []

    def test_failing_subscriber_is_isolated(self, store, caplog):
        """One broken observer does not stop the others or the store."""
        seen = []

        def broken(event, payload):
            raise RuntimeError("observer bug")

        store.subscribe(broken)
        store.subscribe(lambda event, payload: seen.append(payload))

        with caplog.at_level(logging.WARNING, logger="flowrun.core.execution_state"):
            store.start_execution()

        assert store.is_running
        assert seen == [ExecutionStatus.RUNNING]
        assert "observer bug" in caplog.text

    def test_store_stands_alone(self):
        """Stores are independent objects, not process-wide singletons."""
        first, second = ExecutionStore(), ExecutionStore()
        first.start_execution()
        assert second.status == ExecutionStatus.IDLE
