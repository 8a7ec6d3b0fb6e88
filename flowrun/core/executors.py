"""Node executors.

One simulation policy per node type. Each policy is an async function of
(node, input_data, context) returning a NodeExecutionResult that names the
output handles it fired. Nothing here performs real I/O: requests, emails
and SMS deliveries are simulated with configurable success rates, and delay
nodes wait for a clamped, cancellable duration.

A simulated failure is a normal outcome routed to the `error` handle. Only
unexpected exceptions escape; the run controller records those.
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from flowrun.config import EngineSettings
from flowrun.core.graph_schema import (
    ConditionNode,
    DelayNode,
    HttpRequestNode,
    ManualTriggerNode,
    Node,
    SendEmailNode,
    SendSmsNode,
    Transformation,
    TransformNode,
    WebhookTriggerNode,
)
from flowrun.core.node_registry import NodeType

logger = logging.getLogger(__name__)

NODE_NOT_FOUND = "Node not found"

UNIT_MS = {
    "seconds": 1000,
    "minutes": 60 * 1000,
    "hours": 60 * 60 * 1000,
}


def _utc_now() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class NodeExecutionResult:
    """Outcome of executing a single node."""

    success: bool
    output: Any = None
    error: str | None = None
    active_output_handles: list[str] = field(default_factory=list)


def node_not_found() -> NodeExecutionResult:
    return NodeExecutionResult(success=False, error=NODE_NOT_FOUND, active_output_handles=[])


class ExecutionContext:
    """What an executor may use besides its node and input.

    Holds the engine settings, the random source for simulated outcomes and
    the run's stop event. Executors must wait through sleep() so that a stop
    cuts the wait short.
    """

    def __init__(
        self,
        settings: EngineSettings | None = None,
        rng: random.Random | None = None,
        stop_event: asyncio.Event | None = None,
    ):
        self.settings = settings or EngineSettings()
        self.rng = rng or random.Random(self.settings.random_seed)
        self.stop_event = stop_event or asyncio.Event()

    async def sleep(self, seconds: float) -> bool:
        """Wait up to `seconds`. Returns False if interrupted by a stop."""
        if self.stop_event.is_set():
            return False
        if seconds <= 0:
            return True
        try:
            await asyncio.wait_for(self.stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return True
        return False

    def roll(self, success_rate: float) -> bool:
        """Decide a simulated outcome."""
        return self.rng.random() < success_rate


# ========== Value helpers ==========


def get_value_by_path(data: Any, path: str | None) -> Any:
    """Look up a dot path ("user.address.city") in nested dicts.

    An empty path returns the data itself. Missing keys and non-dict
    intermediates yield None.
    """
    if not path:
        return data
    current = data
    for key in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def _to_number(value: Any) -> float | int:
    """Numeric coercion; NaN when the value has no numeric reading."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0
        try:
            return int(text)
        except ValueError:
            pass
        try:
            return float(text)
        except ValueError:
            return math.nan
    return math.nan


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _values_equal(actual: Any, expected: Any) -> bool:
    """Strict equality, falling back to comparing string forms.

    The fallback lets a form-entered "1" match a numeric 1 in the data.
    """
    if isinstance(actual, bool) == isinstance(expected, bool) and actual == expected:
        return True
    if actual is None or expected is None:
        return actual is expected
    return _to_text(actual) == _to_text(expected)


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or (isinstance(value, (list, dict)) and not value)


def evaluate_condition(expression: str, operator: str, value: Any, input_data: Any) -> bool:
    """Evaluate `<input at expression> <operator> <value>`.

    Unknown operators fall back to the truthiness of the looked-up value.
    """
    actual = get_value_by_path(input_data, expression)

    if operator == "equals":
        return _values_equal(actual, value)
    if operator == "not_equals":
        return not _values_equal(actual, value)
    if operator in ("greater_than", "less_than", "greater_than_or_equals", "less_than_or_equals"):
        left, right = _to_number(actual), _to_number(value)
        if math.isnan(left) or math.isnan(right):
            return False
        if operator == "greater_than":
            return left > right
        if operator == "less_than":
            return left < right
        if operator == "greater_than_or_equals":
            return left >= right
        return left <= right
    if operator in ("contains", "not_contains"):
        if isinstance(actual, list):
            found = any(_values_equal(item, value) for item in actual)
        else:
            found = _to_text(value) in _to_text(actual)
        return found if operator == "contains" else not found
    if operator == "starts_with":
        return _to_text(actual).startswith(_to_text(value))
    if operator == "ends_with":
        return _to_text(actual).endswith(_to_text(value))
    if operator == "is_empty":
        return _is_empty(actual)
    if operator == "is_not_empty":
        return not _is_empty(actual)
    if operator == "is_true":
        return actual is True or actual == "true"
    if operator == "is_false":
        return actual is False or actual == "false"

    return bool(actual)


def apply_transformation(current: Any, operation: str, value: Any) -> Any:
    """Apply one value-level operation. Unknown operations return `current`."""
    if operation == "set":
        return value
    if operation in ("append", "concat"):
        return _to_text(current) + _to_text(value)
    if operation == "prepend":
        return _to_text(value) + _to_text(current)
    if operation == "uppercase":
        return _to_text(current).upper()
    if operation == "lowercase":
        return _to_text(current).lower()
    if operation == "trim":
        return _to_text(current).strip()
    if operation == "split":
        separator = _to_text(value) or ","
        return _to_text(current).split(separator)
    if operation == "replace":
        search, _, replacement = _to_text(value).partition("|")
        return _to_text(current).replace(search, replacement, 1)
    if operation == "increment":
        return _to_number(0 if current is None else current) + _to_number(1 if value is None else value)
    if operation == "decrement":
        return _to_number(0 if current is None else current) - _to_number(1 if value is None else value)
    if operation == "add":
        return _to_number(0 if current is None else current) + _to_number(0 if value is None else value)
    if operation == "subtract":
        return _to_number(0 if current is None else current) - _to_number(0 if value is None else value)
    if operation == "multiply":
        return _to_number(0 if current is None else current) * _to_number(1 if value is None else value)
    if operation == "divide":
        divisor = _to_number(1 if value is None else value)
        if divisor == 0:
            return 0
        return _to_number(0 if current is None else current) / divisor
    return current


def transform_data(input_data: dict[str, Any], transformations: list[Transformation]) -> dict[str, Any]:
    """Apply transformations in order to a shallow copy of the input."""
    data = dict(input_data)
    for t in transformations:
        if t.operation == "delete":
            data.pop(t.field, None)
        elif t.operation == "rename":
            new_name = _to_text(t.value)
            if new_name and t.field in data:
                data[new_name] = data.pop(t.field)
        else:
            data[t.field] = apply_transformation(data.get(t.field), t.operation, t.value)
    return data


def delay_to_ms(duration: Any, unit: str, max_delay_ms: int) -> int:
    """Convert a configured delay to milliseconds, clamped to [0, max_delay_ms]."""
    amount = _to_number(duration)
    if math.isnan(amount):
        amount = 0
    ms = amount * UNIT_MS.get(unit, UNIT_MS["seconds"])
    return int(min(max(ms, 0), max_delay_ms))


# ========== Trigger policies ==========


async def execute_manual_trigger(
    node: ManualTriggerNode, input_data: dict[str, Any], context: ExecutionContext
) -> NodeExecutionResult:
    return NodeExecutionResult(
        success=True,
        output={
            "triggered": True,
            "trigger_name": node.config.name,
            "timestamp": _utc_now(),
        },
        active_output_handles=["output"],
    )


async def execute_webhook_trigger(
    node: WebhookTriggerNode, input_data: dict[str, Any], context: ExecutionContext
) -> NodeExecutionResult:
    return NodeExecutionResult(
        success=True,
        output={
            "triggered": True,
            "method": node.config.method,
            "url": node.config.url,
            "body": {"sample_data": "webhook payload", "timestamp": _utc_now()},
            "headers": dict(node.config.headers or {}),
        },
        active_output_handles=["output"],
    )


# ========== Action policies ==========


async def execute_http_request(
    node: HttpRequestNode, input_data: dict[str, Any], context: ExecutionContext
) -> NodeExecutionResult:
    config = node.config
    if not context.roll(context.settings.http_success_rate):
        return NodeExecutionResult(
            success=False,
            error="Simulated HTTP error: Connection timeout",
            active_output_handles=["error"],
        )
    return NodeExecutionResult(
        success=True,
        output={
            "request": {
                "url": config.url,
                "method": config.method,
                "headers": dict(config.headers or {}),
                "body": config.body,
            },
            "response": {
                "status": 200,
                "status_text": "OK",
                "headers": {"content-type": "application/json"},
                "data": {"message": "Mock API response", "timestamp": _utc_now()},
            },
            "input_data": input_data,
        },
        active_output_handles=["output"],
    )


async def execute_send_email(
    node: SendEmailNode, input_data: dict[str, Any], context: ExecutionContext
) -> NodeExecutionResult:
    config = node.config
    if not context.roll(context.settings.messaging_success_rate):
        return NodeExecutionResult(
            success=False,
            error="Simulated email error: Invalid recipient address",
            active_output_handles=["error"],
        )
    return NodeExecutionResult(
        success=True,
        output={
            "email": {
                "to": config.to,
                "subject": config.subject,
                "body": config.body,
                "cc": config.cc,
            },
            "result": {
                "message_id": f"msg-{int(time.time() * 1000)}",
                "accepted": [config.to] if config.to else [],
                "rejected": [],
            },
            "input_data": input_data,
        },
        active_output_handles=["success"],
    )


async def execute_send_sms(
    node: SendSmsNode, input_data: dict[str, Any], context: ExecutionContext
) -> NodeExecutionResult:
    config = node.config
    if not context.roll(context.settings.messaging_success_rate):
        return NodeExecutionResult(
            success=False,
            error="Simulated SMS error: Invalid phone number",
            active_output_handles=["error"],
        )
    return NodeExecutionResult(
        success=True,
        output={
            "sms": {"to": config.phone_number, "message": config.message},
            "result": {
                "sid": f"SM{int(time.time() * 1000)}",
                "status": "sent",
                "to": config.phone_number,
            },
            "input_data": input_data,
        },
        active_output_handles=["success"],
    )


async def execute_delay(
    node: DelayNode, input_data: dict[str, Any], context: ExecutionContext
) -> NodeExecutionResult:
    config = node.config
    actual_ms = delay_to_ms(config.duration, config.unit, context.settings.max_delay_ms)
    await context.sleep(actual_ms / 1000)
    return NodeExecutionResult(
        success=True,
        output={
            "delayed_for": {
                "configured": {"duration": config.duration, "unit": config.unit},
                "actual_ms": actual_ms,
            },
            "timestamp": _utc_now(),
        },
        active_output_handles=["output"],
    )


# ========== Logic policies ==========


async def execute_condition(
    node: ConditionNode, input_data: dict[str, Any], context: ExecutionContext
) -> NodeExecutionResult:
    config = node.config
    result = evaluate_condition(config.expression, config.operator, config.value, input_data)
    return NodeExecutionResult(
        success=True,
        output={
            "condition": {
                "expression": config.expression,
                "operator": config.operator,
                "value": config.value,
                "result": result,
            },
            "input_data": input_data,
        },
        active_output_handles=["true" if result else "false"],
    )


async def execute_transform(
    node: TransformNode, input_data: dict[str, Any], context: ExecutionContext
) -> NodeExecutionResult:
    transformations = node.config.transformations
    return NodeExecutionResult(
        success=True,
        output={
            "original": input_data,
            "transformed": transform_data(input_data, transformations),
            "transformations": [t.model_dump() for t in transformations],
        },
        active_output_handles=["output"],
    )


# ========== Dispatch ==========

Executor = Callable[[Any, dict[str, Any], ExecutionContext], Awaitable[NodeExecutionResult]]

EXECUTORS: dict[NodeType, tuple[type, Executor]] = {
    NodeType.MANUAL_TRIGGER: (ManualTriggerNode, execute_manual_trigger),
    NodeType.WEBHOOK_TRIGGER: (WebhookTriggerNode, execute_webhook_trigger),
    NodeType.HTTP_REQUEST: (HttpRequestNode, execute_http_request),
    NodeType.SEND_EMAIL: (SendEmailNode, execute_send_email),
    NodeType.SEND_SMS: (SendSmsNode, execute_send_sms),
    NodeType.DELAY: (DelayNode, execute_delay),
    NodeType.CONDITION: (ConditionNode, execute_condition),
    NodeType.TRANSFORM: (TransformNode, execute_transform),
}

_missing = set(NodeType) - set(EXECUTORS)
if _missing:
    raise RuntimeError(f"No executor registered for node types: {sorted(t.value for t in _missing)}")


async def execute_node(
    node: Node, input_data: dict[str, Any], context: ExecutionContext
) -> NodeExecutionResult:
    """Run the policy for the node's type.

    A node whose class does not match its declared type, or a type with no
    policy, yields a failed "Node not found" result instead of raising.
    """
    try:
        node_type = NodeType(getattr(node, "type", None))
    except ValueError:
        logger.warning(f"Unknown node type for node {getattr(node, 'id', '?')}")
        return node_not_found()

    entry = EXECUTORS.get(node_type)
    if entry is None or not isinstance(node, entry[0]):
        logger.warning(f"Node {node.id} does not match executor for type {node_type.value}")
        return node_not_found()

    _, executor = entry
    return await executor(node, input_data, context)
