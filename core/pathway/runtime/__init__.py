"""Run state and events. ``WorkflowEngine`` lives in ``pathway.runtime.engine``."""

from pathway.runtime.context import (
    BindingScope,
    NodeExecutionRecord,
    NodeState,
    PendingInput,
    RunContext,
    RunFailure,
    RunStatus,
)
from pathway.runtime.event_bus import EventBus, EventKind, EventStream, RunEvent

__all__ = [
    "RunContext",
    "RunStatus",
    "RunFailure",
    "BindingScope",
    "NodeExecutionRecord",
    "NodeState",
    "PendingInput",
    "EventBus",
    "EventKind",
    "EventStream",
    "RunEvent",
]
