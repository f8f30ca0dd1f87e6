"""
Run Context - Mutable state owned by exactly one run.

Holds variable bindings, per-node visit counts, outstanding human-input
suspensions, in-flight node execution records and the run status. Parallel
branches and loop iterations write through child ``BindingScope``s so their
outputs stay isolated until the owning construct commits them.

Once the status reaches a terminal value the context is frozen: further
writes raise ``RuntimeError``.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pathway.errors import RunCancelled

logger = logging.getLogger(__name__)

_MISSING = object()


def utc_now() -> datetime:
    return datetime.now(UTC)


class RunStatus(StrEnum):
    """Status of a run."""

    IDLE = "idle"
    RUNNING = "running"
    SUSPENDED = "suspended"  # At least one node awaits human input
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


_TRANSITIONS: dict[RunStatus, set[RunStatus]] = {
    RunStatus.IDLE: {RunStatus.RUNNING, RunStatus.FAILED, RunStatus.CANCELLED},
    RunStatus.RUNNING: {
        RunStatus.SUSPENDED,
        RunStatus.COMPLETED,
        RunStatus.FAILED,
        RunStatus.CANCELLED,
    },
    RunStatus.SUSPENDED: {RunStatus.RUNNING, RunStatus.FAILED, RunStatus.CANCELLED},
}


class NodeState(StrEnum):
    """State of one node dispatch."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"


@dataclass
class NodeExecutionRecord:
    """One dispatch of one node. Ephemeral: folded into bindings on completion."""

    node_id: str
    attempt: int
    iteration: tuple[int, ...] = ()
    state: NodeState = NodeState.PENDING
    started_at: datetime | None = None
    finished_at: datetime | None = None
    result: Any = None
    error: str | None = None

    @property
    def key(self) -> str:
        """Dispatch identity: node id plus the enclosing loop iteration indices."""
        if not self.iteration:
            return f"{self.node_id}#{self.attempt}"
        return f"{self.node_id}@{'.'.join(map(str, self.iteration))}#{self.attempt}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodeId": self.node_id,
            "attempt": self.attempt,
            "iteration": list(self.iteration),
            "state": str(self.state),
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
        }


@dataclass
class PendingInput:
    """A node suspended awaiting human input."""

    node_id: str
    reason: str
    deadline: datetime | None
    request: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    future: asyncio.Future | None = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodeId": self.node_id,
            "reason": self.reason,
            "deadline": self.deadline.isoformat() if self.deadline else None,
            "request": self.request,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass
class RunFailure:
    """Human-readable failure reason and the failing node."""

    node_id: str | None
    reason: str
    error_type: str

    def to_dict(self) -> dict[str, Any]:
        return {"nodeId": self.node_id, "reason": self.reason, "errorType": self.error_type}


class BindingScope:
    """
    Layered variable bindings.

    Reads fall through to the parent scope; writes stay local until
    ``commit()`` copies them into the parent. The root scope of a run is
    frozen when the run terminates.
    """

    def __init__(self, parent: "BindingScope | None" = None, initial: dict[str, Any] | None = None):
        self.parent = parent
        self._values: dict[str, Any] = dict(initial or {})
        self._frozen = False

    @property
    def frozen(self) -> bool:
        scope: BindingScope | None = self
        while scope is not None:
            if scope._frozen:
                return True
            scope = scope.parent
        return False

    def read(self, key: str, default: Any = None) -> Any:
        scope: BindingScope | None = self
        while scope is not None:
            if key in scope._values:
                return scope._values[key]
            scope = scope.parent
        return default

    def has(self, key: str) -> bool:
        return self.read(key, _MISSING) is not _MISSING

    def write(self, key: str, value: Any) -> None:
        if self.frozen:
            raise RuntimeError(f"Cannot write '{key}': run context is immutable")
        self._values[key] = value

    def child(self) -> "BindingScope":
        return BindingScope(parent=self)

    def local(self) -> dict[str, Any]:
        """Values written in this scope only."""
        return dict(self._values)

    def commit(self) -> None:
        """Copy this scope's writes into the parent."""
        if self.parent is None:
            return
        for key, value in self._values.items():
            self.parent.write(key, value)

    def snapshot(self) -> dict[str, Any]:
        """All visible bindings, nearest scope winning."""
        merged = self.parent.snapshot() if self.parent is not None else {}
        merged.update(self._values)
        return merged

    def freeze(self) -> None:
        self._frozen = True


class RunContext:
    """
    State of one run.

    Example:
        ctx = RunContext(run_id="run_1", graph_id="reading", initial_bindings={"elpaLevel": 2})
        ctx.start()
        ctx.record_visit("route")
        ctx.write("route", {"selectedRoute": "a"})
    """

    def __init__(
        self,
        run_id: str,
        graph_id: str,
        initial_bindings: dict[str, Any] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.run_id = run_id
        self.graph_id = graph_id
        self.clock = clock
        self.initial_bindings = dict(initial_bindings or {})
        self.bindings = BindingScope(initial=self.initial_bindings)
        self.visited: dict[str, int] = {}
        self.path: list[str] = []
        self.pending: dict[str, PendingInput] = {}
        self.in_flight: dict[str, NodeExecutionRecord] = {}
        self.history: list[NodeExecutionRecord] = []
        self.status = RunStatus.IDLE
        self.failure: RunFailure | None = None
        self.output: Any = None
        self.created_at = clock()
        self.started_at: datetime | None = None
        self.finished_at: datetime | None = None

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def _transition(self, new_status: RunStatus) -> None:
        if new_status == self.status:
            return
        if new_status not in _TRANSITIONS.get(self.status, set()):
            raise RuntimeError(f"Run {self.run_id}: illegal transition {self.status} -> {new_status}")
        logger.debug(f"Run {self.run_id}: {self.status} -> {new_status}")
        self.status = new_status

    def start(self) -> None:
        self._transition(RunStatus.RUNNING)
        self.started_at = self.clock()

    def complete(self, output: Any = None) -> None:
        if self.pending:
            raise RuntimeError(f"Run {self.run_id} cannot complete with pending input")
        self._transition(RunStatus.COMPLETED)
        self.output = output
        self._finish()

    def fail(self, node_id: str | None, error: BaseException | str) -> None:
        if isinstance(error, str):
            reason, error_type = error, "ExecutionError"
        else:
            reason, error_type = str(error) or type(error).__name__, type(error).__name__
        self._transition(RunStatus.FAILED)
        self.failure = RunFailure(node_id=node_id, reason=reason, error_type=error_type)
        self._release()
        self._finish()

    def cancel(self) -> None:
        """Cancel the run: every in-flight and pending node becomes Cancelled."""
        self._transition(RunStatus.CANCELLED)
        error = RunCancelled(self.run_id)
        self.failure = RunFailure(node_id=None, reason=str(error), error_type=type(error).__name__)
        self._release()
        self._finish()

    def _release(self) -> None:
        """Cancel whatever is still in flight or waiting for input."""
        for record in self.in_flight.values():
            record.state = NodeState.CANCELLED
            record.finished_at = self.clock()
            self.history.append(record)
        self.in_flight.clear()
        for pending in self.pending.values():
            if pending.future is not None and not pending.future.done():
                pending.future.cancel()
        self.pending.clear()

    def _finish(self) -> None:
        self.finished_at = self.clock()
        self.bindings.freeze()

    # ------------------------------------------------------------------
    # Bindings
    # ------------------------------------------------------------------

    def read(self, node_id: str, default: Any = None) -> Any:
        return self.bindings.read(node_id, default)

    def write(self, node_id: str, value: Any) -> None:
        self.bindings.write(node_id, value)

    def record_visit(self, node_id: str) -> int:
        if self.is_terminal:
            raise RuntimeError(f"Run {self.run_id} is {self.status}; no further dispatch")
        self.visited[node_id] = self.visited.get(node_id, 0) + 1
        self.path.append(node_id)
        return self.visited[node_id]

    # ------------------------------------------------------------------
    # Execution records
    # ------------------------------------------------------------------

    def open_record(self, node_id: str, attempt: int, iteration: tuple[int, ...] = ()) -> NodeExecutionRecord:
        record = NodeExecutionRecord(
            node_id=node_id,
            attempt=attempt,
            iteration=iteration,
            state=NodeState.RUNNING,
            started_at=self.clock(),
        )
        self.in_flight[record.key] = record
        return record

    def close_record(
        self,
        record: NodeExecutionRecord,
        state: NodeState,
        result: Any = None,
        error: str | None = None,
    ) -> None:
        record.state = state
        record.result = result
        record.error = error
        record.finished_at = self.clock()
        self.in_flight.pop(record.key, None)
        self.history.append(record)

    # ------------------------------------------------------------------
    # Suspension
    # ------------------------------------------------------------------

    def suspend(
        self,
        node_id: str,
        reason: str,
        deadline: datetime | None,
        request: dict[str, Any] | None = None,
    ) -> PendingInput:
        """Record a pending human input and move the run to Suspended."""
        if self.is_terminal:
            raise RuntimeError(f"Run {self.run_id} is {self.status}; cannot suspend")
        pending = PendingInput(
            node_id=node_id,
            reason=reason,
            deadline=deadline,
            request=dict(request or {}),
            created_at=self.clock(),
            future=asyncio.get_running_loop().create_future(),
        )
        self.pending[node_id] = pending
        self._transition(RunStatus.SUSPENDED)
        return pending

    def resume(self, node_id: str, value: Any) -> bool:
        """Deliver input for a pending node. Returns False if nothing is pending."""
        pending = self.pending.pop(node_id, None)
        if pending is None:
            return False
        if pending.future is not None and not pending.future.done():
            pending.future.set_result(value)
        if not self.pending and self.status == RunStatus.SUSPENDED:
            self._transition(RunStatus.RUNNING)
        return True

    def expire(self, node_id: str) -> PendingInput | None:
        """Drop a pending input whose deadline passed."""
        pending = self.pending.pop(node_id, None)
        if pending is not None and not self.pending and self.status == RunStatus.SUSPENDED:
            self._transition(RunStatus.RUNNING)
        return pending

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "graphId": self.graph_id,
            "status": str(self.status),
            "bindings": self.bindings.snapshot(),
            "visited": dict(self.visited),
            "path": list(self.path),
            "pending": [p.to_dict() for p in self.pending.values()],
            "inFlight": [r.to_dict() for r in self.in_flight.values()],
            "nodeExecutions": [r.to_dict() for r in self.history],
            "output": self.output,
            "failure": self.failure.to_dict() if self.failure else None,
            "createdAt": self.created_at.isoformat(),
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
        }
