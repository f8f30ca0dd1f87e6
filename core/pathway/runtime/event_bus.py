"""
Event Bus - Ordered lifecycle events for each run.

Each run gets its own single-writer channel: the scheduler publishes, any
number of readers consume. Publishing never blocks the scheduler. Every
reader has a bounded buffer; when a reader falls behind, the oldest buffered
event is dropped and counted (presentation is best-effort). Once a run's
terminal event is published the channel closes and later publishes are
ignored.

Two ways to consume:
- ``stream(run_id)``: async iterator replaying the run's history, then live
  events, ending when the run closes
- ``subscribe(kinds, handler)``: async callback, optionally filtered by run or
  node, delivered in order by a per-subscription task
"""

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventKind(StrEnum):
    """Types of run events."""

    # Run lifecycle
    RUN_STARTED = "run-started"
    RUN_SUSPENDED = "run-suspended"
    RUN_RESUMED = "run-resumed"
    RUN_COMPLETED = "run-completed"
    RUN_FAILED = "run-failed"
    RUN_CANCELLED = "run-cancelled"

    # Node lifecycle
    NODE_STARTED = "node-started"
    NODE_COMPLETED = "node-completed"
    NODE_FAILED = "node-failed"
    NODE_RETRY = "node-retry"
    NODE_PARTIAL_OUTPUT = "node-partial-output"

    # Constructs
    LOOP_ITERATION = "loop-iteration"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_KINDS


TERMINAL_KINDS = frozenset({EventKind.RUN_COMPLETED, EventKind.RUN_FAILED, EventKind.RUN_CANCELLED})


@dataclass
class RunEvent:
    """One event in a run's ordered event sequence."""

    run_id: str
    kind: EventKind
    node_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    sequence: int = 0  # assigned by the bus, strictly increasing per run

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "runId": self.run_id,
            "kind": self.kind.value,
            "nodeId": self.node_id,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
            "sequence": self.sequence,
        }


EventHandler = Callable[[RunEvent], Awaitable[None]]


class EventStream:
    """
    Bounded, drop-oldest async iterator over run events.

    Example:
        async for event in bus.stream(run_id):
            print(event.kind, event.node_id)
    """

    def __init__(self, max_buffer: int = 1000, on_close: Callable[["EventStream"], None] | None = None):
        self._buffer: deque[RunEvent] = deque(maxlen=max_buffer)
        self._wakeup = asyncio.Event()
        self._closed = False
        self._on_close = on_close
        self.dropped = 0

    def push(self, event: RunEvent) -> None:
        if self._closed:
            return
        if len(self._buffer) == self._buffer.maxlen:
            self.dropped += 1
        self._buffer.append(event)
        self._wakeup.set()

    def close(self) -> None:
        """Stop accepting events; buffered events are still delivered."""
        self._closed = True
        self._wakeup.set()

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "EventStream":
        return self

    async def __anext__(self) -> RunEvent:
        while not self._buffer:
            if self._closed:
                raise StopAsyncIteration
            self._wakeup.clear()
            await self._wakeup.wait()
        return self._buffer.popleft()

    async def aclose(self) -> None:
        """Reader-side close: detach from the bus and discard buffered events."""
        self._buffer.clear()
        self.close()
        if self._on_close is not None:
            self._on_close(self)


@dataclass
class Subscription:
    """A handler subscription."""

    id: str
    kinds: set[EventKind]
    handler: EventHandler
    filter_run: str | None = None
    filter_node: str | None = None
    stream: EventStream | None = None
    task: asyncio.Task | None = None


@dataclass
class _RunChannel:
    run_id: str
    history: deque[RunEvent]
    streams: list[EventStream] = field(default_factory=list)
    sequence: int = 0
    closed: bool = False
    dropped_after_close: int = 0


class EventBus:
    """
    Per-run event channels plus handler subscriptions.

    Example:
        bus = EventBus()
        bus.open_run("run_1")
        await bus.emit(EventKind.RUN_STARTED, "run_1", payload={"graphId": "g"})

        async def on_done(event: RunEvent):
            print(f"Run {event.run_id} finished: {event.kind}")

        bus.subscribe(kinds=[EventKind.RUN_COMPLETED], handler=on_done)
    """

    def __init__(self, max_history: int = 1000, buffer_size: int = 1000):
        """
        Initialize event bus.

        Args:
            max_history: Maximum events retained per run for replay
            buffer_size: Per-reader buffer before drop-oldest applies
        """
        self._channels: dict[str, _RunChannel] = {}
        self._subscriptions: dict[str, Subscription] = {}
        self._max_history = max_history
        self._buffer_size = buffer_size
        self._subscription_counter = 0

    # === CHANNELS ===

    def open_run(self, run_id: str) -> None:
        if run_id not in self._channels:
            self._channels[run_id] = _RunChannel(
                run_id=run_id, history=deque(maxlen=self._max_history)
            )

    def close_run(self, run_id: str) -> None:
        channel = self._channels.get(run_id)
        if channel is None or channel.closed:
            return
        channel.closed = True
        for stream in channel.streams:
            stream.close()
        channel.streams.clear()

    def discard_run(self, run_id: str) -> None:
        """Forget a run's history entirely."""
        self.close_run(run_id)
        self._channels.pop(run_id, None)

    def is_open(self, run_id: str) -> bool:
        channel = self._channels.get(run_id)
        return channel is not None and not channel.closed

    def stream(self, run_id: str) -> EventStream:
        """Reader for one run: history first, then live events until the run closes."""
        channel = self._channels.get(run_id)

        def detach(s: EventStream) -> None:
            if channel is not None and s in channel.streams:
                channel.streams.remove(s)

        stream = EventStream(max_buffer=self._buffer_size, on_close=detach)
        if channel is None:
            stream.close()
            return stream
        for event in channel.history:
            stream.push(event)
        if channel.closed:
            stream.close()
        else:
            channel.streams.append(stream)
        return stream

    # === PUBLISHING ===

    async def publish(self, event: RunEvent) -> bool:
        """
        Append ``event`` to its run's sequence and fan it out.

        Returns False (and drops the event) if the run's channel is closed.
        """
        channel = self._channels.get(event.run_id)
        if channel is None:
            self.open_run(event.run_id)
            channel = self._channels[event.run_id]
        if channel.closed:
            channel.dropped_after_close += 1
            logger.debug(f"Dropped {event.kind} for closed run {event.run_id}")
            return False

        channel.sequence += 1
        event.sequence = channel.sequence
        channel.history.append(event)
        for stream in channel.streams:
            stream.push(event)

        for subscription in self._subscriptions.values():
            if self._matches(subscription, event):
                self._deliver(subscription, event)

        if event.kind.is_terminal:
            self.close_run(event.run_id)
        return True

    async def emit(
        self,
        kind: EventKind,
        run_id: str,
        node_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> bool:
        return await self.publish(
            RunEvent(run_id=run_id, kind=kind, node_id=node_id, payload=payload or {})
        )

    # === CONVENIENCE PUBLISHERS ===

    async def emit_run_started(self, run_id: str, graph_id: str, inputs: dict[str, Any]) -> bool:
        """Emit run started event."""
        return await self.emit(
            EventKind.RUN_STARTED, run_id, payload={"graphId": graph_id, "inputs": inputs}
        )

    async def emit_node_started(
        self, run_id: str, node_id: str, node_type: str, attempt: int
    ) -> bool:
        """Emit node started event."""
        return await self.emit(
            EventKind.NODE_STARTED,
            run_id,
            node_id,
            payload={"type": node_type, "attempt": attempt},
        )

    async def emit_node_completed(
        self, run_id: str, node_id: str, output: Any, port: str
    ) -> bool:
        """Emit node completed event."""
        return await self.emit(
            EventKind.NODE_COMPLETED, run_id, node_id, payload={"output": output, "port": port}
        )

    async def emit_node_failed(
        self, run_id: str, node_id: str, error: str, error_type: str
    ) -> bool:
        """Emit node failed event."""
        return await self.emit(
            EventKind.NODE_FAILED,
            run_id,
            node_id,
            payload={"error": error, "errorType": error_type},
        )

    async def emit_node_retry(
        self, run_id: str, node_id: str, attempt: int, model: str, error: str, delay: float
    ) -> bool:
        """Emit node retry event."""
        return await self.emit(
            EventKind.NODE_RETRY,
            run_id,
            node_id,
            payload={"attempt": attempt, "model": model, "error": error, "delaySeconds": delay},
        )

    async def emit_partial_output(
        self, run_id: str, node_id: str, content: str, snapshot: str
    ) -> bool:
        """Emit a streamed chunk of node output."""
        return await self.emit(
            EventKind.NODE_PARTIAL_OUTPUT,
            run_id,
            node_id,
            payload={"content": content, "snapshot": snapshot},
        )

    async def emit_loop_iteration(
        self, run_id: str, node_id: str, iteration: int, payload: dict[str, Any] | None = None
    ) -> bool:
        """Emit loop iteration event."""
        return await self.emit(
            EventKind.LOOP_ITERATION,
            run_id,
            node_id,
            payload={"iteration": iteration, **(payload or {})},
        )

    async def emit_run_suspended(
        self, run_id: str, node_id: str, reason: str, deadline: datetime | None, request: dict
    ) -> bool:
        """Emit run suspended event."""
        return await self.emit(
            EventKind.RUN_SUSPENDED,
            run_id,
            node_id,
            payload={
                "reason": reason,
                "deadline": deadline.isoformat() if deadline else None,
                "request": request,
            },
        )

    async def emit_run_resumed(
        self, run_id: str, node_id: str, value: Any, timed_out: bool = False
    ) -> bool:
        """Emit run resumed event."""
        return await self.emit(
            EventKind.RUN_RESUMED,
            run_id,
            node_id,
            payload={"value": value, "timedOut": timed_out},
        )

    async def emit_run_completed(self, run_id: str, output: Any, path: list[str]) -> bool:
        """Emit run completed event."""
        return await self.emit(
            EventKind.RUN_COMPLETED, run_id, payload={"output": output, "path": path}
        )

    async def emit_run_failed(
        self, run_id: str, node_id: str | None, reason: str, error_type: str
    ) -> bool:
        """Emit run failed event."""
        return await self.emit(
            EventKind.RUN_FAILED,
            run_id,
            node_id,
            payload={"reason": reason, "errorType": error_type},
        )

    async def emit_run_cancelled(self, run_id: str) -> bool:
        """Emit run cancelled event."""
        return await self.emit(EventKind.RUN_CANCELLED, run_id)

    # === HANDLER SUBSCRIPTIONS ===

    def subscribe(
        self,
        kinds: list[EventKind] | None,
        handler: EventHandler,
        filter_run: str | None = None,
        filter_node: str | None = None,
    ) -> str:
        """
        Subscribe a handler to events.

        Args:
            kinds: Kinds of events to receive (None for all)
            handler: Async function called for each matching event, in order
            filter_run: Only receive events from this run
            filter_node: Only receive events from this node

        Returns:
            Subscription ID (use to unsubscribe)
        """
        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"
        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            kinds=set(kinds) if kinds else set(EventKind),
            handler=handler,
            filter_run=filter_run,
            filter_node=filter_node,
        )
        logger.debug(f"Subscription {sub_id} registered for {kinds or 'all events'}")
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """Remove a subscription. Returns True if it existed."""
        subscription = self._subscriptions.pop(subscription_id, None)
        if subscription is None:
            return False
        if subscription.stream is not None:
            subscription.stream.close()
        logger.debug(f"Subscription {subscription_id} removed")
        return True

    def _matches(self, subscription: Subscription, event: RunEvent) -> bool:
        if event.kind not in subscription.kinds:
            return False
        if subscription.filter_run and subscription.filter_run != event.run_id:
            return False
        if subscription.filter_node and subscription.filter_node != event.node_id:
            return False
        return True

    def _deliver(self, subscription: Subscription, event: RunEvent) -> None:
        if subscription.stream is None:
            subscription.stream = EventStream(max_buffer=self._buffer_size)
            subscription.task = asyncio.create_task(
                self._pump(subscription), name=f"event-handler-{subscription.id}"
            )
        subscription.stream.push(event)

    async def _pump(self, subscription: Subscription) -> None:
        assert subscription.stream is not None
        async for event in subscription.stream:
            try:
                await subscription.handler(event)
            except Exception as e:
                logger.error(f"Handler error for {event.kind}: {e}")

    async def close(self) -> None:
        """Close every channel and stop handler tasks after they drain."""
        for run_id in list(self._channels):
            self.close_run(run_id)
        tasks = []
        for subscription in self._subscriptions.values():
            if subscription.stream is not None:
                subscription.stream.close()
            if subscription.task is not None:
                tasks.append(subscription.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # === QUERY OPERATIONS ===

    def events(self, run_id: str) -> list[RunEvent]:
        """A run's retained events in sequence order."""
        channel = self._channels.get(run_id)
        return list(channel.history) if channel else []

    def get_stats(self) -> dict:
        """Get event bus statistics."""
        kind_counts: dict[str, int] = {}
        for channel in self._channels.values():
            for event in channel.history:
                kind_counts[event.kind.value] = kind_counts.get(event.kind.value, 0) + 1
        return {
            "runs": len(self._channels),
            "open_runs": sum(1 for c in self._channels.values() if not c.closed),
            "total_events": sum(len(c.history) for c in self._channels.values()),
            "subscriptions": len(self._subscriptions),
            "events_by_kind": kind_counts,
            "dropped_after_close": sum(c.dropped_after_close for c in self._channels.values()),
        }

    # === WAITING OPERATIONS ===

    async def wait_for(
        self,
        kind: EventKind,
        run_id: str | None = None,
        node_id: str | None = None,
        timeout: float | None = None,
    ) -> RunEvent | None:
        """
        Wait for a specific event to occur.

        Returns:
            The event if received, None if timeout
        """
        result: RunEvent | None = None
        event_received = asyncio.Event()

        async def handler(event: RunEvent) -> None:
            nonlocal result
            result = event
            event_received.set()

        sub_id = self.subscribe(
            kinds=[kind], handler=handler, filter_run=run_id, filter_node=node_id
        )
        try:
            if timeout:
                try:
                    await asyncio.wait_for(event_received.wait(), timeout=timeout)
                except TimeoutError:
                    return None
            else:
                await event_received.wait()
            return result
        finally:
            self.unsubscribe(sub_id)
