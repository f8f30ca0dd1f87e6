"""Tests for per-run event channels, streams and handler subscriptions."""

import asyncio

import pytest

from pathway.runtime.event_bus import EventBus, EventKind, EventStream, RunEvent


class TestPublishing:
    """Ordering and channel lifecycle."""

    @pytest.mark.asyncio
    async def test_sequence_is_strictly_increasing_per_run(self):
        bus = EventBus()
        bus.open_run("run_1")
        bus.open_run("run_2")

        await bus.emit_run_started("run_1", "g", {})
        await bus.emit_node_started("run_1", "n1", "process", 1)
        await bus.emit_run_started("run_2", "g", {})
        await bus.emit_node_completed("run_1", "n1", 1, "output")

        assert [e.sequence for e in bus.events("run_1")] == [1, 2, 3]
        assert [e.sequence for e in bus.events("run_2")] == [1]

    @pytest.mark.asyncio
    async def test_terminal_event_closes_the_channel(self):
        bus = EventBus()
        bus.open_run("run_1")
        await bus.emit_run_completed("run_1", {"ok": True}, ["n1"])

        assert not bus.is_open("run_1")
        assert await bus.emit_node_started("run_1", "late", "process", 1) is False
        assert [e.kind for e in bus.events("run_1")] == [EventKind.RUN_COMPLETED]
        assert bus.get_stats()["dropped_after_close"] == 1

    @pytest.mark.asyncio
    async def test_event_payloads(self):
        bus = EventBus()
        await bus.emit_node_failed("run_1", "route", "no match", "NoMatchingRoute")
        await bus.emit_loop_iteration("run_1", "loop", 2, {"maxIterations": 3})

        failed, iteration = bus.events("run_1")
        assert failed.payload == {"error": "no match", "errorType": "NoMatchingRoute"}
        assert iteration.payload == {"iteration": 2, "maxIterations": 3}
        assert iteration.to_dict()["kind"] == "loop-iteration"

    @pytest.mark.asyncio
    async def test_discard_run_forgets_history(self):
        bus = EventBus()
        await bus.emit_run_started("run_1", "g", {})
        bus.discard_run("run_1")
        assert bus.events("run_1") == []

    @pytest.mark.asyncio
    async def test_history_bound(self):
        bus = EventBus(max_history=2)
        for i in range(4):
            await bus.emit_node_started("run_1", f"n{i}", "process", 1)
        assert [e.node_id for e in bus.events("run_1")] == ["n2", "n3"]


class TestStreams:
    """Async iteration over one run's events."""

    @pytest.mark.asyncio
    async def test_stream_replays_history_then_live_events(self):
        bus = EventBus()
        bus.open_run("run_1")
        await bus.emit_run_started("run_1", "g", {})

        stream = bus.stream("run_1")
        await bus.emit_node_started("run_1", "n1", "process", 1)
        await bus.emit_run_completed("run_1", None, ["n1"])

        kinds = [event.kind async for event in stream]
        assert kinds == [EventKind.RUN_STARTED, EventKind.NODE_STARTED, EventKind.RUN_COMPLETED]

    @pytest.mark.asyncio
    async def test_stream_of_finished_run_ends_after_history(self):
        bus = EventBus()
        await bus.emit_run_started("run_1", "g", {})
        await bus.emit_run_cancelled("run_1")

        events = [event async for event in bus.stream("run_1")]
        assert events[-1].kind == EventKind.RUN_CANCELLED

    @pytest.mark.asyncio
    async def test_stream_of_unknown_run_is_empty(self):
        bus = EventBus()
        assert [event async for event in bus.stream("nope")] == []

    @pytest.mark.asyncio
    async def test_slow_reader_drops_oldest(self):
        stream = EventStream(max_buffer=2)
        for i in range(5):
            stream.push(RunEvent(run_id="run_1", kind=EventKind.NODE_STARTED, node_id=f"n{i}"))
        stream.close()

        assert stream.dropped == 3
        assert [event.node_id async for event in stream] == ["n3", "n4"]

    @pytest.mark.asyncio
    async def test_reader_close_detaches_from_bus(self):
        bus = EventBus()
        bus.open_run("run_1")
        stream = bus.stream("run_1")
        await stream.aclose()

        await bus.emit_node_started("run_1", "n1", "process", 1)
        assert [event async for event in stream] == []


class TestSubscriptions:
    """Handler subscriptions."""

    @pytest.mark.asyncio
    async def test_handler_receives_matching_kinds_in_order(self):
        bus = EventBus()
        received: list[RunEvent] = []

        async def handler(event: RunEvent) -> None:
            received.append(event)

        bus.subscribe([EventKind.NODE_STARTED], handler)
        await bus.emit_run_started("run_1", "g", {})
        await bus.emit_node_started("run_1", "a", "process", 1)
        await bus.emit_node_started("run_1", "b", "process", 1)
        await bus.close()

        assert [e.node_id for e in received] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_run_and_node_filters(self):
        bus = EventBus()
        received: list[RunEvent] = []

        async def handler(event: RunEvent) -> None:
            received.append(event)

        bus.subscribe(None, handler, filter_run="run_1", filter_node="a")
        await bus.emit_node_started("run_1", "a", "process", 1)
        await bus.emit_node_started("run_1", "b", "process", 1)
        await bus.emit_node_started("run_2", "a", "process", 1)
        await bus.close()

        assert [(e.run_id, e.node_id) for e in received] == [("run_1", "a")]

    @pytest.mark.asyncio
    async def test_handler_errors_do_not_stop_delivery(self):
        bus = EventBus()
        received: list[str] = []

        async def handler(event: RunEvent) -> None:
            if event.node_id == "bad":
                raise RuntimeError("boom")
            received.append(event.node_id)

        bus.subscribe([EventKind.NODE_STARTED], handler)
        await bus.emit_node_started("run_1", "bad", "process", 1)
        await bus.emit_node_started("run_1", "good", "process", 1)
        await bus.close()

        assert received == ["good"]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        sub_id = bus.subscribe(None, lambda event: asyncio.sleep(0))
        assert bus.unsubscribe(sub_id) is True
        assert bus.unsubscribe(sub_id) is False

    @pytest.mark.asyncio
    async def test_wait_for(self):
        bus = EventBus()
        waiter = asyncio.create_task(bus.wait_for(EventKind.RUN_COMPLETED, run_id="run_1", timeout=2))
        await asyncio.sleep(0)
        await bus.emit_run_completed("run_1", 42, [])

        event = await waiter
        assert event is not None
        assert event.payload["output"] == 42

    @pytest.mark.asyncio
    async def test_wait_for_timeout(self):
        bus = EventBus()
        assert await bus.wait_for(EventKind.RUN_COMPLETED, timeout=0.01) is None
