"""
Tests for core GraphExecutor scheduling paths.
Covers dispatch order, port routing, pruning, failures and event emission.
"""

from typing import Any

import pytest

from pathway.errors import ExecutionError
from pathway.graph.edge import GraphSpec
from pathway.graph.executor import GraphExecutor
from pathway.graph.outcome import Fail, Output
from pathway.runtime.context import NodeState, RunContext, RunStatus
from pathway.runtime.event_bus import EventBus, EventKind


# ---- Fake nodes ----
class ValueNode:
    """Outputs a fixed value and remembers the inputs it saw."""

    def __init__(self, value: Any):
        self.value = value
        self.seen: list[dict] = []

    async def execute(self, node, inputs, ctx):
        self.seen.append(inputs)
        return Output(self.value)


class FailingNode:
    async def execute(self, node, inputs, ctx):
        return Fail(ExecutionError("boom", node_id=node.id))


class RaisingNode:
    async def execute(self, node, inputs, ctx):
        raise RuntimeError("kaboom")


async def run_graph(document: dict, node_registry=None, bindings=None, run_id="run-1"):
    graph = GraphSpec.from_document(document)
    bus = EventBus()
    executor = GraphExecutor(event_bus=bus, node_registry=node_registry)
    run = RunContext(run_id=run_id, graph_id=graph.id, initial_bindings=bindings)
    result = await executor.execute(graph, run)
    return result, run, bus


def _chain(*node_ids: str) -> dict:
    return {
        "id": "chain",
        "nodes": [{"id": n, "type": "process"} for n in node_ids],
        "edges": [{"source": a, "target": b} for a, b in zip(node_ids, node_ids[1:])],
    }


def _diamond(left_port=None, right_port=None) -> dict:
    left = {"source": "b", "target": "d"}
    right = {"source": "c", "target": "d"}
    if left_port:
        left["targetHandle"] = left_port
    if right_port:
        right["targetHandle"] = right_port
    return {
        "id": "diamond",
        "nodes": [{"id": n, "type": "process"} for n in "abcd"],
        "edges": [
            {"source": "a", "target": "b"},
            {"source": "a", "target": "c"},
            left,
            right,
        ],
    }


def _routing_graph(default_route=None) -> dict:
    config = {
        "routingCriteria": "elpa-level",
        "routes": [
            {"id": "a", "condition": "elpaLevel < 3"},
            {"id": "b", "condition": "elpaLevel >= 3"},
        ],
    }
    if default_route:
        config["defaultRoute"] = default_route
    return {
        "id": "routing",
        "nodes": [
            {"id": "route", "type": "router", "data": {"config": config}},
            {"id": "easy", "type": "output"},
            {"id": "hard", "type": "output"},
            {"id": "join", "type": "process"},
        ],
        "edges": [
            {"source": "route", "sourceHandle": "a", "target": "easy"},
            {"source": "route", "sourceHandle": "b", "target": "hard"},
            {"source": "easy", "target": "join"},
            {"source": "hard", "target": "join"},
        ],
    }


class TestSingleNode:
    @pytest.mark.asyncio
    async def test_executor_single_node_success(self):
        result, run, _ = await run_graph(
            _chain("n1"), node_registry={"n1": ValueNode({"result": 123})}
        )

        assert result.success is True
        assert result.status == RunStatus.COMPLETED
        assert result.output == {"result": 123}
        assert result.path == ["n1"]
        assert run.read("n1") == {"result": 123}

    @pytest.mark.asyncio
    async def test_executor_single_node_failure(self):
        result, run, _ = await run_graph(_chain("n1"), node_registry={"n1": FailingNode()})

        assert result.success is False
        assert result.status == RunStatus.FAILED
        assert result.error == "boom"
        assert result.error_type == "ExecutionError"
        assert result.failed_node == "n1"
        assert result.path == ["n1"]

    @pytest.mark.asyncio
    async def test_unexpected_exception_becomes_node_failure(self):
        result, run, _ = await run_graph(_chain("n1"), node_registry={"n1": RaisingNode()})

        assert result.status == RunStatus.FAILED
        assert "RuntimeError: kaboom" in result.error
        assert run.history[-1].state == NodeState.FAILED

    @pytest.mark.asyncio
    async def test_entry_node_receives_initial_bindings(self):
        node = ValueNode("ok")
        await run_graph(_chain("n1"), node_registry={"n1": node}, bindings={"elpaLevel": 2})
        assert node.seen == [{"input": {"elpaLevel": 2}}]


class TestOrdering:
    """Each node runs once, after all of its predecessors."""

    @pytest.mark.asyncio
    async def test_chain_runs_in_order(self):
        result, _, _ = await run_graph(_chain("a", "b", "c"), bindings={"x": 1})
        assert result.path == ["a", "b", "c"]
        assert result.output == {"x": 1}

    @pytest.mark.asyncio
    async def test_join_runs_once_after_both_predecessors(self):
        registry = {n: ValueNode(n) for n in "abc"}
        result, _, _ = await run_graph(_diamond(), node_registry=registry)

        assert result.path == ["a", "b", "c", "d"]
        assert result.node_visit_counts == {"a": 1, "b": 1, "c": 1, "d": 1}

    @pytest.mark.asyncio
    async def test_last_writer_in_topological_order_wins_a_port(self):
        registry = {n: ValueNode(n) for n in "abc"}
        result, _, _ = await run_graph(_diamond(), node_registry=registry)
        assert result.output == "c"

    @pytest.mark.asyncio
    async def test_distinct_input_ports_are_merged(self):
        registry = {n: ValueNode(n) for n in "abc"}
        result, _, _ = await run_graph(_diamond("left", "right"), node_registry=registry)
        assert result.output == {"left": "b", "right": "c"}

    @pytest.mark.asyncio
    async def test_several_sinks_give_a_mapping(self):
        document = {
            "nodes": [
                {"id": "start", "type": "input"},
                {"id": "x", "type": "process"},
                {"id": "y", "type": "process"},
            ],
            "edges": [{"source": "start", "target": "x"}, {"source": "start", "target": "y"}],
        }
        result, _, _ = await run_graph(
            document, node_registry={"x": ValueNode(1), "y": ValueNode(2)}
        )
        assert result.output == {"x": 1, "y": 2}


class TestRouting:
    """Router and Conditional select exactly one port."""

    @pytest.mark.asyncio
    async def test_router_dispatches_only_the_selected_route(self):
        result, run, _ = await run_graph(_routing_graph(), bindings={"elpaLevel": 2})

        assert result.success
        assert result.path == ["route", "easy", "join"]
        assert "hard" not in run.visited
        assert result.output["selectedRoute"] == "a"
        assert result.output["usedDefault"] is False

    @pytest.mark.asyncio
    async def test_no_matching_route_fails_the_run(self):
        result, run, _ = await run_graph(_routing_graph(), bindings={"elpaLevel": None})

        assert result.status == RunStatus.FAILED
        assert result.error_type == "NoMatchingRoute"
        assert result.failed_node == "route"
        assert "easy" not in run.visited

    @pytest.mark.asyncio
    async def test_default_route(self):
        result, _, _ = await run_graph(_routing_graph(default_route="b"), bindings={})

        assert result.success
        assert result.path == ["route", "hard", "join"]
        assert result.output["usedDefault"] is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("score,expected", [(85, "pass"), (40, "retry")])
    async def test_conditional(self, score, expected):
        document = {
            "nodes": [
                {"id": "check", "type": "conditional", "data": {"condition": "score >= 70"}},
                {"id": "pass", "type": "output"},
                {"id": "retry", "type": "output"},
            ],
            "edges": [
                {"source": "check", "sourceHandle": "true", "target": "pass"},
                {"source": "check", "sourceHandle": "false", "target": "retry"},
            ],
        }
        result, _, _ = await run_graph(document, bindings={"score": score})

        assert result.path == ["check", expected]
        assert result.output["conditionMet"] is (score >= 70)


class TestEvents:
    """Lifecycle events emitted while scheduling."""

    @pytest.mark.asyncio
    async def test_event_sequence(self):
        _, _, bus = await run_graph(_chain("a", "b"))
        kinds = [(e.kind, e.node_id) for e in bus.events("run-1")]

        assert kinds == [
            (EventKind.RUN_STARTED, None),
            (EventKind.NODE_STARTED, "a"),
            (EventKind.NODE_COMPLETED, "a"),
            (EventKind.NODE_STARTED, "b"),
            (EventKind.NODE_COMPLETED, "b"),
            (EventKind.RUN_COMPLETED, None),
        ]

    @pytest.mark.asyncio
    async def test_failure_events(self):
        _, _, bus = await run_graph(_chain("n1"), node_registry={"n1": FailingNode()})
        events = bus.events("run-1")

        assert events[-2].kind == EventKind.NODE_FAILED
        assert events[-2].payload["errorType"] == "ExecutionError"
        assert events[-1].kind == EventKind.RUN_FAILED
        assert events[-1].node_id == "n1"

    @pytest.mark.asyncio
    async def test_completed_event_carries_selected_port(self):
        _, _, bus = await run_graph(_routing_graph(), bindings={"elpaLevel": 4})
        completed = [e for e in bus.events("run-1") if e.kind == EventKind.NODE_COMPLETED]
        assert completed[0].node_id == "route"
        assert completed[0].payload["port"] == "b"

    @pytest.mark.asyncio
    async def test_runs_are_deterministic(self):
        def trace(bus):
            return [(e.kind, e.node_id, e.payload) for e in bus.events("run-1")]

        _, _, first = await run_graph(_routing_graph(), bindings={"elpaLevel": 1})
        _, _, second = await run_graph(_routing_graph(), bindings={"elpaLevel": 1})
        assert trace(first) == trace(second)
