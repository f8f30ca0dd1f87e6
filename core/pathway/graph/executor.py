"""
Graph Executor - Drives a pathway graph to a terminal state.

The executor:
1. Seeds a ready queue with the graph's entry nodes
2. Dispatches ready nodes one at a time, in edge-declaration order
3. Interprets each ExecutionOutcome (Output, Branch, Suspend, Fail)
4. Runs loop bodies and parallel branches as nested schedules on request of
   their construct executors
5. Emits lifecycle events and leaves the RunContext in a terminal state

Run state machine: Idle -> Running -> {Suspended <-> Running} ->
{Completed | Failed | Cancelled}.
"""

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from pathway.config import EngineConfig
from pathway.errors import (
    ExecutionError,
    HumanInputTimeout,
    NodeExecutionFailed,
    PathwayError,
)
from pathway.graph.edge import EdgeSpec, GraphSpec
from pathway.graph.node import DEFAULT_PORT
from pathway.graph.outcome import Branch, Fail, Output, Suspend
from pathway.graph.registry import (
    DEFAULT_INPUT_PORT,
    ExecutorRegistry,
    NodeContext,
    NodeExecutor,
    RegionResult,
)
from pathway.llm.provider import LLMProvider
from pathway.observability import set_trace_context
from pathway.runtime.context import (
    BindingScope,
    NodeExecutionRecord,
    NodeState,
    PendingInput,
    RunContext,
    RunStatus,
)
from pathway.runtime.event_bus import EventBus


@dataclass
class ExecutionResult:
    """Result of executing a graph."""

    run_id: str
    status: RunStatus
    output: Any = None
    error: str | None = None
    error_type: str | None = None
    failed_node: str | None = None
    path: list[str] = field(default_factory=list)  # Node IDs in dispatch order
    node_visit_counts: dict[str, int] = field(default_factory=dict)
    bindings: dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status == RunStatus.COMPLETED

    @classmethod
    def from_context(cls, run: RunContext) -> "ExecutionResult":
        failure = run.failure
        return cls(
            run_id=run.run_id,
            status=run.status,
            output=run.output,
            error=failure.reason if failure else None,
            error_type=failure.error_type if failure else None,
            failed_node=failure.node_id if failure else None,
            path=list(run.path),
            node_visit_counts=dict(run.visited),
            bindings=run.bindings.snapshot(),
        )


@dataclass
class _Parked:
    """A node waiting on human input inside a schedule."""

    node_id: str
    pending: PendingInput
    record: NodeExecutionRecord
    default: Any = None
    has_default: bool = False
    complete: Callable[[Any], Any] | None = None


class GraphExecutor:
    """
    Executes pathway graphs.

    Example:
        executor = GraphExecutor(llm=MockLLMProvider(), event_bus=bus)
        run = RunContext(run_id="run_1", graph_id=graph.id, initial_bindings={"elpaLevel": 2})
        result = await executor.execute(graph, run)
    """

    def __init__(
        self,
        registry: ExecutorRegistry | None = None,
        llm: LLMProvider | None = None,
        event_bus: EventBus | None = None,
        engine_config: EngineConfig | None = None,
        node_registry: dict[str, NodeExecutor] | None = None,
    ):
        """
        Initialize the executor.

        Args:
            registry: Executors by node type (defaults to the built-in set)
            llm: Provider used by AI-backed nodes
            event_bus: Where lifecycle events go
            engine_config: Retry, timeout and polling settings
            node_registry: Per-node-id executor overrides (take precedence
                over the type registry)
        """
        self.registry = registry or ExecutorRegistry.default()
        self.llm = llm
        self.event_bus = event_bus or EventBus()
        self.engine_config = engine_config or EngineConfig()
        self.node_registry = node_registry or {}
        self.logger = logging.getLogger(__name__)

    def executor_for(self, node_id: str, node_type: str) -> NodeExecutor:
        if node_id in self.node_registry:
            return self.node_registry[node_id]
        return self.registry.get(node_type)

    async def execute(self, graph: GraphSpec, run: RunContext) -> ExecutionResult:
        """
        Drive ``run`` over ``graph`` to a terminal state.

        Never raises for node failures or cancellation; the outcome is in the
        returned result and in ``run`` itself.
        """
        set_trace_context(run_id=run.run_id, graph_id=graph.id)
        bus = self.event_bus
        bus.open_run(run.run_id)

        if run.status == RunStatus.IDLE:
            run.start()
        self.logger.info(f"🚀 Starting run {run.run_id} of graph '{graph.id}'")
        await bus.emit_run_started(run.run_id, graph.id, dict(run.initial_bindings))

        try:
            schedule = _Schedule(
                executor=self,
                graph=graph,
                run=run,
                scope=run.bindings,
                nodes=graph.schedule_nodes(),
                seed_edges=[],
                iteration=(),
            )
            output = await schedule.run()
            run.complete(output)
            self.logger.info(f"✓ Run {run.run_id} completed after {len(run.path)} dispatches")
            await bus.emit_run_completed(run.run_id, output, list(run.path))

        except NodeExecutionFailed as e:
            run.fail(e.node_id, e.error)
            self.logger.error(f"✗ Run {run.run_id} failed at '{e.node_id}': {e.error}")
            await bus.emit_run_failed(
                run.run_id, e.node_id, run.failure.reason, run.failure.error_type
            )

        except asyncio.CancelledError:
            if not run.is_terminal:
                run.cancel()
            self.logger.info(f"⏹ Run {run.run_id} cancelled")
            await bus.emit_run_cancelled(run.run_id)

        except Exception as e:
            self.logger.exception(f"Scheduler error in run {run.run_id}")
            if not run.is_terminal:
                run.fail(None, e)
            await bus.emit_run_failed(run.run_id, None, str(e), type(e).__name__)

        finally:
            bus.close_run(run.run_id)

        return ExecutionResult.from_context(run)

    async def run_region(
        self,
        graph: GraphSpec,
        run: RunContext,
        construct_id: str,
        port: str,
        scope: BindingScope,
        seed: Any,
        iteration: tuple[int, ...] = (),
    ) -> RegionResult:
        """
        Run the private region behind ``construct_id``'s ``port`` in ``scope``.

        The construct's seed value is bound under the construct's id so the
        region's entry nodes receive it as input. Raises NodeExecutionFailed
        if a node in the region fails.
        """
        scope.write(construct_id, seed)
        schedule = _Schedule(
            executor=self,
            graph=graph,
            run=run,
            scope=scope,
            nodes=graph.schedule_nodes(graph.region(construct_id, port)),
            seed_edges=graph.outgoing_edges(construct_id, port),
            iteration=iteration,
        )
        output = await schedule.run()
        return RegionResult(output=output, outputs=schedule.outputs, scope=scope, path=schedule.path)


class _Schedule:
    """
    Dispatch loop over one set of nodes: the whole graph, one loop iteration's
    body, or one parallel branch.

    Edge bookkeeping: every edge into a node of this schedule is resolved as
    fired or dead. A node is ready once all of its incoming edges are resolved
    and at least one fired; if all are dead the node is dead and never runs.
    """

    def __init__(
        self,
        executor: GraphExecutor,
        graph: GraphSpec,
        run: RunContext,
        scope: BindingScope,
        nodes: frozenset[str],
        seed_edges: list[EdgeSpec],
        iteration: tuple[int, ...],
    ):
        self.executor = executor
        self.graph = graph
        self.run_ctx = run
        self.scope = scope
        self.nodes = nodes
        self.iteration = iteration
        self.bus = executor.event_bus
        self.logger = executor.logger

        self.incoming: dict[str, list[EdgeSpec]] = {
            node_id: [
                e
                for e in graph.incoming_edges(node_id)
                if not graph.is_back_edge(e)
                and (e.source_node_id in nodes or e in seed_edges)
            ]
            for node_id in nodes
        }
        self.edge_state: dict[str, bool] = {e.id: True for e in seed_edges}
        self.ready: deque[str] = deque()
        self.queued: set[str] = set()
        self.dead: set[str] = set()
        self.parked: list[_Parked] = []
        self.outputs: dict[str, Any] = {}
        self.sink_outputs: dict[str, Any] = {}
        self.path: list[str] = []
        self._last_output: Any = None

        if seed_edges:
            candidates = [e.target_node_id for e in seed_edges]
        else:
            candidates = [n.id for n in graph.entry_nodes() if n.id in nodes]
        self._consider(candidates)

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def run(self) -> Any:
        try:
            while True:
                while self.ready:
                    node_id = self.ready.popleft()
                    await self._dispatch(node_id)
                if not self.parked:
                    break
                await self._await_parked()
        finally:
            if self.parked:
                self._abandon_parked()
        return self._result_output()

    def _abandon_parked(self) -> None:
        """Drop suspensions of a schedule that is being torn down (failure or cancellation)."""
        for parked in self.parked:
            pending = self.run_ctx.expire(parked.node_id)
            if pending is not None and pending.future is not None and not pending.future.done():
                pending.future.cancel()
            if not self.run_ctx.is_terminal:
                self.run_ctx.close_record(parked.record, NodeState.CANCELLED, error="abandoned")
        self.parked.clear()

    def _result_output(self) -> Any:
        if len(self.sink_outputs) == 1:
            return next(iter(self.sink_outputs.values()))
        if self.sink_outputs:
            return dict(self.sink_outputs)
        return self._last_output

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    def _consider(self, candidates: list[str]) -> None:
        """Enqueue ready candidates (in the given order) and propagate dead ones."""
        worklist = deque(candidates)
        while worklist:
            node_id = worklist.popleft()
            if node_id not in self.nodes or node_id in self.queued or node_id in self.dead:
                continue
            edges = self.incoming[node_id]
            if any(e.id not in self.edge_state for e in edges):
                continue
            if not edges or any(self.edge_state[e.id] for e in edges):
                self.queued.add(node_id)
                self.ready.append(node_id)
                continue
            # Every incoming edge is dead: prune this node and its successors
            self.dead.add(node_id)
            self.logger.debug(f"   ✂ Pruned '{node_id}'")
            for edge in self._outgoing(node_id):
                self.edge_state[edge.id] = False
                worklist.append(edge.target_node_id)

    def _outgoing(self, node_id: str) -> list[EdgeSpec]:
        return [
            e
            for e in self.graph.outgoing_edges(node_id)
            if e.target_node_id in self.nodes and not self.graph.is_back_edge(e)
        ]

    def _propagate(self, node_id: str, port: str) -> None:
        targets = []
        for edge in self._outgoing(node_id):
            self.edge_state[edge.id] = self.graph.port_of(edge) == port
            targets.append(edge.target_node_id)
        self._consider(targets)

    def _gather_inputs(self, node_id: str) -> dict[str, Any]:
        """Values on fired incoming edges; the last writer in topological order wins a port."""
        fired = [e for e in self.incoming[node_id] if self.edge_state.get(e.id)]
        if not fired:
            return {DEFAULT_INPUT_PORT: dict(self.run_ctx.initial_bindings)}
        fired.sort(key=lambda e: self.graph.topological_index(e.source_node_id))
        inputs: dict[str, Any] = {}
        for edge in fired:
            inputs[edge.target_port_id or DEFAULT_INPUT_PORT] = self.scope.read(edge.source_node_id)
        return inputs

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _dispatch(self, node_id: str) -> None:
        run = self.run_ctx
        node = self.graph.node(node_id)
        attempt = run.record_visit(node_id)
        record = run.open_record(node_id, attempt, self.iteration)
        self.path.append(node_id)
        set_trace_context(node_id=node_id)

        inputs = self._gather_inputs(node_id)
        self.logger.info(f"▶ {node_id} ({node.type}) attempt {attempt}")
        await self.bus.emit_node_started(run.run_id, node_id, str(node.type), attempt)

        async def run_region(
            port: str, scope: BindingScope, seed: Any, iteration: tuple[int, ...] = ()
        ) -> RegionResult:
            return await self.executor.run_region(
                self.graph, run, node_id, port, scope, seed, iteration or self.iteration
            )

        ctx = NodeContext(
            run=run,
            graph=self.graph,
            node=node,
            scope=self.scope,
            engine_config=self.executor.engine_config,
            events=self.bus,
            llm=self.executor.llm,
            iteration=self.iteration,
            run_region=run_region,
        )

        try:
            executor = self.executor.executor_for(node_id, node.type)
            outcome = await executor.execute(node, inputs, ctx)
        except NodeExecutionFailed as e:
            # A node inside this construct failed and the construct did not absorb it
            run.close_record(record, NodeState.FAILED, error=str(e.error))
            await self.bus.emit_node_failed(
                run.run_id, node_id, str(e.error), type(e.error).__name__
            )
            raise
        except asyncio.CancelledError:
            run.close_record(record, NodeState.CANCELLED, error="cancelled")
            raise
        except PathwayError as e:
            outcome = Fail(e)
        except Exception as e:
            self.logger.exception(f"Executor for '{node_id}' raised")
            outcome = Fail(ExecutionError(f"{type(e).__name__}: {e}", node_id=node_id))

        if isinstance(outcome, Output):
            await self._complete(node_id, record, outcome.value, DEFAULT_PORT)
        elif isinstance(outcome, Branch):
            await self._complete(node_id, record, outcome.value, outcome.port)
        elif isinstance(outcome, Suspend):
            await self._park(node_id, record, outcome, ctx)
        elif isinstance(outcome, Fail):
            await self._fail(node_id, record, outcome.error)
        else:
            await self._fail(
                node_id,
                record,
                ExecutionError(f"Executor returned {type(outcome).__name__}", node_id=node_id),
            )

    async def _complete(
        self, node_id: str, record: NodeExecutionRecord, value: Any, port: str
    ) -> None:
        self.scope.write(node_id, value)
        self.outputs[node_id] = value
        self._last_output = value
        if not self._outgoing(node_id):
            self.sink_outputs[node_id] = value
        self.run_ctx.close_record(record, NodeState.COMPLETED, result=value)
        self.logger.info(f"   ✓ {node_id} -> {port}")
        await self.bus.emit_node_completed(self.run_ctx.run_id, node_id, value, port)
        self._propagate(node_id, port)

    async def _fail(self, node_id: str, record: NodeExecutionRecord, error: BaseException) -> None:
        self.run_ctx.close_record(record, NodeState.FAILED, error=str(error))
        self.logger.error(f"   ✗ {node_id} failed: {error}")
        await self.bus.emit_node_failed(
            self.run_ctx.run_id, node_id, str(error), type(error).__name__
        )
        raise NodeExecutionFailed(node_id, error)

    # ------------------------------------------------------------------
    # Suspension
    # ------------------------------------------------------------------

    async def _park(
        self, node_id: str, record: NodeExecutionRecord, outcome: Suspend, ctx: NodeContext
    ) -> None:
        run = self.run_ctx
        pending = run.suspend(node_id, outcome.reason, outcome.expires_at, outcome.request)
        record.state = NodeState.SUSPENDED
        config = ctx.config
        has_default = bool(getattr(config, "has_default", False))
        self.parked.append(
            _Parked(
                node_id=node_id,
                pending=pending,
                record=record,
                default=getattr(config, "default_on_timeout", None),
                has_default=has_default,
                complete=outcome.complete,
            )
        )
        self.logger.info(f"⏸ {node_id} waiting for input: {outcome.reason}")
        await self.bus.emit_run_suspended(
            run.run_id, node_id, outcome.reason, outcome.expires_at, outcome.request
        )

    async def _await_parked(self) -> None:
        """Wait until some parked node gets input or reaches its deadline, then settle it."""
        run = self.run_ctx
        now = run.clock()
        wait_for = self.executor.engine_config.input_poll_interval_seconds
        for parked in self.parked:
            if parked.pending.deadline is not None:
                remaining = (parked.pending.deadline - now).total_seconds()
                wait_for = min(wait_for, max(remaining, 0.0))

        futures = [p.pending.future for p in self.parked if p.pending.future is not None]
        if futures:
            await asyncio.wait(futures, timeout=wait_for, return_when=asyncio.FIRST_COMPLETED)
        else:
            await asyncio.sleep(wait_for)

        now = run.clock()
        for parked in list(self.parked):
            future = parked.pending.future
            if future is not None and future.done() and not future.cancelled():
                self.parked.remove(parked)
                value = future.result()
                if parked.complete is not None:
                    value = parked.complete(value)
                self.logger.info(f"▶ {parked.node_id} resumed with input")
                await self.bus.emit_run_resumed(run.run_id, parked.node_id, value)
                await self._complete(parked.node_id, parked.record, value, DEFAULT_PORT)
            elif parked.pending.deadline is not None and now >= parked.pending.deadline:
                self.parked.remove(parked)
                run.expire(parked.node_id)
                if parked.has_default:
                    self.logger.info(f"⏱ {parked.node_id} timed out, using default")
                    await self.bus.emit_run_resumed(
                        run.run_id, parked.node_id, parked.default, timed_out=True
                    )
                    await self._complete(
                        parked.node_id, parked.record, parked.default, DEFAULT_PORT
                    )
                else:
                    await self._fail(
                        parked.node_id,
                        parked.record,
                        HumanInputTimeout(parked.node_id, parked.pending.deadline),
                    )
