"""
Workflow Engine - In-process API for starting, steering and observing runs.

Each run executes as its own asyncio task driven by a ``GraphExecutor``. The
engine keeps the run's ``RunContext`` addressable by run id so collaborators
can deliver human input, cancel the run, read its state or subscribe to its
events. Terminal runs are retained up to ``run_retention_max`` and then pruned
oldest first.
"""

import asyncio
import logging
import uuid
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pathway.config import EngineConfig
from pathway.errors import GraphIntegrityError, RunNotFoundError
from pathway.graph.edge import GraphSpec
from pathway.graph.executor import ExecutionResult, GraphExecutor
from pathway.graph.hitl import validate_response
from pathway.graph.learning_nodes import normalize_responses
from pathway.graph.node import HumanInLoopConfig, NodeType
from pathway.graph.registry import ExecutorRegistry
from pathway.llm.provider import LLMProvider
from pathway.runtime.context import RunContext, utc_now
from pathway.runtime.event_bus import EventBus, EventHandler, EventKind, EventStream

logger = logging.getLogger(__name__)


@dataclass
class _RunHandle:
    """Engine-side bookkeeping for one run."""

    graph: GraphSpec
    run: RunContext
    task: asyncio.Task | None = None
    done: asyncio.Event = field(default_factory=asyncio.Event)
    result: ExecutionResult | None = None


class WorkflowEngine:
    """
    Runs pathway graphs.

    Example:
        engine = WorkflowEngine(llm=MockLLMProvider())

        run_id = await engine.start_run(graph_document, {"elpaLevel": 2})
        async for event in engine.subscribe(run_id):
            print(event.kind, event.node_id)

        result = await engine.wait_for_completion(run_id)
        print(result.status, result.output)
    """

    def __init__(
        self,
        llm: LLMProvider | None = None,
        config: EngineConfig | None = None,
        registry: ExecutorRegistry | None = None,
        event_bus: EventBus | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize the engine.

        Args:
            llm: Provider for AI-backed nodes (None disables AI calls)
            config: Retry, timeout, buffering and retention settings
            registry: Executors by node type (defaults to the built-in set)
            event_bus: Shared event bus (one is created if omitted)
            clock: Time source for run timestamps and input deadlines
        """
        self._config = config or EngineConfig()
        self._event_bus = event_bus or EventBus(
            max_history=self._config.max_history,
            buffer_size=self._config.event_buffer_size,
        )
        self._executor = GraphExecutor(
            registry=registry,
            llm=llm,
            event_bus=self._event_bus,
            engine_config=self._config,
        )
        self._clock = clock
        self._runs: OrderedDict[str, _RunHandle] = OrderedDict()

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def config(self) -> EngineConfig:
        return self._config

    # === RUN INVOCATION ===

    async def start_run(
        self,
        graph: GraphSpec | dict[str, Any] | str,
        initial_bindings: dict[str, Any] | None = None,
        run_id: str | None = None,
    ) -> str:
        """
        Validate ``graph`` and start a run in the background.

        Args:
            graph: A GraphSpec or a graph document (dict or JSON text)
            initial_bindings: Variables visible to the run from the start
            run_id: Optional caller-chosen id

        Returns:
            The run id

        Raises:
            GraphIntegrityError: The graph cannot be executed (nothing is dispatched)
            ValueError: ``run_id`` is already in use
        """
        if isinstance(graph, GraphSpec):
            errors = graph.validate()
            if errors:
                raise GraphIntegrityError(errors)
        else:
            graph = GraphSpec.from_document(graph)

        run_id = run_id or f"run_{uuid.uuid4().hex[:12]}"
        if run_id in self._runs:
            raise ValueError(f"Run '{run_id}' already exists")

        run = RunContext(
            run_id=run_id,
            graph_id=graph.id,
            initial_bindings=initial_bindings,
            clock=self._clock,
        )
        handle = _RunHandle(graph=graph, run=run)
        self._runs[run_id] = handle
        self._event_bus.open_run(run_id)

        handle.task = asyncio.create_task(self._drive(handle), name=f"pathway-run-{run_id}")
        logger.debug(f"Queued run {run_id} for graph '{graph.id}'")
        return run_id

    async def _drive(self, handle: _RunHandle) -> None:
        try:
            handle.result = await self._executor.execute(handle.graph, handle.run)
        finally:
            self._finalize(handle)

    def _finalize(self, handle: _RunHandle) -> None:
        if handle.result is None:
            handle.result = ExecutionResult.from_context(handle.run)
        handle.done.set()
        self._prune_runs()

    def _prune_runs(self) -> None:
        """Drop the oldest terminal runs beyond the retention bound."""
        terminal = [rid for rid, h in self._runs.items() if h.done.is_set()]
        excess = len(terminal) - self._config.run_retention_max
        for run_id in terminal[: max(excess, 0)]:
            self._runs.pop(run_id, None)
            self._event_bus.discard_run(run_id)

    async def run(
        self,
        graph: GraphSpec | dict[str, Any] | str,
        initial_bindings: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> ExecutionResult | None:
        """Start a run and wait for it (None if ``timeout`` elapses first)."""
        run_id = await self.start_run(graph, initial_bindings)
        return await self.wait_for_completion(run_id, timeout=timeout)

    async def resume_human_input(self, run_id: str, node_id: str, value: Any) -> bool:
        """
        Deliver human input to a suspended node.

        Returns:
            True if the node was waiting and accepted the value, False if the
            run is finished or the node is not waiting

        Raises:
            RunNotFoundError: Unknown run id
            InvalidHumanInput: The value does not fit the node's input type
        """
        handle = self._handle(run_id)
        run = handle.run
        if run.is_terminal or node_id not in run.pending:
            logger.debug(f"Run {run_id}: no pending input for '{node_id}'")
            return False

        config = handle.graph.config(node_id)
        if isinstance(config, HumanInLoopConfig):
            value = validate_response(node_id, config, value)
        elif handle.graph.node(node_id).type == NodeType.COMPREHENSION_CHECK:
            normalize_responses(node_id, value)

        accepted = run.resume(node_id, value)
        if accepted:
            logger.info(f"🔄 Run {run_id}: input delivered to '{node_id}'")
        return accepted

    async def cancel_run(self, run_id: str) -> bool:
        """
        Cancel a run.

        Every in-flight and pending node becomes Cancelled and no event is
        published after ``run-cancelled``.

        Returns:
            True if the run was cancelled, False if it had already finished

        Raises:
            RunNotFoundError: Unknown run id
        """
        handle = self._handle(run_id)
        if handle.run.is_terminal:
            return False

        task = handle.task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        # A task cancelled before its first step never reached the executor
        if not handle.run.is_terminal:
            handle.run.cancel()
            await self._event_bus.emit_run_cancelled(run_id)
            logger.info(f"⏹ Run {run_id} cancelled before start")
        if not handle.done.is_set():
            self._finalize(handle)
        return True

    # === OBSERVATION ===

    def subscribe(self, run_id: str) -> EventStream:
        """Event stream for one run: its history so far, then live events."""
        self._handle(run_id)
        return self._event_bus.stream(run_id)

    def subscribe_to_events(
        self,
        handler: EventHandler,
        kinds: list[EventKind] | None = None,
        run_id: str | None = None,
    ) -> str:
        """Register an async handler for events (optionally of one run)."""
        return self._event_bus.subscribe(kinds, handler, filter_run=run_id)

    def unsubscribe(self, subscription_id: str) -> bool:
        return self._event_bus.unsubscribe(subscription_id)

    def get_run(self, run_id: str) -> RunContext:
        """
        The run's context.

        Raises:
            RunNotFoundError: Unknown (or pruned) run id
        """
        return self._handle(run_id).run

    def get_result(self, run_id: str) -> ExecutionResult | None:
        """Result of a finished run (None while it is still active)."""
        return self._handle(run_id).result

    async def wait_for_completion(
        self, run_id: str, timeout: float | None = None
    ) -> ExecutionResult | None:
        """
        Wait for a run to reach a terminal state.

        Returns:
            ExecutionResult or None if timeout
        """
        handle = self._handle(run_id)
        try:
            if timeout:
                await asyncio.wait_for(handle.done.wait(), timeout=timeout)
            else:
                await handle.done.wait()
        except TimeoutError:
            return None
        return handle.result

    def list_runs(self) -> list[dict[str, Any]]:
        return [
            {
                "runId": run_id,
                "graphId": handle.run.graph_id,
                "status": str(handle.run.status),
                "pending": sorted(handle.run.pending),
            }
            for run_id, handle in self._runs.items()
        ]

    def _handle(self, run_id: str) -> _RunHandle:
        handle = self._runs.get(run_id)
        if handle is None:
            raise RunNotFoundError(run_id)
        return handle

    # === LIFECYCLE ===

    async def shutdown(self) -> None:
        """Cancel every active run and stop event delivery."""
        for run_id, handle in list(self._runs.items()):
            if not handle.run.is_terminal:
                await self.cancel_run(run_id)
        await self._event_bus.close()
        logger.info("Workflow engine stopped")

    def get_stats(self) -> dict:
        """Get engine statistics."""
        statuses: dict[str, int] = {}
        for handle in self._runs.values():
            key = str(handle.run.status)
            statuses[key] = statuses.get(key, 0) + 1
        return {
            "runs": len(self._runs),
            "active_runs": sum(1 for h in self._runs.values() if not h.done.is_set()),
            "by_status": statuses,
            "event_bus": self._event_bus.get_stats(),
        }
