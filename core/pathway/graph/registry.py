"""
Node Executor Registry - maps a node's type to the capability that runs it.

Every executor implements one method:

    async def execute(node, inputs, ctx) -> ExecutionOutcome

``inputs`` maps input port ids (``"input"`` for the default port) to the
upstream values the scheduler assembled. ``ctx`` is a ``NodeContext`` giving
access to the run's bindings, the AI provider and the event bus, and (for
Loop and Parallel) a handle to run the construct's private region.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from pathway.config import EngineConfig
from pathway.errors import ExecutionError
from pathway.graph.edge import GraphSpec
from pathway.graph.node import NodeSpec, NodeType
from pathway.graph.outcome import ExecutionOutcome
from pathway.runtime.context import BindingScope, RunContext
from pathway.runtime.event_bus import EventBus, EventKind

if TYPE_CHECKING:
    from pathway.llm.provider import LLMProvider

logger = logging.getLogger(__name__)

DEFAULT_INPUT_PORT = "input"


@dataclass
class RegionResult:
    """Outcome of running a loop body or parallel branch to completion."""

    output: Any
    outputs: dict[str, Any]
    scope: BindingScope
    path: list[str] = field(default_factory=list)


RegionRunner = Callable[..., Awaitable[RegionResult]]


@dataclass
class NodeContext:
    """Everything an executor may touch while running one node."""

    run: RunContext
    graph: GraphSpec
    node: NodeSpec
    scope: BindingScope
    engine_config: EngineConfig
    events: EventBus
    llm: "LLMProvider | None" = None
    iteration: tuple[int, ...] = ()
    run_region: RegionRunner | None = None

    @property
    def run_id(self) -> str:
        return self.run.run_id

    @property
    def config(self) -> Any:
        """The node's typed configuration (None for free-form types)."""
        return self.graph.config(self.node.id)

    def now(self) -> datetime:
        return self.run.clock()

    def read(self, key: str, default: Any = None) -> Any:
        return self.scope.read(key, default)

    def write(self, key: str, value: Any) -> None:
        self.scope.write(key, value)

    async def emit(self, kind: EventKind, payload: dict[str, Any] | None = None) -> None:
        await self.events.emit(kind, self.run_id, self.node.id, payload)

    def namespace(self, inputs: dict[str, Any]) -> dict[str, Any]:
        """
        Names visible to expressions: all bindings, then the keys of any dict
        input, then ``input`` (the primary input value) and ``inputs``.
        """
        ns = self.scope.snapshot()
        for value in inputs.values():
            if isinstance(value, dict):
                ns.update(value)
        ns["input"] = primary_input(inputs)
        ns["inputs"] = inputs
        return ns


def primary_input(inputs: dict[str, Any]) -> Any:
    """The value on the default input port, else the only input, else all inputs."""
    if DEFAULT_INPUT_PORT in inputs:
        return inputs[DEFAULT_INPUT_PORT]
    if len(inputs) == 1:
        return next(iter(inputs.values()))
    return dict(inputs) if inputs else None


def merged_input(inputs: dict[str, Any]) -> dict[str, Any]:
    """Dict inputs merged into one mapping (later ports win)."""
    merged: dict[str, Any] = {}
    for port, value in inputs.items():
        if isinstance(value, dict):
            merged.update(value)
        else:
            merged[port] = value
    return merged


@runtime_checkable
class NodeExecutor(Protocol):
    """Capability that runs one node type."""

    async def execute(
        self, node: NodeSpec, inputs: dict[str, Any], ctx: NodeContext
    ) -> ExecutionOutcome: ...


class ExecutorRegistry:
    """
    Closed mapping from ``NodeType`` to executor.

    Example:
        registry = ExecutorRegistry.default()
        executor = registry.get(NodeType.ROUTER)
    """

    def __init__(self, executors: dict[NodeType, NodeExecutor] | None = None):
        self._executors: dict[NodeType, NodeExecutor] = {}
        for node_type, executor in (executors or {}).items():
            self.register(node_type, executor)

    def register(self, node_type: NodeType | str, executor: NodeExecutor) -> None:
        """Register (or replace) the executor for a node type."""
        node_type = NodeType(node_type)
        if not isinstance(executor, NodeExecutor):
            raise TypeError(f"{executor!r} does not implement execute(node, inputs, ctx)")
        if node_type in self._executors:
            logger.debug(f"Replacing executor for {node_type}")
        self._executors[node_type] = executor

    def get(self, node_type: NodeType | str) -> NodeExecutor:
        executor = self._executors.get(NodeType(node_type))
        if executor is None:
            raise ExecutionError(f"No executor registered for node type '{node_type}'")
        return executor

    def __contains__(self, node_type: object) -> bool:
        return node_type in self._executors

    def types(self) -> list[NodeType]:
        return list(self._executors)

    @classmethod
    def default(cls) -> "ExecutorRegistry":
        """Registry with the built-in executor for every node type."""
        from pathway.graph.ai_node import AIModelExecutor
        from pathway.graph.content_nodes import (
            CelebrationExecutor,
            ContentGeneratorExecutor,
            FeedbackGeneratorExecutor,
            InputExecutor,
            MergeExecutor,
            PassthroughExecutor,
            PromptTemplateExecutor,
            StudentProfileExecutor,
            VariableExecutor,
            VocabularyBuilderExecutor,
        )
        from pathway.graph.flow_nodes import (
            ConditionalExecutor,
            LoopExecutor,
            ParallelExecutor,
            RouterExecutor,
        )
        from pathway.graph.hitl import HumanInLoopExecutor
        from pathway.graph.learning_nodes import (
            ComprehensionCheckExecutor,
            CurriculumSelectorExecutor,
            ProgressTrackerExecutor,
            ScaffoldedContentExecutor,
            ScaffoldingExecutor,
        )
        from pathway.graph.structured_output import StructuredOutputExecutor

        passthrough = PassthroughExecutor()
        return cls(
            {
                NodeType.ROUTER: RouterExecutor(),
                NodeType.CONDITIONAL: ConditionalExecutor(),
                NodeType.LOOP: LoopExecutor(),
                NodeType.PARALLEL: ParallelExecutor(),
                NodeType.MERGE: MergeExecutor(),
                NodeType.HUMAN_IN_LOOP: HumanInLoopExecutor(),
                NodeType.COMPREHENSION_CHECK: ComprehensionCheckExecutor(),
                NodeType.AI_MODEL: AIModelExecutor(),
                NodeType.PROMPT_TEMPLATE: PromptTemplateExecutor(),
                NodeType.CONTENT_GENERATOR: ContentGeneratorExecutor(),
                NodeType.VOCABULARY_BUILDER: VocabularyBuilderExecutor(),
                NodeType.STRUCTURED_OUTPUT: StructuredOutputExecutor(),
                NodeType.CURRICULUM_SELECTOR: CurriculumSelectorExecutor(),
                NodeType.SCAFFOLDED_CONTENT: ScaffoldedContentExecutor(),
                NodeType.SCAFFOLDING: ScaffoldingExecutor(),
                NodeType.INPUT: InputExecutor(),
                NodeType.OUTPUT: passthrough,
                NodeType.PROCESS: passthrough,
                NodeType.STUDENT_PROFILE: StudentProfileExecutor(),
                NodeType.VARIABLE: VariableExecutor(),
                NodeType.FEEDBACK_GENERATOR: FeedbackGeneratorExecutor(),
                NodeType.CELEBRATION: CelebrationExecutor(),
                NodeType.PROGRESS_TRACKER: ProgressTrackerExecutor(),
                # Presentation-side activities: the engine forwards their inputs
                NodeType.MULTIPLE_CHOICE: passthrough,
                NodeType.FREE_RESPONSE: passthrough,
                NodeType.VOICE_INPUT: passthrough,
                NodeType.ORAL_PRACTICE: passthrough,
                NodeType.L1_BRIDGE: passthrough,
                NodeType.VISUAL_SUPPORT: passthrough,
                NodeType.WORD_PROBLEM_DECODER: passthrough,
                NodeType.MATH_PROBLEM_GENERATOR: passthrough,
            }
        )
