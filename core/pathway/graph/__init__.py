"""Graph model, node executors and the execution scheduler."""

from pathway.graph.edge import EdgeSpec, GraphSpec
from pathway.graph.executor import ExecutionResult, GraphExecutor
from pathway.graph.node import (
    DEFAULT_PORT,
    FALSE_PORT,
    LOOP_BODY_PORT,
    LOOP_COMPLETE_PORT,
    TRUE_PORT,
    AIModelConfig,
    ConditionalConfig,
    HumanInLoopConfig,
    LoopConfig,
    LoopType,
    MergeStrategy,
    NodeSpec,
    NodeType,
    ParallelConfig,
    RouterConfig,
    RouteSpec,
    branch_port,
)
from pathway.graph.outcome import Branch, ExecutionOutcome, Fail, Output, Suspend
from pathway.graph.registry import ExecutorRegistry, NodeContext, NodeExecutor
from pathway.graph.safe_eval import ExpressionError, SafeExpressionEvaluator, safe_eval

__all__ = [
    # Graph model
    "GraphSpec",
    "EdgeSpec",
    "NodeSpec",
    "NodeType",
    # Typed configs
    "RouterConfig",
    "RouteSpec",
    "ConditionalConfig",
    "LoopConfig",
    "LoopType",
    "ParallelConfig",
    "MergeStrategy",
    "HumanInLoopConfig",
    "AIModelConfig",
    # Ports
    "DEFAULT_PORT",
    "TRUE_PORT",
    "FALSE_PORT",
    "LOOP_BODY_PORT",
    "LOOP_COMPLETE_PORT",
    "branch_port",
    # Outcomes
    "ExecutionOutcome",
    "Output",
    "Branch",
    "Suspend",
    "Fail",
    # Executors
    "ExecutorRegistry",
    "NodeExecutor",
    "NodeContext",
    "GraphExecutor",
    "ExecutionResult",
    # Expressions
    "safe_eval",
    "SafeExpressionEvaluator",
    "ExpressionError",
]
