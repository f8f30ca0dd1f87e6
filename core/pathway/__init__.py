"""
Pathway engine - executes educational pathway graphs.

A pathway is a directed graph of typed nodes (routers, loops, parallel
branches, human checkpoints, AI calls and content steps). The engine validates
the graph, drives each run to a terminal state and publishes an ordered event
stream per run.

Example:
    from pathway import MockLLMProvider, WorkflowEngine

    engine = WorkflowEngine(llm=MockLLMProvider())
    result = await engine.run(graph_document, {"elpaLevel": 2})
"""

from pathway.config import EngineConfig
from pathway.errors import (
    ExecutionError,
    GraphIntegrityError,
    HumanInputTimeout,
    InvalidHumanInput,
    NodeConfigurationError,
    NoMatchingRoute,
    PathwayError,
    ProviderError,
    RunCancelled,
    RunNotFoundError,
)
from pathway.graph import (
    Branch,
    ExecutionResult,
    ExecutorRegistry,
    Fail,
    GraphExecutor,
    GraphSpec,
    NodeSpec,
    NodeType,
    Output,
    Suspend,
)
from pathway.llm import LiteLLMProvider, LLMProvider, MockLLMProvider, ProviderConfig
from pathway.runtime import EventBus, EventKind, RunContext, RunEvent, RunStatus
from pathway.runtime.api_server import ApiServer, ApiServerConfig
from pathway.runtime.engine import WorkflowEngine

__all__ = [
    # Engine
    "WorkflowEngine",
    "EngineConfig",
    "ApiServer",
    "ApiServerConfig",
    # Graph
    "GraphSpec",
    "NodeSpec",
    "NodeType",
    "GraphExecutor",
    "ExecutionResult",
    "ExecutorRegistry",
    "Output",
    "Branch",
    "Suspend",
    "Fail",
    # Runs and events
    "RunContext",
    "RunStatus",
    "EventBus",
    "EventKind",
    "RunEvent",
    # AI providers
    "LLMProvider",
    "ProviderConfig",
    "LiteLLMProvider",
    "MockLLMProvider",
    # Errors
    "PathwayError",
    "GraphIntegrityError",
    "NodeConfigurationError",
    "ExecutionError",
    "NoMatchingRoute",
    "ProviderError",
    "HumanInputTimeout",
    "InvalidHumanInput",
    "RunCancelled",
    "RunNotFoundError",
]
