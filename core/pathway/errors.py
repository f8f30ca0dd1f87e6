"""
Error taxonomy for the pathway engine.

GraphIntegrityError is raised before a run starts. The remaining errors are
carried inside a ``Fail`` outcome and either absorbed by the owning construct
(loop ``continueOnError``, parallel ``continueOnBranchFailure``) or escalated to
run failure.
"""

from datetime import datetime


class PathwayError(Exception):
    """Base class for all engine errors."""

    pass


class GraphIntegrityError(PathwayError):
    """Raised when a graph document cannot be executed at all."""

    def __init__(self, errors: list[str] | str):
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        super().__init__("Invalid graph: " + "; ".join(self.errors))


class NodeConfigurationError(PathwayError):
    """A node's configuration is missing a field its mode requires."""

    def __init__(self, node_id: str, message: str):
        self.node_id = node_id
        super().__init__(f"Node '{node_id}' is misconfigured: {message}")


class ExecutionError(PathwayError):
    """Runtime failure reported by an executor."""

    def __init__(self, message: str, node_id: str | None = None):
        self.node_id = node_id
        super().__init__(message)


class NoMatchingRoute(ExecutionError):
    """A router found no matching route and has no default."""

    pass


class ProviderError(ExecutionError):
    """An AI provider call failed (transport, quota, bad response)."""

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        model: str | None = None,
        node_id: str | None = None,
    ):
        self.provider = provider
        self.model = model
        super().__init__(message, node_id=node_id)


class HumanInputTimeout(PathwayError):
    """A human-in-loop deadline passed with no input and no default."""

    def __init__(self, node_id: str, deadline: datetime):
        self.node_id = node_id
        self.deadline = deadline
        super().__init__(
            f"No human input for node '{node_id}' before {deadline.isoformat()}"
        )


class InvalidHumanInput(PathwayError):
    """A resume value does not fit the node's declared input contract."""

    def __init__(self, node_id: str, message: str):
        self.node_id = node_id
        super().__init__(f"Invalid input for node '{node_id}': {message}")


class RunCancelled(PathwayError):
    """The run was cancelled by an external request."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run '{run_id}' was cancelled")


class RunNotFoundError(PathwayError, KeyError):
    """No run with the given id is known to the engine."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run not found: {run_id}")

    def __str__(self) -> str:
        return self.args[0]


class NodeExecutionFailed(PathwayError):
    """
    A node failure escaping its schedule.

    Raised by the scheduler when a node returns ``Fail`` and no enclosing
    construct absorbs it; carries the innermost failing node and its error.
    """

    def __init__(self, node_id: str, error: BaseException):
        self.node_id = node_id
        self.error = error
        super().__init__(f"Node '{node_id}' failed: {error}")
