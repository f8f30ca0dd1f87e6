"""
Human-in-loop protocol.

A Human-in-loop node produces a ``HumanInputRequest`` and suspends. The run
continues when a collaborator calls ``WorkflowEngine.resume_human_input`` with
a value that fits the request, or when the deadline passes (using
``defaultOnTimeout`` if the node declares one).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from numbers import Number
from typing import Any

from pathway.errors import InvalidHumanInput, NodeConfigurationError
from pathway.graph.ai_node import render_template
from pathway.graph.node import HumanInLoopConfig, HumanInputType, NodeSpec, RequiredRole
from pathway.graph.outcome import ExecutionOutcome, Fail, Suspend
from pathway.graph.registry import NodeContext, primary_input

logger = logging.getLogger(__name__)

APPROVAL_VALUES = {
    "approve": True,
    "approved": True,
    "yes": True,
    "reject": False,
    "rejected": False,
    "no": False,
}


@dataclass
class HumanInputRequest:
    """
    What the waiting node asks for.

    This is what the presentation layer renders for the teacher, student or
    parent who has to answer.
    """

    node_id: str
    prompt: str
    input_type: HumanInputType = HumanInputType.APPROVAL
    required_role: RequiredRole = RequiredRole.ANY

    # For SELECTION type
    options: list[str] = field(default_factory=list)

    deadline: datetime | None = None
    notify_by_email: bool = False
    context: Any = None  # Upstream value the human is asked about

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "nodeId": self.node_id,
            "prompt": self.prompt,
            "inputType": str(self.input_type),
            "requiredRole": str(self.required_role),
            "options": self.options,
            "deadline": self.deadline.isoformat() if self.deadline else None,
            "notifyByEmail": self.notify_by_email,
            "context": self.context,
        }


def validate_response(node_id: str, config: HumanInLoopConfig, value: Any) -> Any:
    """
    Check a resume value against the node's input type.

    Returns the value the node outputs (approval strings become booleans).

    Raises:
        InvalidHumanInput: the value does not fit the request
    """
    input_type = config.input_type
    if input_type == HumanInputType.SELECTION and config.options:
        choices = value if isinstance(value, list) else [value]
        unknown = [c for c in choices if c not in config.options]
        if unknown:
            raise InvalidHumanInput(node_id, f"{unknown} not in options {config.options}")
    elif input_type == HumanInputType.APPROVAL:
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in APPROVAL_VALUES:
            return APPROVAL_VALUES[value.strip().lower()]
        if isinstance(value, dict) and isinstance(value.get("approved"), bool):
            return value
        raise InvalidHumanInput(node_id, f"expected an approval, got {value!r}")
    elif input_type == HumanInputType.RATING:
        if isinstance(value, bool) or not isinstance(value, Number):
            raise InvalidHumanInput(node_id, f"expected a numeric rating, got {value!r}")
    elif input_type == HumanInputType.TEXT_INPUT and not isinstance(value, str):
        raise InvalidHumanInput(node_id, f"expected text, got {type(value).__name__}")
    return value


def format_for_display(request: dict[str, Any]) -> str:
    """Format a serialized HumanInputRequest for terminal display."""
    parts = [f"⏸ {request.get('nodeId')} is waiting for input"]

    if request.get("prompt"):
        parts.append(f"📋 {request['prompt']}")

    parts.append(f"   Type: {request.get('inputType')}  Role: {request.get('requiredRole')}")

    if request.get("options"):
        parts.append(f"   Options: {', '.join(map(str, request['options']))}")

    for question in request.get("questions") or []:
        parts.append(f"   {question.get('id')}. {question.get('question')}")

    if request.get("deadline"):
        parts.append(f"   ⏱ Deadline: {request['deadline']}")

    return "\n".join(parts)


class HumanInLoopExecutor:
    """Suspends the node until input arrives or the deadline passes."""

    async def execute(
        self, node: NodeSpec, inputs: dict[str, Any], ctx: NodeContext
    ) -> ExecutionOutcome:
        config = ctx.config
        if not isinstance(config, HumanInLoopConfig):
            return Fail(NodeConfigurationError(node.id, "expected HumanInLoopConfig"))

        deadline = None
        if config.timeout_minutes is not None:
            deadline = ctx.now() + timedelta(minutes=config.timeout_minutes)

        prompt = render_template(config.prompt, ctx.namespace(inputs))
        request = HumanInputRequest(
            node_id=node.id,
            prompt=prompt,
            input_type=config.input_type,
            required_role=config.required_role,
            options=list(config.options or []),
            deadline=deadline,
            notify_by_email=config.notify_by_email,
            context=primary_input(inputs),
        )
        if config.notify_by_email:
            # Delivery belongs to the notification service subscribed to run-suspended
            logger.info(f"📧 {node.id}: email notification requested for {config.required_role}")

        return Suspend(reason=prompt, expires_at=deadline, request=request.to_dict())
