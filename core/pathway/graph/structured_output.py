"""
Structured Output executor.

Asks the AI provider for JSON that matches a JSON-schema-like definition on
the node and validates the answer with a pydantic model built from that
definition. Without a provider the upstream text itself is parsed and
validated. ``fallbackBehavior`` decides what a failed validation produces:

- ``error`` (default): ``data`` is None and ``error`` explains why
- ``raw-text``: ``data`` is the upstream text
- ``retry``: one more attempt with the validation errors in the prompt
"""

import json
import logging
import re
from typing import Any, Literal

from pydantic import Field, TypeAdapter, ValidationError, create_model
from pydantic.errors import PydanticUserError

from pathway.errors import ExecutionError, ProviderError
from pathway.graph.ai_node import invoke_with_retry
from pathway.graph.node import NodeSpec
from pathway.graph.outcome import ExecutionOutcome, Fail, Output
from pathway.graph.registry import NodeContext, merged_input, primary_input
from pathway.llm.provider import ProviderConfig

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 2

SCALAR_TYPES: dict[str, Any] = {
    "string": str,
    "number": float,
    "integer": int,
    "boolean": bool,
}

_CODE_FENCE = re.compile(r"```(?:json)?\s*|\s*```")


def schema_type(definition: Any, name: str = "StructuredOutput") -> Any:
    """
    Python type for a JSON-schema-like definition.

    Supports ``object`` (``properties`` / ``required``), ``array`` (``items``),
    ``string`` (with ``enum``), ``number``, ``integer`` and ``boolean``. A bare
    list ``[item]`` means an array of ``item``; anything else accepts any value.
    Objects become pydantic models whose fields keep the property names as
    aliases.
    """
    if isinstance(definition, list):
        return list[schema_type(definition[0] if definition else None, f"{name}Item")]
    if not isinstance(definition, dict):
        return Any

    kind = definition.get("type")
    if kind == "object":
        required = set(definition.get("required") or [])
        fields: dict[str, Any] = {}
        for index, (key, value) in enumerate((definition.get("properties") or {}).items()):
            annotation = schema_type(value, f"{name}_{index}")
            if key in required:
                fields[f"field_{index}"] = (annotation, Field(alias=key))
            else:
                fields[f"field_{index}"] = (annotation | None, Field(default=None, alias=key))
        return create_model(name, **fields)
    if kind == "array":
        return list[schema_type(definition.get("items"), f"{name}Item")]
    if kind == "string" and isinstance(definition.get("enum"), list) and definition["enum"]:
        return Literal[tuple(definition["enum"])]
    return SCALAR_TYPES.get(kind, Any)


def build_validator(schema: Any, name: str = "StructuredOutput") -> TypeAdapter:
    """
    Validator for a schema given as a mapping or JSON text.

    Raises:
        ValueError: the schema is not valid JSON
        PydanticUserError: the schema cannot be turned into a model
    """
    definition = json.loads(schema) if isinstance(schema, str) else schema
    return TypeAdapter(schema_type(definition, name))


def strip_fences(text: str) -> str:
    """Model output without ```json fences."""
    return _CODE_FENCE.sub("", text).strip()


def validate_text(validator: TypeAdapter, text: str) -> Any:
    """
    Parse and validate ``text``; returns plain JSON data keyed by the schema's names.

    Raises:
        ValueError: not JSON, or does not match the schema (ValidationError)
    """
    value = validator.validate_json(strip_fences(text), strict=True)
    return validator.dump_python(value, by_alias=True, exclude_unset=True)


def describe_error(error: Exception) -> str:
    if isinstance(error, ValidationError):
        return "; ".join(
            f"{'.'.join(str(p) for p in e['loc']) or '(root)'}: {e['msg']}" for e in error.errors()
        )
    return str(error)


class StructuredOutputExecutor:
    """Validated JSON from upstream text."""

    async def execute(
        self, node: NodeSpec, inputs: dict[str, Any], ctx: NodeContext
    ) -> ExecutionOutcome:
        data = node.config_data()
        fallback = data.get("fallbackBehavior") or "error"
        upstream = merged_input(inputs)
        candidates = [upstream.get(k) for k in ("prompt", "input", "response")]
        text = next((c for c in candidates if isinstance(c, str) and c), None)
        if text is None and isinstance(primary_input(inputs), str):
            text = primary_input(inputs)
        text = text or ""

        if not data.get("schema"):
            return Output({"error": "Structured Output node is missing a schema", "raw": text})
        if not text:
            return Fail(
                ExecutionError("Structured Output node requires upstream text to parse", node_id=node.id)
            )
        if data.get("validateOutput") is False:
            return Output(
                {"data": text, "raw": text, "validationPassed": False, "validationSkipped": True}
            )

        try:
            validator = build_validator(data["schema"], data.get("schemaName") or "StructuredOutput")
        except (ValueError, TypeError, PydanticUserError) as e:
            return Output({"error": "Invalid schema", "raw": text, "schemaError": str(e)})

        attempts = MAX_ATTEMPTS if fallback == "retry" and ctx.llm is not None else 1
        last_error = ""
        for attempt in range(1, attempts + 1):
            try:
                candidate = await self._candidate(ctx, data, validator, text, last_error)
                value = validate_text(validator, candidate)
            except (ProviderError, ValueError) as e:
                last_error = describe_error(e)
                logger.warning(
                    f"   {node.id}: structured output attempt {attempt}/{attempts} failed: {last_error}"
                )
                continue
            return Output({"data": value, "raw": text, "validationPassed": True, "attempts": attempt})

        result: dict[str, Any] = {"data": None, "raw": text, "validationPassed": False}
        if fallback == "raw-text":
            result.update(data=text, fallbackUsed="raw-text", originalError=last_error)
        elif fallback == "retry":
            result.update(error=last_error, retriesExhausted=True, maxRetries=MAX_ATTEMPTS)
        else:
            result["error"] = last_error
        return Output(result)

    @staticmethod
    async def _candidate(
        ctx: NodeContext,
        data: dict[str, Any],
        validator: TypeAdapter,
        text: str,
        previous_error: str,
    ) -> str:
        """The JSON text to validate: the model's answer, or the upstream text itself."""
        if ctx.llm is None:
            return text
        schema = validator.json_schema(by_alias=True)
        prompt = text
        if previous_error:
            prompt += (
                f"\n\nYour previous response had validation errors: {previous_error}\n"
                "Please respond with valid JSON matching the schema."
            )
        config = ProviderConfig.from_model_id(
            data.get("model") or ctx.engine_config.default_model,
            temperature=0.0,
            system_prompt=(
                "Respond only with a JSON value matching this JSON schema, without commentary:\n"
                + json.dumps(schema)
            ),
        )
        return (await invoke_with_retry(ctx, config, prompt)).text
