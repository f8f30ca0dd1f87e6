"""
AI Model executor and the helpers other nodes use to call a provider.

Provider calls go through ``invoke_with_retry``: a bounded number of attempts
per model with exponential backoff, a ``node-retry`` event before each retry,
and a per-call timeout. The call itself is shielded, so cancelling the run
lets an in-flight request finish in the background while its result is
discarded.
"""

import asyncio
import logging
import re
from typing import Any

from pathway.config import EngineConfig
from pathway.errors import NodeConfigurationError, ProviderError
from pathway.graph.node import AIModelConfig, NodeSpec, RouterConfig
from pathway.graph.outcome import ExecutionOutcome, Fail, Output
from pathway.graph.registry import NodeContext
from pathway.llm.provider import LLMResponse, ProviderConfig, TokenUsage
from pathway.llm.stream_events import FinishEvent, StreamErrorEvent, TextDeltaEvent, TextEndEvent

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"{{\s*([\w.]+)\s*}}")

DEFAULT_ROUTING_PROMPT = (
    "You are routing a student through a learning pathway. "
    "Pick the single best route for this student."
)


def _lookup(variables: dict[str, Any], dotted: str) -> Any:
    value: Any = variables
    for part in dotted.split("."):
        if not isinstance(value, dict) or part not in value:
            return None
        value = value[part]
    return value


def render_template(template: str, variables: dict[str, Any]) -> str:
    """Replace ``{{name}}`` / ``{{a.b}}`` placeholders; unknown names render empty."""

    def replace(match: re.Match) -> str:
        value = _lookup(variables, match.group(1))
        return "" if value is None else str(value)

    return _PLACEHOLDER.sub(replace, template)


def template_names(template: str) -> list[str]:
    return _PLACEHOLDER.findall(template)


def backoff_delay(attempt: int, config: EngineConfig) -> float:
    """Delay before retry number ``attempt`` (1-based)."""
    return min(config.ai_backoff_base_seconds * 2 ** (attempt - 1), config.ai_backoff_max_seconds)


def _consume_exception(task: asyncio.Future) -> None:
    # A shielded call whose caller went away must not log "exception never retrieved"
    if not task.cancelled():
        task.exception()


async def _stream_response(
    ctx: NodeContext, config: ProviderConfig, prompt: str
) -> LLMResponse:
    text = ""
    usage = TokenUsage()
    stop_reason = ""
    model = config.model_id
    async for event in ctx.llm.stream(config, prompt):
        if isinstance(event, TextDeltaEvent):
            text = event.snapshot or text + event.content
            await ctx.events.emit_partial_output(ctx.run_id, ctx.node.id, event.content, text)
        elif isinstance(event, TextEndEvent):
            text = event.full_text or text
        elif isinstance(event, FinishEvent):
            usage = TokenUsage(input_tokens=event.input_tokens, output_tokens=event.output_tokens)
            stop_reason = event.stop_reason
            model = event.model or model
        elif isinstance(event, StreamErrorEvent):
            raise ProviderError(
                f"Stream error: {event.error}", provider=config.provider, model=config.model_id
            )
    return LLMResponse(text=text, model=model, usage=usage, stop_reason=stop_reason)


async def _call_once(
    ctx: NodeContext, config: ProviderConfig, prompt: str, stream: bool
) -> LLMResponse:
    if stream:
        task = asyncio.ensure_future(_stream_response(ctx, config, prompt))
    else:
        task = asyncio.ensure_future(ctx.llm.invoke(config, prompt))
    task.add_done_callback(_consume_exception)

    timeout = ctx.engine_config.ai_call_timeout_seconds
    try:
        return await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
    except TimeoutError:
        task.cancel()
        raise ProviderError(
            f"{config.model_id} did not answer within {timeout}s",
            provider=config.provider,
            model=config.model_id,
        ) from None
    except ProviderError:
        raise
    except Exception as e:
        raise ProviderError(
            f"{type(e).__name__}: {e}", provider=config.provider, model=config.model_id
        ) from e


async def invoke_with_retry(
    ctx: NodeContext,
    config: ProviderConfig,
    prompt: str,
    retry: bool = True,
    stream: bool = False,
) -> LLMResponse:
    """
    Call the run's provider with retries.

    Raises:
        ProviderError: every attempt for this model failed
    """
    if ctx.llm is None:
        raise ProviderError("No AI provider configured", provider=config.provider, model=config.model_id)

    attempts = 1 + (ctx.engine_config.ai_retry_attempts if retry else 0)
    last_error: ProviderError | None = None
    for attempt in range(1, attempts + 1):
        if last_error is not None:
            delay = backoff_delay(attempt - 1, ctx.engine_config)
            logger.warning(
                f"   ↻ {ctx.node.id}: {config.model_id} failed (attempt {attempt - 1}/{attempts}), "
                f"retrying in {delay:.2f}s: {last_error}",
                extra={"model": config.model_id, "attempt": attempt - 1},
            )
            await ctx.events.emit_node_retry(
                ctx.run_id, ctx.node.id, attempt - 1, config.model_id, str(last_error), delay
            )
            await asyncio.sleep(delay)
        try:
            return await _call_once(ctx, config, prompt, stream)
        except ProviderError as e:
            last_error = e
    raise last_error


def resolve_model_id(model: str | None, provider: str | None, default: str) -> str:
    """``provider/model`` id for a node's model settings."""
    if not model:
        return default
    if "/" in model:
        return model
    if provider:
        return ProviderConfig(provider=provider, model=model).model_id
    return ProviderConfig.from_model_id(model).model_id


class AIModelExecutor:
    """
    Invokes the configured model.

    The prompt comes from ``prompt`` (rendered against bindings and inputs),
    else the upstream ``prompt`` / ``content`` / ``text``, else ``systemPrompt``.
    When the primary model exhausts its attempts, ``fallbackModel`` gets the
    same budget.
    """

    async def execute(
        self, node: NodeSpec, inputs: dict[str, Any], ctx: NodeContext
    ) -> ExecutionOutcome:
        config = ctx.config
        if not isinstance(config, AIModelConfig):
            return Fail(NodeConfigurationError(node.id, "expected AIModelConfig"))

        namespace = ctx.namespace(inputs)
        prompt = self._build_prompt(config, namespace)
        if not prompt:
            return Fail(
                NodeConfigurationError(node.id, "requires a prompt from upstream or configuration")
            )

        engine = ctx.engine_config
        temperature = config.temperature if config.temperature is not None else engine.default_temperature
        provider = str(config.provider) if config.provider else None
        models = [resolve_model_id(config.model, provider, engine.default_model)]
        if config.fallback_model:
            fallback = resolve_model_id(config.fallback_model, provider, engine.default_model)
            if fallback not in models:
                models.append(fallback)

        last_error: ProviderError | None = None
        for position, model_id in enumerate(models):
            provider_config = ProviderConfig.from_model_id(
                model_id,
                temperature=temperature,
                max_tokens=config.max_tokens,
                system_prompt=render_template(config.system_prompt, namespace),
            )
            try:
                response = await invoke_with_retry(
                    ctx,
                    provider_config,
                    prompt,
                    retry=config.retry_on_failure,
                    stream=config.stream_response,
                )
            except ProviderError as e:
                last_error = e
                if position + 1 < len(models):
                    logger.warning(f"   ⤷ {node.id}: falling back to {models[position + 1]}")
                continue

            logger.info(
                f"   🤖 {node.id} answered by {response.model}",
                extra={"model": response.model, "tokens_used": response.usage.total_tokens},
            )
            return Output(
                {
                    "response": response.text,
                    "model": response.model or model_id,
                    "temperature": temperature,
                    "usage": response.usage.to_dict(),
                    "streamed": config.stream_response,
                    "fallbackUsed": position > 0,
                }
            )

        return Fail(
            ProviderError(
                f"All models failed for '{node.id}': {last_error}",
                provider=last_error.provider if last_error else provider,
                model=models[-1],
                node_id=node.id,
            )
        )

    @staticmethod
    def _build_prompt(config: AIModelConfig, namespace: dict[str, Any]) -> str:
        if config.prompt:
            return render_template(config.prompt, namespace)
        upstream = namespace.get("input")
        if isinstance(upstream, dict):
            for key in ("prompt", "content", "text"):
                if isinstance(upstream.get(key), str) and upstream[key]:
                    return upstream[key]
        elif isinstance(upstream, str) and upstream:
            return upstream
        return render_template(config.system_prompt, namespace)


async def choose_route(
    ctx: NodeContext, config: RouterConfig, namespace: dict[str, Any]
) -> tuple[str | None, str]:
    """
    Ask the provider to pick a route.

    Returns the chosen route id (None if the answer names no declared route)
    and a human-readable reason.
    """
    lines = [render_template(config.routing_prompt or DEFAULT_ROUTING_PROMPT, namespace), ""]
    profile = {
        k: namespace[k]
        for k in ("elpaLevel", "gradeLevel", "learningStyle", "interests", "score", "nativeLanguage")
        if k in namespace
    }
    if profile:
        lines.append(f"Student: {profile}")
    lines.append("Routes:")
    for route in config.routes:
        lines.append(f"- {route.id}: {route.name or route.condition or route.id}")
    lines.append("Answer with the route id only.")

    provider_config = ProviderConfig.from_model_id(
        ctx.engine_config.default_model, temperature=0.0, max_tokens=50
    )
    response = await invoke_with_retry(ctx, provider_config, "\n".join(lines))
    answer = response.text.strip().strip("\"'`.").lower()

    for route in config.routes:
        if answer == route.id.lower():
            return route.id, f"AI selected '{route.id}'"
    # Longest ids first so "advanced-plus" is not read as "advanced"
    for route in sorted(config.routes, key=lambda r: len(r.id), reverse=True):
        if route.id.lower() in answer:
            return route.id, f"AI selected '{route.id}'"
    logger.warning(f"AI routing answer names no route: {response.text!r}")
    return None, "AI answer named no declared route"
