"""LiteLLM-backed provider: one client for OpenAI, Anthropic, Google, Groq and local models."""

import logging
from collections.abc import AsyncIterator
from typing import Any

import litellm

from pathway.config import get_api_key
from pathway.errors import ProviderError
from pathway.llm.provider import LLMProvider, LLMResponse, ProviderConfig, TokenUsage
from pathway.llm.stream_events import FinishEvent, StreamEvent, TextDeltaEvent, TextEndEvent

logger = logging.getLogger(__name__)


class LiteLLMProvider(LLMProvider):
    """
    Provider that routes calls through ``litellm.acompletion``.

    API keys are resolved per provider from ``<PROVIDER>_API_KEY`` or the
    ``api_keys`` section of the configuration file unless given explicitly.
    """

    def __init__(
        self,
        api_keys: dict[str, str] | None = None,
        api_base: str | None = None,
        request_timeout: float | None = None,
    ):
        self.api_keys = dict(api_keys or {})
        self.api_base = api_base
        self.request_timeout = request_timeout

    def _request_kwargs(self, config: ProviderConfig, prompt: str) -> dict[str, Any]:
        messages = []
        if config.system_prompt:
            messages.append({"role": "system", "content": config.system_prompt})
        messages.append({"role": "user", "content": prompt})

        kwargs: dict[str, Any] = {
            "model": config.model_id,
            "messages": messages,
            "temperature": config.temperature,
            "max_tokens": config.max_tokens,
            **config.extra,
        }
        api_key = self.api_keys.get(config.provider) or get_api_key(config.provider)
        if api_key:
            kwargs["api_key"] = api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.request_timeout:
            kwargs["timeout"] = self.request_timeout
        return kwargs

    async def invoke(self, config: ProviderConfig, prompt: str) -> LLMResponse:
        try:
            response = await litellm.acompletion(**self._request_kwargs(config, prompt))
        except Exception as e:
            raise ProviderError(str(e), provider=config.provider, model=config.model_id) from e

        choice = response.choices[0]
        text = choice.message.content or ""
        usage = getattr(response, "usage", None)
        return LLMResponse(
            text=text,
            model=getattr(response, "model", None) or config.model_id,
            usage=TokenUsage(
                input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            ),
            stop_reason=choice.finish_reason or "",
            raw_response=response,
        )

    async def stream(self, config: ProviderConfig, prompt: str) -> AsyncIterator[StreamEvent]:
        kwargs = self._request_kwargs(config, prompt)
        kwargs["stream"] = True
        kwargs["stream_options"] = {"include_usage": True}

        snapshot = ""
        stop_reason = ""
        input_tokens = output_tokens = 0
        try:
            response = await litellm.acompletion(**kwargs)
            async for chunk in response:
                usage = getattr(chunk, "usage", None)
                if usage:
                    input_tokens = getattr(usage, "prompt_tokens", 0) or input_tokens
                    output_tokens = getattr(usage, "completion_tokens", 0) or output_tokens
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                delta = getattr(choice.delta, "content", None)
                if delta:
                    snapshot += delta
                    yield TextDeltaEvent(content=delta, snapshot=snapshot)
                if choice.finish_reason:
                    stop_reason = choice.finish_reason
        except Exception as e:
            raise ProviderError(str(e), provider=config.provider, model=config.model_id) from e

        logger.debug(f"Streamed {len(snapshot)} chars from {config.model_id}")
        yield TextEndEvent(full_text=snapshot)
        yield FinishEvent(
            stop_reason=stop_reason,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=config.model_id,
        )
