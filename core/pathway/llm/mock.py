"""Deterministic provider for tests, demos and ``pathway run --mock-llm``."""

from collections.abc import AsyncIterator, Callable, Iterable
from dataclasses import dataclass
from typing import Any

from pathway.errors import ProviderError
from pathway.llm.provider import LLMProvider, LLMResponse, ProviderConfig, TokenUsage
from pathway.llm.stream_events import FinishEvent, StreamEvent, TextDeltaEvent, TextEndEvent


@dataclass
class RecordedCall:
    model_id: str
    prompt: str
    temperature: float
    max_tokens: int
    system_prompt: str


class MockLLMProvider(LLMProvider):
    """
    Scripted provider.

    Responses are consumed in order from ``responses``; an entry that is an
    exception instance is raised instead. When the script runs out, ``default``
    (a string or a ``(config, prompt) -> str`` callable) is used. Models listed
    in ``failing_models`` always raise ``ProviderError``.
    """

    def __init__(
        self,
        responses: Iterable[str | BaseException] | None = None,
        default: str | Callable[[ProviderConfig, str], str] = "Mock response",
        failing_models: Iterable[str] | None = None,
        chunk_size: int = 8,
    ):
        self._responses = list(responses or [])
        self.default = default
        self.failing_models = set(failing_models or [])
        self.chunk_size = chunk_size
        self.calls: list[RecordedCall] = []

    def _next_text(self, config: ProviderConfig, prompt: str) -> str:
        self.calls.append(
            RecordedCall(
                model_id=config.model_id,
                prompt=prompt,
                temperature=config.temperature,
                max_tokens=config.max_tokens,
                system_prompt=config.system_prompt,
            )
        )
        if config.model_id in self.failing_models or config.model in self.failing_models:
            raise ProviderError(
                f"{config.model_id} unavailable", provider=config.provider, model=config.model_id
            )
        if self._responses:
            item = self._responses.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item
        if callable(self.default):
            return self.default(config, prompt)
        return self.default

    async def invoke(self, config: ProviderConfig, prompt: str) -> LLMResponse:
        text = self._next_text(config, prompt)
        return LLMResponse(
            text=text,
            model=config.model_id,
            usage=TokenUsage(input_tokens=len(prompt.split()), output_tokens=len(text.split())),
            stop_reason="stop",
        )

    async def stream(self, config: ProviderConfig, prompt: str) -> AsyncIterator[StreamEvent]:
        response = await self.invoke(config, prompt)
        snapshot = ""
        for start in range(0, len(response.text), self.chunk_size):
            chunk = response.text[start : start + self.chunk_size]
            snapshot += chunk
            yield TextDeltaEvent(content=chunk, snapshot=snapshot)
        yield TextEndEvent(full_text=response.text)
        yield FinishEvent(
            stop_reason=response.stop_reason,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            model=response.model,
        )

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def models_called(self) -> list[str]:
        return [c.model_id for c in self.calls]

    def reset(self, responses: Iterable[Any] | None = None) -> None:
        self.calls.clear()
        self._responses = list(responses or [])
