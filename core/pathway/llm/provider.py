"""AI provider abstraction used by AI Model nodes."""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import asdict, dataclass, field
from typing import Any

from pathway.config import DEFAULT_MODEL, DEFAULT_TEMPERATURE


@dataclass
class ProviderConfig:
    """Which model to call and how."""

    provider: str = "openai"
    model: str = "gpt-4o-mini"
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = 1024
    system_prompt: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def model_id(self) -> str:
        """Model id in ``provider/model`` form (``local`` maps to ollama)."""
        if "/" in self.model:
            return self.model
        provider = "ollama" if self.provider == "local" else self.provider
        return f"{provider}/{self.model}"

    @classmethod
    def from_model_id(cls, model_id: str, **kwargs: Any) -> "ProviderConfig":
        """Build a config from ``provider/model`` (bare names default to openai)."""
        if "/" in model_id:
            provider, model = model_id.split("/", 1)
        else:
            provider, model = DEFAULT_MODEL.split("/", 1)[0], model_id
        return cls(provider=provider, model=model, **kwargs)


@dataclass
class TokenUsage:
    """Token accounting for one provider call."""

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> dict[str, int]:
        return {**asdict(self), "total_tokens": self.total_tokens}


@dataclass
class LLMResponse:
    """Response from a provider call."""

    text: str
    model: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    stop_reason: str = ""
    raw_response: Any = None


class LLMProvider(ABC):
    """
    Uniform capability for invoking an AI model.

    Implementations handle authentication, request formatting and transport,
    and raise ``ProviderError`` on any failure so the AI node can apply its
    retry/fallback policy.
    """

    @abstractmethod
    async def invoke(self, config: ProviderConfig, prompt: str) -> LLMResponse:
        """
        Run one completion.

        Args:
            config: Provider, model, sampling and system prompt settings
            prompt: User prompt text

        Returns:
            LLMResponse with text and token usage
        """
        pass

    async def stream(self, config: ProviderConfig, prompt: str) -> AsyncIterator["StreamEvent"]:
        """
        Stream a completion as an async iterator of StreamEvents.

        Default implementation wraps invoke() with synthetic events.
        Subclasses SHOULD override for true streaming.
        """
        from pathway.llm.stream_events import FinishEvent, TextDeltaEvent, TextEndEvent

        response = await self.invoke(config, prompt)
        yield TextDeltaEvent(content=response.text, snapshot=response.text)
        yield TextEndEvent(full_text=response.text)
        yield FinishEvent(
            stop_reason=response.stop_reason,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            model=response.model,
        )


# Deferred import target for type annotation
from pathway.llm.stream_events import StreamEvent as StreamEvent  # noqa: E402, F401
