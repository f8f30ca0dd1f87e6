"""AI provider abstraction."""

from pathway.llm.litellm import LiteLLMProvider
from pathway.llm.mock import MockLLMProvider
from pathway.llm.provider import LLMProvider, LLMResponse, ProviderConfig, TokenUsage
from pathway.llm.stream_events import (
    FinishEvent,
    StreamErrorEvent,
    StreamEvent,
    TextDeltaEvent,
    TextEndEvent,
)

__all__ = [
    "LLMProvider",
    "LLMResponse",
    "ProviderConfig",
    "TokenUsage",
    "LiteLLMProvider",
    "MockLLMProvider",
    "StreamEvent",
    "TextDeltaEvent",
    "TextEndEvent",
    "FinishEvent",
    "StreamErrorEvent",
]
