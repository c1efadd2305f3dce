"""Model-call provider abstraction."""

from flowengine.llm.litellm import LiteLLMProvider
from flowengine.llm.mock import MockLLMProvider
from flowengine.llm.provider import LLMProvider, LLMResponse
from flowengine.llm.stream_events import (
    FinishEvent,
    StreamErrorEvent,
    StreamEvent,
    TextDeltaEvent,
    TextEndEvent,
)

__all__ = [
    "LLMProvider",
    "LLMResponse",
    "LiteLLMProvider",
    "MockLLMProvider",
    "StreamEvent",
    "TextDeltaEvent",
    "TextEndEvent",
    "FinishEvent",
    "StreamErrorEvent",
]
