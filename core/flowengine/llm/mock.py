"""Deterministic provider for tests and dry runs (``flowengine run --mock``)."""

import asyncio
from collections.abc import AsyncIterator, Callable
from typing import Any

from flowengine.errors import ExecutionError
from flowengine.llm.provider import LLMProvider, LLMResponse
from flowengine.llm.stream_events import (
    FinishEvent,
    StreamEvent,
    TextDeltaEvent,
    TextEndEvent,
)

Responder = Callable[[list[dict[str, Any]], str], str]


class MockLLMProvider(LLMProvider):
    """
    Returns canned responses without calling any backend.

    ``responses`` are consumed in order; once exhausted (or when none are
    given) ``responder`` is used, which by default echoes the last user
    message. Every call is recorded in ``calls``.

    Example:
        llm = MockLLMProvider(responses=["first", "second"])
        llm = MockLLMProvider(responder=lambda messages, system: "always this")
        llm = MockLLMProvider(error="provider down")  # every call fails
    """

    def __init__(
        self,
        responses: list[str] | None = None,
        responder: Responder | None = None,
        model: str = "mock/model",
        chunk_size: int = 8,
        delay: float = 0.0,
        error: str | None = None,
    ):
        self.responses = list(responses or [])
        self.responder = responder or self._echo
        self.model = model
        self.chunk_size = max(1, chunk_size)
        self.delay = delay
        self.error = error
        self.calls: list[dict[str, Any]] = []

    @staticmethod
    def _echo(messages: list[dict[str, Any]], system: str) -> str:
        for message in reversed(messages):
            if message.get("role") == "user":
                return f"Echo: {message.get('content', '')}"
        return "Echo:"

    async def _respond(self, messages: list[dict[str, Any]], system: str, **options: Any) -> str:
        self.calls.append({"messages": list(messages), "system": system, **options})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise ExecutionError(f"Model call failed: {self.error}")
        if self.responses:
            return self.responses.pop(0)
        return self.responder(messages, system)

    async def complete(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        model: str | None = None,
        max_tokens: int = 1024,
        temperature: float | None = None,
        top_p: float | None = None,
        stop: list[str] | None = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        content = await self._respond(
            messages, system, model=model, temperature=temperature, json_mode=json_mode
        )
        return LLMResponse(
            content=content,
            model=model or self.model,
            input_tokens=sum(len(str(m.get("content", ""))) for m in messages) // 4,
            output_tokens=len(content) // 4,
            stop_reason="stop",
        )

    async def stream(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        model: str | None = None,
        max_tokens: int = 4096,
        temperature: float | None = None,
    ) -> AsyncIterator[StreamEvent]:
        content = await self._respond(
            messages, system, model=model, temperature=temperature, stream=True
        )
        accumulated = ""
        for i in range(0, len(content), self.chunk_size):
            chunk = content[i : i + self.chunk_size]
            accumulated += chunk
            yield TextDeltaEvent(content=chunk, snapshot=accumulated)
        yield TextEndEvent(full_text=accumulated)
        yield FinishEvent(
            stop_reason="stop",
            input_tokens=0,
            output_tokens=len(content) // 4,
            model=model or self.model,
        )
