"""LiteLLM-backed provider: one interface to OpenAI, Anthropic, Gemini, Ollama, etc.

Model strings follow LiteLLM's ``provider/model`` convention, e.g.
``openai/gpt-4o-mini`` or ``anthropic/claude-sonnet-4-20250514``.
Transient failures (rate limits, 5xx, timeouts) are retried inside LiteLLM
via ``num_retries``; anything that still fails surfaces as ExecutionError.
"""

import logging
from collections.abc import AsyncIterator
from typing import Any

import litellm

from flowengine.errors import ExecutionError
from flowengine.llm.provider import LLMProvider, LLMResponse
from flowengine.llm.stream_events import (
    FinishEvent,
    StreamEvent,
    TextDeltaEvent,
    TextEndEvent,
)

logger = logging.getLogger(__name__)

DEFAULT_NUM_RETRIES = 2


class LiteLLMProvider(LLMProvider):
    """
    Provider that routes calls through ``litellm.acompletion``.

    Example:
        llm = LiteLLMProvider(model="openai/gpt-4o-mini")
        response = await llm.complete([{"role": "user", "content": "Hello"}])
    """

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        api_base: str | None = None,
        num_retries: int = DEFAULT_NUM_RETRIES,
        **extra_kwargs: Any,
    ):
        self.model = model
        self.api_key = api_key
        self.api_base = api_base
        self.num_retries = num_retries
        self.extra_kwargs = extra_kwargs

    def _build_kwargs(
        self,
        messages: list[dict[str, Any]],
        system: str,
        model: str | None,
        max_tokens: int,
        **options: Any,
    ) -> dict[str, Any]:
        full_messages = list(messages)
        if system:
            full_messages.insert(0, {"role": "system", "content": system})

        kwargs: dict[str, Any] = {
            "model": model or self.model,
            "messages": full_messages,
            "max_tokens": max_tokens,
            "num_retries": self.num_retries,
            **self.extra_kwargs,
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        kwargs.update({k: v for k, v in options.items() if v is not None})
        return kwargs

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
        kwargs = self._build_kwargs(
            messages,
            system,
            model,
            max_tokens,
            temperature=temperature,
            top_p=top_p,
            stop=stop,
            response_format={"type": "json_object"} if json_mode else None,
        )
        try:
            response = await litellm.acompletion(**kwargs)
        except Exception as e:
            logger.error(f"Model call to {kwargs['model']} failed: {e}")
            raise ExecutionError(f"Model call failed: {e}") from e

        choice = response.choices[0]
        usage = getattr(response, "usage", None)
        return LLMResponse(
            content=choice.message.content or "",
            model=getattr(response, "model", None) or kwargs["model"],
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            stop_reason=choice.finish_reason or "",
            raw_response=response,
        )

    async def stream(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        model: str | None = None,
        max_tokens: int = 4096,
        temperature: float | None = None,
    ) -> AsyncIterator[StreamEvent]:
        kwargs = self._build_kwargs(
            messages,
            system,
            model,
            max_tokens,
            temperature=temperature,
            stream=True,
            stream_options={"include_usage": True},
        )
        try:
            response = await litellm.acompletion(**kwargs)
        except Exception as e:
            logger.error(f"Streaming call to {kwargs['model']} failed: {e}")
            raise ExecutionError(f"Model call failed: {e}") from e

        accumulated = ""
        stop_reason = ""
        input_tokens = output_tokens = 0
        model_name = kwargs["model"]
        try:
            async for chunk in response:
                model_name = getattr(chunk, "model", None) or model_name
                usage = getattr(chunk, "usage", None)
                if usage:
                    input_tokens = getattr(usage, "prompt_tokens", 0) or input_tokens
                    output_tokens = getattr(usage, "completion_tokens", 0) or output_tokens
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                delta = getattr(choice.delta, "content", None)
                if delta:
                    accumulated += delta
                    yield TextDeltaEvent(content=delta, snapshot=accumulated)
                if choice.finish_reason:
                    stop_reason = choice.finish_reason
        except Exception as e:
            logger.error(f"Stream from {model_name} broke after {len(accumulated)} chars: {e}")
            raise ExecutionError(f"Model stream failed: {e}") from e

        yield TextEndEvent(full_text=accumulated)
        yield FinishEvent(
            stop_reason=stop_reason,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=model_name,
        )
