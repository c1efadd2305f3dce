"""
Model-call nodes: LLM (single completion) and STREAM_OUTPUT (streamed answer).

Both render their prompt templates over the node scope and read chat
history from the trigger input. STREAM_OUTPUT additionally folds retrieval
context and caller-supplied memory into the prompt and publishes every
text delta as a ``step:stream-chunk`` event while it streams.
"""

import json
import logging
from typing import Any

from flowengine.errors import ExecutionError
from flowengine.graph.node import NodeContext, NodeOutcome, NodeSpec, NodeType
from flowengine.graph.nodes.base import NodeExecutor, input_text
from flowengine.graph.nodes.data import parse_json_text
from flowengine.graph.template import TemplateScope, render
from flowengine.llm.stream_events import FinishEvent, StreamErrorEvent, TextDeltaEvent

logger = logging.getLogger(__name__)


def _model_options(settings: Any, ctx: NodeContext) -> dict[str, Any]:
    engine = ctx.config
    return {
        "model": settings.model or (engine.model if engine else None),
        "max_tokens": settings.max_tokens or (engine.max_tokens if engine else 1024),
        "temperature": (
            settings.temperature
            if settings.temperature is not None
            else (engine.temperature if engine else None)
        ),
    }


def _history(settings: Any, ctx: NodeContext) -> list[dict[str, Any]]:
    if not settings.include_history:
        return []
    return [{"role": m.get("role", "user"), "content": m["content"]} for m in ctx.history]


class LLMExecutor(NodeExecutor):
    """
    One model completion.

    Output: ``{text, model, usage, finish_reason}``, plus ``data`` when
    ``json_output`` is set and ``context`` when the input carried retrieval
    source references.
    """

    node_types = (NodeType.LLM,)

    async def execute(self, node: NodeSpec, ctx: NodeContext) -> NodeOutcome:
        if ctx.llm is None:
            raise ExecutionError("No model provider configured for LLM node")

        settings = node.settings()
        scope = TemplateScope.from_context(ctx)
        system = render(settings.system_prompt, scope)
        prompt = render(settings.prompt, scope) if settings.prompt else input_text(ctx.input)

        messages = _history(settings, ctx) + [{"role": "user", "content": prompt}]
        response = await ctx.llm.complete(
            messages,
            system=system,
            top_p=settings.top_p,
            stop=settings.stop,
            json_mode=settings.json_output,
            **_model_options(settings, ctx),
        )
        logger.info(
            f"LLM '{node.id}' answered with {len(response.content)} chars",
            extra={"model": response.model},
        )

        output: dict[str, Any] = {
            "text": response.content,
            "model": response.model,
            "usage": response.usage,
            "finish_reason": response.stop_reason,
        }
        if settings.json_output:
            try:
                output["data"] = parse_json_text(response.content)
            except ValueError as e:
                raise ExecutionError(f"Model did not return valid JSON: {e}") from e
        if isinstance(ctx.input, dict) and "context" in ctx.input:
            output["context"] = ctx.input["context"]
        return NodeOutcome(output=output)


def retrieval_text(value: Any) -> str:
    """Text of any retrieval results found in a node input (one level deep)."""
    if isinstance(value, dict):
        if isinstance(value.get("chunks"), list):
            return "\n\n".join(
                str(c.get("text", "")) for c in value["chunks"] if isinstance(c, dict)
            )
        parts = [retrieval_text(v) for v in value.values() if isinstance(v, dict)]
        return "\n\n".join(p for p in parts if p)
    return ""


def memory_block(memory: Any) -> str:
    """Render caller-supplied chat memory as a system prompt section."""
    if not isinstance(memory, dict):
        return ""
    sections = []
    profile = memory.get("user_profile")
    if profile:
        sections.append(f"## User profile\n{json.dumps(profile, ensure_ascii=False)}")
    recall = memory.get("semantic_recall")
    if recall:
        sections.append("## Relevant memories\n" + "\n".join(f"- {item}" for item in recall))
    working = memory.get("working_memory")
    if working:
        sections.append(f"## Working memory\n{json.dumps(working, ensure_ascii=False)}")
    return "\n\n".join(sections)


class StreamOutputExecutor(NodeExecutor):
    """
    Streams the user-facing answer of a chatflow.

    Output: ``{text, model, usage, finish_reason, streamed: True}``.
    """

    node_types = (NodeType.STREAM_OUTPUT,)

    async def execute(self, node: NodeSpec, ctx: NodeContext) -> NodeOutcome:
        if ctx.llm is None:
            raise ExecutionError("No model provider configured for STREAM_OUTPUT node")

        settings = node.settings()
        scope = TemplateScope.from_context(ctx)

        system = render(settings.system_prompt, scope)
        if settings.include_memory and isinstance(ctx.trigger_input, dict):
            memory = memory_block(ctx.trigger_input.get("memory"))
            if memory:
                system = f"{system}\n\n{memory}" if system else memory

        messages = _history(settings, ctx) + [
            {"role": "user", "content": self._build_prompt(settings, ctx, scope)}
        ]
        options = _model_options(settings, ctx)

        accumulated = ""
        finish: FinishEvent | None = None
        async for event in ctx.llm.stream(messages, system=system, **options):
            if isinstance(event, TextDeltaEvent):
                accumulated += event.content
                await ctx.emit_chunk(event.content, accumulated)
            elif isinstance(event, StreamErrorEvent):
                raise ExecutionError(f"Model stream failed: {event.error}")
            elif isinstance(event, FinishEvent):
                finish = event

        logger.info(f"Streamed {len(accumulated)} chars from '{node.id}'")
        return NodeOutcome(
            output={
                "text": accumulated,
                "model": (finish.model if finish and finish.model else options["model"]),
                "usage": {
                    "input_tokens": finish.input_tokens if finish else 0,
                    "output_tokens": finish.output_tokens if finish else 0,
                },
                "finish_reason": finish.stop_reason if finish else "",
                "streamed": True,
            }
        )

    def _build_prompt(self, settings: Any, ctx: NodeContext, scope: TemplateScope) -> str:
        if settings.prompt:
            return render(settings.prompt, scope)

        question = ctx.user_message or input_text(ctx.input)
        context = retrieval_text(ctx.input)
        if not context:
            return question
        return (
            f"User question: {question}\n\n"
            f"Relevant context:\n{context}\n\n"
            "Please answer the user's question based on the context above."
        )
