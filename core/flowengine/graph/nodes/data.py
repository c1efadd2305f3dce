"""
Data nodes: TRANSFORM, CODE and OUTPUT_PARSER.

TRANSFORM evaluates one expression; CODE runs a short sandboxed function
body; OUTPUT_PARSER turns model text into structured data.
"""

import asyncio
import json
import logging
import re
from typing import Any

from flowengine.errors import OutputParseError, TemplateError
from flowengine.graph.code_sandbox import CodeSandbox
from flowengine.graph.node import NodeContext, NodeOutcome, NodeSpec, NodeType
from flowengine.graph.nodes.base import NodeExecutor
from flowengine.graph.template import TemplateScope, evaluate, render_value

logger = logging.getLogger(__name__)

_FENCE_PATTERN = re.compile(r"^```(?:json|JSON)?\s*\n?(.*?)\n?\s*```$", re.DOTALL)
_OBJECT_PATTERN = re.compile(r"\{.*\}", re.DOTALL)


class TransformExecutor(NodeExecutor):
    """
    Evaluates ``config.expression`` over the node's scope.

    Examples:
        "input.text"                           -> the upstream text
        "upper(input.text)"                    -> upper-cased text
        "{'summary': input.text, 'lang': $variables.lang}"
        "Summary: {{ input.text }}"            -> rendered string
    """

    node_types = (NodeType.TRANSFORM,)

    async def execute(self, node: NodeSpec, ctx: NodeContext) -> NodeOutcome:
        expression = node.settings().expression
        scope = TemplateScope.from_context(ctx)
        try:
            if "{{" in expression:
                value = render_value(expression, scope)
            else:
                value = evaluate(expression, scope)
        except TemplateError as e:
            raise TemplateError(f"Transform error: {e}") from e
        return NodeOutcome(output=value)


class CodeExecutor(NodeExecutor):
    """
    Runs ``config.code`` in the code sandbox.

    The body sees ``input``, ``variables``, ``trigger`` and ``nodes`` and
    returns the node output:

        total = sum(item["price"] for item in input["items"])
        return {"total": total}
    """

    node_types = (NodeType.CODE,)

    def __init__(self, sandbox: CodeSandbox | None = None):
        self.sandbox = sandbox or CodeSandbox()

    async def execute(self, node: NodeSpec, ctx: NodeContext) -> NodeOutcome:
        code = node.settings().code
        # Blocking user code runs off the event loop; the scheduler's timeout
        # abandons it if it overruns
        result = await asyncio.to_thread(
            self.sandbox.run,
            code,
            input=ctx.input,
            variables=ctx.variables,
            trigger=ctx.trigger_input,
            nodes=ctx.node_outputs,
        )
        return NodeOutcome(output=result)


def strip_code_fences(text: str) -> str:
    """Remove a surrounding markdown code fence (```json ... ```)."""
    stripped = text.strip()
    match = _FENCE_PATTERN.match(stripped)
    return match.group(1).strip() if match else stripped


def parse_json_text(text: str) -> Any:
    """
    Parse JSON out of model text.

    Raises:
        ValueError: if the text (after fence stripping) is not a JSON object
            or array.
    """
    candidate = strip_code_fences(text)
    if not candidate.startswith(("{", "[")):
        raise ValueError("text does not start with a JSON object or array")
    return json.loads(candidate)


class OutputParserExecutor(NodeExecutor):
    """
    Extracts structured data from upstream text.

    Object results are returned with the source text under ``text``.
    In strict mode a parse failure fails the node; otherwise the first
    ``{...}`` block is tried and, failing that, ``{"text": ..., "parsed": False}``
    is returned.
    """

    node_types = (NodeType.OUTPUT_PARSER,)

    async def execute(self, node: NodeSpec, ctx: NodeContext) -> NodeOutcome:
        strict = node.settings().strict
        text = self._source_text(ctx.input)

        if text is None:
            if strict:
                raise OutputParseError("Output parser expected text input")
            return NodeOutcome(output=ctx.input)

        candidate = strip_code_fences(text)
        try:
            parsed = parse_json_text(candidate)
        except ValueError as e:
            if strict:
                raise OutputParseError(f"Failed to parse JSON output: {e}") from e
            return NodeOutcome(output=self._lenient_fallback(candidate))

        if isinstance(parsed, dict):
            return NodeOutcome(output={**parsed, "text": candidate})
        return NodeOutcome(output=parsed)

    def _source_text(self, value: Any) -> str | None:
        if isinstance(value, str):
            return value
        if isinstance(value, dict) and isinstance(value.get("text"), str):
            return value["text"]
        return None

    def _lenient_fallback(self, text: str) -> dict[str, Any]:
        match = _OBJECT_PATTERN.search(text)
        if match:
            try:
                parsed = json.loads(match.group(0))
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, dict):
                return {**parsed, "text": text}
        logger.debug("Output parser found no JSON; returning raw text")
        return {"text": text, "parsed": False}

