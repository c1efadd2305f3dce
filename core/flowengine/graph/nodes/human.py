"""Human-in-the-loop nodes: APPROVAL and HANDOFF."""

import logging
from typing import Any

from flowengine.errors import ApprovalRejectedError
from flowengine.graph.hitl import HITLDecision, HITLKind, HITLRequest
from flowengine.graph.node import NodeContext, NodeOutcome, NodeSpec, NodeType
from flowengine.graph.nodes.base import NodeExecutor
from flowengine.graph.template import TemplateScope, render

logger = logging.getLogger(__name__)

_PREVIEW_CHARS = 500


def _preview(value: Any) -> Any:
    text = value if isinstance(value, str) else None
    if text is not None and len(text) > _PREVIEW_CHARS:
        return text[:_PREVIEW_CHARS] + "..."
    return value


class ApprovalExecutor(NodeExecutor):
    """
    Suspends the run until a reviewer decides.

    On resume an approval becomes the node output (the decision payload with
    ``approved: true``); a rejection fails the node, and with it the run
    unless the node tolerates failure.
    """

    node_types = (NodeType.APPROVAL,)

    async def execute(self, node: NodeSpec, ctx: NodeContext) -> NodeOutcome:
        settings = node.settings()
        request = HITLRequest(
            prompt=render(settings.prompt, TemplateScope.from_context(ctx)),
            kind=HITLKind.APPROVAL,
            assign_to=settings.assign_to,
            options=list(settings.options),
            data={"input": _preview(ctx.input)},
        )
        logger.info(f"⏸ Approval requested at '{node.id}'")
        return NodeOutcome(suspend=request)

    async def on_resume(self, node: NodeSpec, decision: Any) -> NodeOutcome:
        parsed = HITLDecision.from_payload(decision)
        if parsed.rejected:
            reason = f": {parsed.comment}" if parsed.comment else ""
            raise ApprovalRejectedError(f"Rejected by reviewer{reason}")
        return NodeOutcome(output=parsed.to_output())


class HandoffExecutor(NodeExecutor):
    """
    Suspends the run while a human operator takes over.

    Whatever the operator sends back on resume is the node output.
    """

    node_types = (NodeType.HANDOFF,)

    async def execute(self, node: NodeSpec, ctx: NodeContext) -> NodeOutcome:
        settings = node.settings()
        request = HITLRequest(
            prompt=render(settings.prompt, TemplateScope.from_context(ctx)),
            kind=HITLKind.HANDOFF,
            assign_to=settings.assign_to,
            data={"input": _preview(ctx.input), "message": ctx.user_message},
        )
        logger.info(f"⏸ Handoff requested at '{node.id}'")
        return NodeOutcome(suspend=request)

    async def on_resume(self, node: NodeSpec, decision: Any) -> NodeOutcome:
        if isinstance(decision, dict):
            return NodeOutcome(output=dict(decision))
        return NodeOutcome(output={"response": decision})
