"""
Routing nodes: PARALLEL, MERGE and SWITCH.

These executors only shape data and name a branch; the scheduler owns the
actual fan-out, join and routing decisions.
"""

import logging
from typing import Any

from flowengine.graph.edge import DEFAULT_HANDLE
from flowengine.graph.node import MergeStrategy, NodeContext, NodeOutcome, NodeSpec, NodeType
from flowengine.graph.nodes.base import NodeExecutor
from flowengine.graph.template import TemplateScope, evaluate, render_value

logger = logging.getLogger(__name__)


class ParallelExecutor(NodeExecutor):
    """Passes its input through; every outgoing branch is started concurrently."""

    node_types = (NodeType.PARALLEL,)

    async def execute(self, node: NodeSpec, ctx: NodeContext) -> NodeOutcome:
        return NodeOutcome(output=ctx.input)


class MergeExecutor(NodeExecutor):
    """
    Combines inbound branch outputs.

    ``ctx.inputs`` maps each resolved source id to its output, in the order
    the sources finished. For first and any it holds only the branches that
    succeeded.

    - all:   {source_id: output} for every inbound source (null for a
             tolerated failure)
    - first: the output of the branch that succeeded first
    - any:   the first non-null output, or null
    """

    node_types = (NodeType.MERGE,)

    async def execute(self, node: NodeSpec, ctx: NodeContext) -> NodeOutcome:
        strategy = node.settings().strategy
        outputs = list(ctx.inputs.values())

        if strategy == MergeStrategy.ALL:
            return NodeOutcome(output=dict(ctx.inputs))
        if strategy == MergeStrategy.FIRST:
            return NodeOutcome(output=outputs[0] if outputs else None)
        return NodeOutcome(output=next((o for o in outputs if o is not None), None))


def discriminant_text(value: Any) -> str:
    """String form a SWITCH compares against its case values."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class SwitchExecutor(NodeExecutor):
    """
    Evaluates ``config.switch_on`` and picks the matching case.

    The branch is the matching case id, or ``default`` when nothing matches.
    Only edges carrying that handle are followed, so a SWITCH without a
    ``default`` edge simply ends that path when no case matches. The input
    passes through as the output.
    """

    node_types = (NodeType.SWITCH,)

    async def execute(self, node: NodeSpec, ctx: NodeContext) -> NodeOutcome:
        settings = node.settings()
        scope = TemplateScope.from_context(ctx)
        if "{{" in settings.switch_on:
            value = render_value(settings.switch_on, scope)
        else:
            value = evaluate(settings.switch_on, scope)

        text = discriminant_text(value)
        branch = next((case.id for case in settings.cases if case.value == text), DEFAULT_HANDLE)
        logger.info(f"⑂ Switch '{node.id}' on {text!r} → {branch}")
        return NodeOutcome(output=ctx.input, branch=branch)
