"""Trigger nodes: the entry point of every run."""

from flowengine.graph.node import NodeContext, NodeOutcome, NodeSpec, NodeType
from flowengine.graph.nodes.base import NodeExecutor


class TriggerExecutor(NodeExecutor):
    """Emits the trigger input unchanged (manual invocation or webhook body)."""

    node_types = (NodeType.TRIGGER_MANUAL, NodeType.TRIGGER_WEBHOOK)

    async def execute(self, node: NodeSpec, ctx: NodeContext) -> NodeOutcome:
        return NodeOutcome(output=ctx.trigger_input)
