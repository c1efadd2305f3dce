"""
Node executor protocol.

One executor class handles one or more node types. The scheduler knows
nothing about individual types: it looks the executor up in the registry,
awaits ``execute``, and acts on the NodeOutcome (record the output, follow
the branch, or suspend). Raising means the node failed.
"""

import json
from abc import ABC, abstractmethod
from typing import Any, ClassVar

from flowengine.errors import ExecutionError
from flowengine.graph.node import NodeContext, NodeOutcome, NodeSpec, NodeType


class NodeExecutor(ABC):
    """
    Base class for node executors.

    Class attributes:
        node_types: the node types this executor handles
        continue_on_error: default failure policy for those types; a node's
            own ``continue_on_error`` overrides it
    """

    node_types: ClassVar[tuple[NodeType, ...]] = ()
    continue_on_error: ClassVar[bool] = False

    @abstractmethod
    async def execute(self, node: NodeSpec, ctx: NodeContext) -> NodeOutcome:
        """Run the node and return its outcome. Raise to fail the node."""

    async def on_resume(self, node: NodeSpec, decision: Any) -> NodeOutcome:
        """Turn an external decision into the outcome of a suspended node."""
        raise ExecutionError(f"Node type '{node.type}' does not suspend and cannot be resumed")

    def tolerates_failure(self, node: NodeSpec) -> bool:
        """Whether a failure of ``node`` leaves the run running."""
        if node.continue_on_error is not None:
            return node.continue_on_error
        return self.continue_on_error


def input_text(value: Any) -> str:
    """
    Best text rendering of a node input for prompts and queries.

    Strings pass through; chat trigger payloads yield their message; model
    outputs yield their text; anything else is JSON-encoded.
    """
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        for key in ("message", "text"):
            if isinstance(value.get(key), str):
                return value[key]
    return json.dumps(value, ensure_ascii=False, default=str)
