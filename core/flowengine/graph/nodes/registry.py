"""Registry mapping each node type to its executor."""

import logging

from flowengine.errors import ExecutionError
from flowengine.graph.node import NodeType
from flowengine.graph.nodes.base import NodeExecutor
from flowengine.graph.nodes.data import CodeExecutor, OutputParserExecutor, TransformExecutor
from flowengine.graph.nodes.human import ApprovalExecutor, HandoffExecutor
from flowengine.graph.nodes.llm import LLMExecutor, StreamOutputExecutor
from flowengine.graph.nodes.rag import RagSearchExecutor
from flowengine.graph.nodes.routing import MergeExecutor, ParallelExecutor, SwitchExecutor
from flowengine.graph.nodes.trigger import TriggerExecutor

logger = logging.getLogger(__name__)

BUILTIN_EXECUTORS: tuple[type[NodeExecutor], ...] = (
    TriggerExecutor,
    LLMExecutor,
    TransformExecutor,
    CodeExecutor,
    RagSearchExecutor,
    ParallelExecutor,
    MergeExecutor,
    SwitchExecutor,
    ApprovalExecutor,
    HandoffExecutor,
    StreamOutputExecutor,
    OutputParserExecutor,
)


class NodeExecutorRegistry:
    """
    Exactly one executor per node type.

    Example:
        registry = NodeExecutorRegistry.default()
        registry.register(MyLLMExecutor(), replace=True)  # swap in a custom LLM node
    """

    def __init__(self, executors: list[NodeExecutor] | None = None):
        self._executors: dict[NodeType, NodeExecutor] = {}
        for executor in executors or []:
            self.register(executor)

    @classmethod
    def default(cls) -> "NodeExecutorRegistry":
        """Registry with every built-in executor."""
        return cls([executor_cls() for executor_cls in BUILTIN_EXECUTORS])

    def register(self, executor: NodeExecutor, replace: bool = False) -> None:
        """Register ``executor`` for each of its node types."""
        if not executor.node_types:
            raise ValueError(f"{type(executor).__name__} declares no node types")
        for node_type in executor.node_types:
            if node_type in self._executors and not replace:
                raise ValueError(f"An executor is already registered for '{node_type}'")
            self._executors[node_type] = executor
            logger.debug(f"Registered {type(executor).__name__} for {node_type}")

    def get(self, node_type: NodeType) -> NodeExecutor:
        try:
            return self._executors[node_type]
        except KeyError:
            raise ExecutionError(f"No executor registered for node type '{node_type}'") from None

    def __contains__(self, node_type: object) -> bool:
        return node_type in self._executors

    def missing_types(self) -> list[NodeType]:
        return [t for t in NodeType if t not in self._executors]
