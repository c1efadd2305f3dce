"""Node executors, one per node type."""

from flowengine.graph.nodes.base import NodeExecutor, input_text
from flowengine.graph.nodes.data import CodeExecutor, OutputParserExecutor, TransformExecutor
from flowengine.graph.nodes.human import ApprovalExecutor, HandoffExecutor
from flowengine.graph.nodes.llm import LLMExecutor, StreamOutputExecutor
from flowengine.graph.nodes.rag import RagSearchExecutor
from flowengine.graph.nodes.registry import BUILTIN_EXECUTORS, NodeExecutorRegistry
from flowengine.graph.nodes.routing import MergeExecutor, ParallelExecutor, SwitchExecutor
from flowengine.graph.nodes.trigger import TriggerExecutor

__all__ = [
    "NodeExecutor",
    "NodeExecutorRegistry",
    "BUILTIN_EXECUTORS",
    "input_text",
    "TriggerExecutor",
    "LLMExecutor",
    "StreamOutputExecutor",
    "TransformExecutor",
    "CodeExecutor",
    "OutputParserExecutor",
    "RagSearchExecutor",
    "ParallelExecutor",
    "MergeExecutor",
    "SwitchExecutor",
    "ApprovalExecutor",
    "HandoffExecutor",
]
