"""
Chatflow adapter - runs a graph as one turn of a conversation.

A chatflow is an ordinary graph whose user-facing answer comes from a
STREAM_OUTPUT node. The adapter builds the trigger input from the user's
message, the prior turns and the caller's memory, runs the graph to
completion, and hands back the streamed answer. When the graph cannot
produce one (invalid graph, failed run, suspended run, no STREAM_OUTPUT
reached) the result says so with ``fallback=True`` so the caller can use
its default agent instead.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field

from flowengine.errors import FlowEngineError
from flowengine.graph.edge import GraphSpec, load_graph
from flowengine.graph.executor import GraphExecutor
from flowengine.graph.node import NodeType
from flowengine.schemas.run import NodeStatus, Run, RunStatus

logger = logging.getLogger(__name__)


class ChatMessage(BaseModel):
    """One prior turn."""

    role: str = "user"
    content: str


class ChatMemory(BaseModel):
    """
    Caller-owned conversation memory passed into each turn.

    The engine reads it (STREAM_OUTPUT folds it into its system prompt) but
    never writes it back; persisting memory is the caller's concern.
    """

    history: list[ChatMessage] = Field(default_factory=list)
    working_memory: dict[str, Any] = Field(default_factory=dict)
    semantic_recall: list[str] = Field(default_factory=list)
    user_profile: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow"}


@dataclass
class ChatflowResult:
    """Outcome of one chat turn."""

    response: str = ""
    fallback: bool = False
    run_id: str | None = None
    status: RunStatus | None = None
    sources: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None


class ChatflowAdapter:
    """
    Example:
        adapter = ChatflowAdapter(GraphExecutor(llm=provider, retriever=retriever))
        result = await adapter.run(graph, "How do I reset my password?")
        if result.fallback:
            ...  # answer with the default agent
    """

    def __init__(self, executor: GraphExecutor):
        self.executor = executor

    @staticmethod
    def build_trigger_input(user_turn: str, memory: ChatMemory | None = None) -> dict[str, Any]:
        memory = memory or ChatMemory()
        return {
            "message": user_turn,
            "history": [m.model_dump() for m in memory.history],
            "memory": memory.model_dump(exclude={"history"}),
        }

    async def run(
        self,
        graph: "GraphSpec | dict[str, Any] | str",
        user_turn: str,
        prior_memory: ChatMemory | dict[str, Any] | None = None,
    ) -> ChatflowResult:
        """Run one turn. Never raises for graph or run problems; see ``fallback``."""
        if isinstance(prior_memory, dict):
            prior_memory = ChatMemory.model_validate(prior_memory)

        try:
            spec = load_graph(graph)
            if not spec.nodes_of_type(NodeType.STREAM_OUTPUT):
                logger.warning(f"Chatflow '{spec.id}' has no STREAM_OUTPUT node")
            run = await self.executor.execute(
                spec, self.build_trigger_input(user_turn, prior_memory)
            )
        except FlowEngineError as e:
            logger.warning(f"Chatflow could not run, falling back: {e}")
            return ChatflowResult(fallback=True, error=str(e))

        return self.result_from_run(spec, run)

    def result_from_run(self, graph: GraphSpec, run: Run) -> ChatflowResult:
        sources = collect_sources(graph, run)
        if run.status != RunStatus.COMPLETED:
            logger.warning(f"Chatflow run {run.id} ended {run.status}; falling back")
            return ChatflowResult(
                fallback=True,
                run_id=run.id,
                status=run.status,
                sources=sources,
                error=run.error,
            )

        for node_id in run.path:
            node = graph.get_node(node_id)
            result = run.node_results[node_id]
            if node is None or node.type != NodeType.STREAM_OUTPUT:
                continue
            if result.status == NodeStatus.SUCCESS and isinstance(result.output, dict):
                return ChatflowResult(
                    response=str(result.output.get("text", "")),
                    run_id=run.id,
                    status=run.status,
                    sources=sources,
                )

        logger.warning(f"Chatflow run {run.id} produced no streamed answer; falling back")
        return ChatflowResult(
            fallback=True,
            run_id=run.id,
            status=run.status,
            sources=sources,
            error="No STREAM_OUTPUT node produced an answer",
        )


def collect_sources(graph: GraphSpec, run: Run) -> list[dict[str, Any]]:
    """Source references of every successful RAG_SEARCH node, deduplicated, in path order."""
    sources: list[dict[str, Any]] = []
    for node_id in run.path:
        node = graph.get_node(node_id)
        result = run.node_results[node_id]
        if node is None or node.type != NodeType.RAG_SEARCH or result.status != NodeStatus.SUCCESS:
            continue
        output = result.output if isinstance(result.output, dict) else {}
        for ref in output.get("context") or []:
            if ref not in sources:
                sources.append(ref)
    return sources
