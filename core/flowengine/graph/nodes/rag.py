"""RAG_SEARCH node: query a retrieval provider for supporting passages."""

import logging

from flowengine.errors import ExecutionError
from flowengine.graph.node import NodeContext, NodeOutcome, NodeSpec, NodeType
from flowengine.graph.nodes.base import NodeExecutor, input_text
from flowengine.graph.template import TemplateScope, render

logger = logging.getLogger(__name__)


class RagSearchExecutor(NodeExecutor):
    """
    Retrieves ranked chunks for a query.

    The query is ``config.query_template`` rendered over the node scope, or
    the user's chat message when no template is set. Output:

        {
            "query": "...",
            "chunks": [{"text", "source_title", "section", "score", "metadata"}, ...],
            "context": [{"title", "section"}, ...],   # source references
            "text": "chunk one\\n\\nchunk two",
        }
    """

    node_types = (NodeType.RAG_SEARCH,)

    async def execute(self, node: NodeSpec, ctx: NodeContext) -> NodeOutcome:
        if ctx.retriever is None:
            raise ExecutionError("No retrieval provider configured for RAG_SEARCH")

        settings = node.settings()
        if settings.query_template:
            query = render(settings.query_template, TemplateScope.from_context(ctx))
        else:
            query = ctx.user_message or input_text(ctx.input)
        query = query.strip()
        if not query:
            raise ExecutionError("RAG search query is empty")

        chunks = await ctx.retriever.search(
            query,
            top_k=settings.top_k,
            scope=settings.knowledge_base_ids or None,
        )
        chunks = chunks[: settings.top_k]
        logger.info(f"Retrieved {len(chunks)} chunk(s) for node '{node.id}'")

        return NodeOutcome(
            output={
                "query": query,
                "chunks": [chunk.to_dict() for chunk in chunks],
                "context": [chunk.source_ref() for chunk in chunks],
                "text": "\n\n".join(chunk.text for chunk in chunks),
            }
        )
