"""Retrieval provider abstraction."""

from flowengine.retrieval.provider import RetrievalProvider, RetrievedChunk

__all__ = ["RetrievalProvider", "RetrievedChunk"]
