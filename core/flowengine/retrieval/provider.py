"""Retrieval provider abstraction.

The engine only needs ranked chunks for a query; how they are indexed and
ranked belongs to the provider.
"""

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass
class RetrievedChunk:
    """One ranked passage returned by a retrieval provider."""

    text: str
    source_title: str = ""
    section: str | None = None
    score: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def source_ref(self) -> dict[str, Any]:
        """Citation for this chunk: {title, section}."""
        return {"title": self.source_title, "section": self.section}


class RetrievalProvider(ABC):
    """Looks up passages relevant to a query."""

    @abstractmethod
    async def search(
        self,
        query: str,
        top_k: int = 5,
        scope: list[str] | None = None,
    ) -> list[RetrievedChunk]:
        """
        Return up to ``top_k`` chunks, best first.

        Args:
            query: Free-text query
            top_k: Maximum number of chunks
            scope: Knowledge-base ids to restrict the search to (None = all)
        """
        pass
