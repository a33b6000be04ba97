"""
Context retrieval: ranked product snippets for the prompt.

Retrieval is fail-soft: a broken or missing index means the turn proceeds
with no context, never that the turn fails. One attempt, no retry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContextSnippet:
    """One retrieved product, ranked (1 = most relevant)."""
    product_id: str
    name: str
    description: str = ""
    price: float | None = None
    stock: int | None = None
    category: str = ""
    rank: int = 0


class ContextRetriever:
    """Turns a user query into ranked ContextSnippets via a ProductIndex."""

    def __init__(self, index=None, top_k: int = 5):
        self.index = index
        self.top_k = top_k

    async def retrieve(self, query: str, limit: int | None = None) -> list[ContextSnippet]:
        if self.index is None or not query.strip():
            return []

        try:
            hits = await self.index.search(query, top_k=limit or self.top_k)
        except Exception as e:
            logger.warning("Context retrieval failed, continuing without context: %s", e)
            return []

        snippets = [
            ContextSnippet(
                product_id=str(hit.get("product_id") or ""),
                name=hit.get("name") or "",
                description=hit.get("description") or "",
                price=hit.get("price"),
                stock=hit.get("stock"),
                category=hit.get("category") or "",
                rank=rank,
            )
            for rank, hit in enumerate(hits, start=1)
        ]
        logger.debug("Retrieved %d snippets for %r", len(snippets), query[:80])
        return snippets
