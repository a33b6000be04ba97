"""
Product search tool: lets the model query the catalog mid-turn,
for follow-ups the up-front context did not cover.
"""

import logging

logger = logging.getLogger(__name__)


class SearchProductsTool:
    name = "search_products"
    description = "Search the product catalog by keyword or description"
    parameters = {
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "What the customer is looking for"},
        },
        "required": ["query"],
    }

    def __init__(self, index, max_results: int = 5):
        self.index = index
        self.max_results = max_results

    async def execute(self, arguments: dict, context) -> dict:
        query = str(arguments.get("query", "")).strip()
        if not query:
            return {"products": [], "note": "empty query"}
        hits = await self.index.search(query, top_k=self.max_results)
        logger.debug("search_products(%r) -> %d hits", query, len(hits))
        return {
            "products": [
                {k: v for k, v in hit.items() if k != "distance"}
                for hit in hits
            ]
        }
