"""
ProductIndex: embedding + semantic search over the product catalog.

Owns all embedding logic (calling an Ollama-compatible /api/embed endpoint)
and delegates raw vector storage to a pluggable VectorBackend.

Every indexed product carries its catalog fields as metadata, so a search
hit can be rendered into the prompt without a second lookup.
"""

import asyncio
import logging

import httpx

from chatrelay.storage.backends import VectorBackend

logger = logging.getLogger(__name__)

PRODUCT_FIELDS = ("product_id", "name", "description", "price", "stock", "category")


def _product_document(product: dict) -> str:
    return f"{product.get('name') or ''} {product.get('description') or ''}".strip()


def _product_metadata(product: dict) -> dict:
    """Chroma metadata values must be scalars; drop missing fields."""
    meta = {
        "product_id": str(product.get("product_id") or product.get("id") or product.get("_id") or ""),
        "name": product.get("name") or "",
        "description": product.get("description") or "",
        "category": product.get("category") or "",
    }
    if product.get("price") is not None:
        meta["price"] = float(product["price"])
    if product.get("stock") is not None:
        meta["stock"] = int(product["stock"])
    return meta


class ProductIndex:
    """Embedding + semantic product search over a VectorBackend."""

    def __init__(self, embedding_model: str, embedding_url: str, backend: VectorBackend):
        self.embedding_model = embedding_model
        self.embedding_url = embedding_url.rstrip("/")
        self._backend = backend
        logger.info(
            "ProductIndex initialised (backend=%s, model=%s)",
            type(self._backend).__name__,
            self.embedding_model,
        )

    # ------------------------------------------------------------------
    # Embedding helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_embeddings(resp: httpx.Response, model: str) -> list[list[float]]:
        try:
            data = resp.json()
        except ValueError as e:
            raise RuntimeError(
                f"Embedding endpoint returned non-JSON response: {resp.text[:200]}"
            ) from e
        embeddings = data.get("embeddings")
        if not embeddings or not embeddings[0]:
            raise RuntimeError(f"Embedding model '{model}' returned an empty embeddings array")
        return embeddings

    def _embed(self, texts: list[str]) -> list[list[float]]:
        """Embed a batch of texts (sync, for the indexing CLI)."""
        resp = httpx.post(
            f"{self.embedding_url}/api/embed",
            json={"model": self.embedding_model, "input": texts},
            timeout=60.0,
        )
        resp.raise_for_status()
        return self._parse_embeddings(resp, self.embedding_model)

    async def _embed_async(self, text: str) -> list[float]:
        """Embed one query string (async, for the request pipeline)."""
        async with httpx.AsyncClient() as client:
            resp = await client.post(
                f"{self.embedding_url}/api/embed",
                json={"model": self.embedding_model, "input": text},
                timeout=30.0,
            )
            resp.raise_for_status()
        return self._parse_embeddings(resp, self.embedding_model)[0]

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def upsert_products(self, products: list[dict], batch_size: int = 32) -> int:
        """Embed and index catalog records. Returns the number indexed."""
        indexed = 0
        for start in range(0, len(products), batch_size):
            batch = [p for p in products[start:start + batch_size] if _product_document(p)]
            if not batch:
                continue
            metadatas = [_product_metadata(p) for p in batch]
            embeddings = self._embed([_product_document(p) for p in batch])
            self._backend.upsert(
                ids=[m["product_id"] for m in metadatas],
                embeddings=embeddings,
                documents=[_product_document(p) for p in batch],
                metadatas=metadatas,
            )
            indexed += len(batch)
            logger.debug("Indexed %d/%d products", indexed, len(products))
        logger.info("Indexed %d products", indexed)
        return indexed

    async def search(self, query: str, top_k: int = 5) -> list[dict]:
        """
        Nearest products for a free-text query, most relevant first.
        Raises on embedding or backend failure; callers decide whether to absorb.
        """
        embedding = await self._embed_async(query)
        results = await asyncio.to_thread(self._backend.query, embedding, top_k)

        hits = []
        for i in range(len(results["ids"][0])):
            meta = results["metadatas"][0][i] or {}
            hit = {f: meta.get(f) for f in PRODUCT_FIELDS}
            hit["product_id"] = hit["product_id"] or results["ids"][0][i]
            hit["distance"] = results["distances"][0][i]
            hits.append(hit)
        return hits

    def get_stats(self) -> dict:
        return {"indexed_products": self._backend.count()}
