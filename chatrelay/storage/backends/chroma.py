"""
ChromaBackend: ChromaDB implementation of VectorBackend.

Wraps chromadb.PersistentClient. PersistentClient is not thread-safe, and
queries run in worker threads (asyncio.to_thread), so every collection call
goes through one lock.
"""

import logging
import threading
from pathlib import Path

import chromadb

from .base import VectorBackend

logger = logging.getLogger(__name__)


class ChromaBackend(VectorBackend):
    """ChromaDB-backed product vectors (cosine distance)."""

    def __init__(self, path: str, collection: str = "products"):
        chroma_path = Path(path)
        chroma_path.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._client = chromadb.PersistentClient(path=str(chroma_path))
        self._collection = self._client.get_or_create_collection(
            name=collection,
            metadata={"hnsw:space": "cosine"},
        )
        logger.info("ChromaBackend initialised (path=%s, collection=%s)", chroma_path, collection)

    def upsert(self, ids, embeddings, documents, metadatas) -> None:
        with self._lock:
            self._collection.upsert(
                ids=ids,
                embeddings=embeddings,
                documents=documents,
                metadatas=metadatas,
            )

    def query(self, embedding: list[float], n_results: int) -> dict:
        with self._lock:
            return self._collection.query(
                query_embeddings=[embedding],
                n_results=n_results,
                include=["documents", "metadatas", "distances"],
            )

    def count(self) -> int:
        with self._lock:
            return self._collection.count()
