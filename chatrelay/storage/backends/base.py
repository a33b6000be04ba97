"""
VectorBackend: abstract base for product index storage.

The index only moves vectors around; embedding happens in ProductIndex.
A backend needs three primitives:
  upsert  : store product vectors with their catalog metadata
  query   : nearest-neighbour search by vector
  count   : total indexed products
"""

from abc import ABC, abstractmethod


class VectorBackend(ABC):
    """Abstract vector storage backend."""

    @abstractmethod
    def upsert(
        self,
        ids: list[str],
        embeddings: list[list[float]],
        documents: list[str],
        metadatas: list[dict],
    ) -> None:
        ...

    @abstractmethod
    def query(self, embedding: list[float], n_results: int) -> dict:
        """
        Nearest-neighbour search, closest first.

        Returns a dict with keys ids / documents / metadatas / distances,
        each a list holding one list per query vector (ChromaDB's shape).
        """
        ...

    @abstractmethod
    def count(self) -> int:
        ...
