"""Abstract base class for vector-store backends.

Adding a new backend (Pinecone, Qdrant, ...) only requires subclassing
:class:`VectorStoreBase` and implementing the abstract coroutines.
Tenant rules live one level up in
:class:`~pdf_rag.retrieval.store.TenantVectorStore`; backends only move
data.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Sequence

from pdf_rag.retrieval.models import MetadataFilter, VectorRecord


class VectorStoreBase(ABC):
    """Backend-agnostic vector-store interface.

    Parameters
    ----------
    collection_name:
        Logical name of the collection / index / namespace.
    """

    def __init__(self, collection_name: str) -> None:
        self.collection_name = collection_name

    @abstractmethod
    async def upsert(self, records: Sequence[VectorRecord]) -> None:
        """Write one batch of records, replacing any with the same id."""
        ...

    @abstractmethod
    async def similarity_search(
        self,
        query_embedding: list[float],
        *,
        k: int = 5,
        filters: list[MetadataFilter] | None = None,
    ) -> list[dict[str, Any]]:
        """Return the top-*k* results matching *query_embedding*.

        Each result dict **must** contain:

        * ``"id"`` – chunk identifier
        * ``"content"`` – the chunk text
        * ``"score"`` – similarity score (higher = more similar)
        * ``"metadata"`` – the stored metadata dict
        """
        ...

    @abstractmethod
    async def delete_where(self, filters: list[MetadataFilter]) -> None:
        """Delete every record matching all *filters*."""
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """Return ``True`` when the backend is reachable and ready."""
        ...
