"""Chroma implementation of the vector-store abstraction."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Sequence

import chromadb

from pdf_rag.config import settings
from pdf_rag.retrieval.base import VectorStoreBase
from pdf_rag.retrieval.models import MetadataFilter, VectorRecord

logger = logging.getLogger(__name__)

_OP_MAP = {
    "eq": "$eq",
    "ne": "$ne",
    "gt": "$gt",
    "gte": "$gte",
    "lt": "$lt",
    "lte": "$lte",
    "in": "$in",
    "nin": "$nin",
}


def _build_chroma_where(filters: list[MetadataFilter]) -> dict[str, Any] | None:
    """Convert a list of :class:`MetadataFilter` to Chroma ``where`` syntax."""
    if not filters:
        return None

    clauses: list[dict[str, Any]] = []
    for f in filters:
        chroma_op = _OP_MAP.get(f.operator)
        if chroma_op is None:
            raise ValueError(f"Unsupported filter operator: {f.operator!r}")
        clauses.append({f.field: {chroma_op: f.value}})

    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


def _distance_to_score(distance: float, metric: str) -> float:
    if metric == "l2":
        return 1.0 / (1.0 + distance)
    # cosine / ip distances are 1 - similarity
    return 1.0 - distance


class ChromaVectorStore(VectorStoreBase):
    """Chroma-backed vector store.

    The chromadb client is synchronous; every call is pushed onto a worker
    thread so the event loop is never blocked.

    Parameters
    ----------
    collection_name:
        Name of the Chroma collection.
    client:
        A ready chromadb client (``EphemeralClient`` in tests).  When
        omitted an ``HttpClient`` is built from *host* / *port*.
    host / port:
        Chroma server address.
    distance_metric:
        ``cosine`` | ``l2`` | ``ip``; fixed when the collection is created.
    """

    def __init__(
        self,
        collection_name: str = settings.chroma_collection,
        *,
        client: Any | None = None,
        host: str = settings.chroma_host,
        port: int = settings.chroma_port,
        distance_metric: str = "cosine",
    ) -> None:
        super().__init__(collection_name)
        self._client = client if client is not None else chromadb.HttpClient(host=host, port=port)
        self.distance_metric = distance_metric
        self._collection = self._client.get_or_create_collection(
            name=collection_name,
            metadata={"hnsw:space": distance_metric},
        )

    # -- VectorStoreBase overrides --------------------------------------------

    async def upsert(self, records: Sequence[VectorRecord]) -> None:
        if not records:
            return
        await asyncio.to_thread(
            self._collection.upsert,
            ids=[r.id for r in records],
            embeddings=[r.vector for r in records],
            documents=[r.text for r in records],
            metadatas=[r.metadata.to_store() for r in records],
        )

    async def similarity_search(
        self,
        query_embedding: list[float],
        *,
        k: int = 5,
        filters: list[MetadataFilter] | None = None,
    ) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._query, query_embedding, k, filters)

    async def delete_where(self, filters: list[MetadataFilter]) -> None:
        where = _build_chroma_where(filters)
        if where is None:
            raise ValueError("Refusing to delete without filters")
        await asyncio.to_thread(self._collection.delete, where=where)

    async def health_check(self) -> bool:
        try:
            await asyncio.to_thread(self._client.heartbeat)
            return True
        except Exception:
            logger.warning("Chroma health-check failed", exc_info=True)
            return False

    # -- internals ------------------------------------------------------------

    def _query(
        self,
        query_embedding: list[float],
        k: int,
        filters: list[MetadataFilter] | None,
    ) -> list[dict[str, Any]]:
        count = self._collection.count()
        if count == 0:
            return []

        where = _build_chroma_where(filters) if filters else None
        results = self._collection.query(
            query_embeddings=[query_embedding],
            n_results=min(k, count),
            where=where,
            include=["documents", "metadatas", "distances"],
        )

        ids = (results.get("ids") or [[]])[0]
        docs = (results.get("documents") or [[]])[0]
        metas = (results.get("metadatas") or [[]])[0]
        distances = (results.get("distances") or [[]])[0]

        hits: list[dict[str, Any]] = []
        for doc_id, content, meta, dist in zip(ids, docs, metas, distances):
            hits.append(
                {
                    "id": doc_id,
                    "content": content or "",
                    "score": _distance_to_score(dist, self.distance_metric),
                    "metadata": dict(meta or {}),
                }
            )
        return hits
