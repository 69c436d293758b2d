"""Tenant-scoped vector store.

:class:`TenantVectorStore` is the only way the pipeline talks to a
backend.  Tenant isolation is a metadata equality filter on ``user_id``;
there is no physical partitioning, so this class enforces it at the
boundary:

* writes without a ``user_id`` are rejected,
* reads and deletes without a ``user_id`` are rejected,
* every read carries the ``user_id`` filter, and any hit that comes back
  with a different owner is treated as an isolation breach.

Upserts are written in fixed-size batches, in order.  A failure part-way
leaves earlier batches in place (no rollback); callers wanting
idempotent re-ingestion delete first.
"""

from __future__ import annotations

import logging
from typing import Any, Sequence

from pdf_rag.errors import StoreError, TenantIsolationError, ValidationError, categorize_exception
from pdf_rag.retrieval.base import VectorStoreBase
from pdf_rag.retrieval.models import (
    FILE_NAME_FIELD,
    USER_ID_FIELD,
    FileListing,
    MetadataFilter,
    QueryResult,
    RecordMetadata,
    VectorRecord,
)

logger = logging.getLogger(__name__)

POSSIBLE_CAUSES = [
    "Vector store quota exceeded",
    "Invalid API key",
    "Index not found or misconfigured",
    "Network connection issue",
]


def _require_tenant(user_id: str | None) -> str:
    if not user_id or not str(user_id).strip():
        raise TenantIsolationError("A user id is required for every vector-store operation")
    return user_id


class TenantVectorStore:
    """Per-tenant facade over a :class:`VectorStoreBase` backend.

    Parameters
    ----------
    backend:
        The concrete vector store.
    dimension:
        Store-wide vector length; mismatching writes and queries are rejected.
    batch_size:
        Records per backend upsert call.
    list_files_top_k:
        Result window used by :meth:`list_files`.  The backend cannot
        enumerate, so a tenant owning more chunks than this gets a
        truncated listing.
    """

    def __init__(
        self,
        backend: VectorStoreBase,
        *,
        dimension: int = 768,
        batch_size: int = 100,
        list_files_top_k: int = 10_000,
    ) -> None:
        if batch_size < 1:
            raise ValidationError("batch_size must be >= 1", details={"batch_size": batch_size})
        self._backend = backend
        self.dimension = dimension
        self.batch_size = batch_size
        self.list_files_top_k = list_files_top_k

    # -- writes ---------------------------------------------------------------

    async def upsert(self, records: Sequence[VectorRecord]) -> int:
        """Write *records* in batches; return the number of batches applied."""
        for record in records:
            if not record.metadata.user_id or not record.metadata.user_id.strip():
                raise TenantIsolationError(
                    f"Record {record.id!r} has no user id; refusing to write it",
                    details={"record_id": record.id},
                )
            self._check_dimension(record.vector, what=f"record {record.id!r}")

        batches = 0
        for start in range(0, len(records), self.batch_size):
            batch = records[start : start + self.batch_size]
            try:
                await self._backend.upsert(batch)
            except Exception as exc:
                logger.error(
                    "Upsert batch %d failed after %d record(s) were written: %s",
                    batches + 1,
                    start,
                    exc,
                )
                raise StoreError(
                    "Failed to upsert vectors",
                    category=categorize_exception(exc),
                    details={"written": start, "total": len(records), "cause": str(exc)},
                    possible_causes=list(POSSIBLE_CAUSES),
                ) from exc
            batches += 1
            logger.debug("Upserted batch %d (%d-%d)", batches, start, start + len(batch))

        logger.info("Upserted %d vector(s) in %d batch(es)", len(records), batches)
        return batches

    async def delete(self, user_id: str, file_name: str | None = None) -> None:
        """Remove all of *user_id*'s vectors, or only those of *file_name*."""
        filters = [MetadataFilter.equals(USER_ID_FIELD, _require_tenant(user_id))]
        if file_name:
            filters.append(MetadataFilter.equals(FILE_NAME_FIELD, file_name))
        try:
            await self._backend.delete_where(filters)
        except Exception as exc:
            logger.error("Delete for user %s failed: %s", user_id, exc)
            raise StoreError(
                "Failed to delete vectors",
                category=categorize_exception(exc),
                details={"file_name": file_name, "cause": str(exc)},
            ) from exc
        logger.info("Deleted vectors for user %s%s", user_id, f" file {file_name!r}" if file_name else "")

    # -- reads ----------------------------------------------------------------

    async def query(self, vector: list[float], user_id: str, top_k: int = 5) -> list[QueryResult]:
        """Return *user_id*'s *top_k* chunks closest to *vector*."""
        user_id = _require_tenant(user_id)
        if top_k < 1:
            raise ValidationError("top_k must be >= 1", details={"top_k": top_k})
        self._check_dimension(vector, what="query vector")
        hits = await self._search(vector, user_id, top_k)
        return [self._to_result(hit, user_id) for hit in hits]

    async def list_files(self, user_id: str) -> FileListing:
        """Distinct file names and total chunk count for *user_id*.

        Implemented as a zero-vector query with a large window; see
        ``list_files_top_k``.
        """
        user_id = _require_tenant(user_id)
        hits = await self._search([0.0] * self.dimension, user_id, self.list_files_top_k)
        if len(hits) >= self.list_files_top_k:
            logger.warning(
                "list_files hit the %d result window for user %s; listing may be incomplete",
                self.list_files_top_k,
                user_id,
            )

        file_names: dict[str, None] = {}
        total_chunks = 0
        for hit in hits:
            result = self._to_result(hit, user_id)
            if result.metadata.file_name:
                file_names[result.metadata.file_name] = None
                total_chunks += 1
        return FileListing(file_names=list(file_names), total_chunks=total_chunks)

    async def health_check(self) -> bool:
        return await self._backend.health_check()

    # -- internals ------------------------------------------------------------

    async def _search(self, vector: list[float], user_id: str, k: int) -> list[dict[str, Any]]:
        filters = [MetadataFilter.equals(USER_ID_FIELD, user_id)]
        try:
            return await self._backend.similarity_search(vector, k=k, filters=filters)
        except Exception as exc:
            logger.error("Vector query for user %s failed: %s", user_id, exc)
            raise StoreError(
                "Failed to query vectors",
                category=categorize_exception(exc),
                details={"cause": str(exc)},
                possible_causes=list(POSSIBLE_CAUSES),
            ) from exc

    def _to_result(self, hit: dict[str, Any], user_id: str) -> QueryResult:
        metadata = RecordMetadata.from_store(hit.get("metadata") or {})
        if metadata.user_id != user_id:
            logger.error("Hit %s belongs to another tenant; aborting read", hit.get("id"))
            raise TenantIsolationError(
                "Vector store returned a record owned by another user",
                details={"record_id": hit.get("id")},
            )
        return QueryResult(
            id=str(hit.get("id", "")),
            text=hit.get("content", ""),
            score=float(hit.get("score") or 0.0),
            metadata=metadata,
        )

    def _check_dimension(self, vector: list[float], *, what: str) -> None:
        if len(vector) != self.dimension:
            raise StoreError(
                f"Dimension mismatch for {what}: expected {self.dimension}, got {len(vector)}",
                details={"expected": self.dimension, "actual": len(vector)},
            )
