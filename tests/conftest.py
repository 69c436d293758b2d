"""Shared pytest configuration and fixtures."""

from __future__ import annotations

import asyncio
import hashlib
import math
import random
from typing import Any, Callable, Sequence

import pytest
from langchain_core.embeddings import Embeddings

from pdf_rag.retrieval.base import VectorStoreBase
from pdf_rag.retrieval.models import MetadataFilter, VectorRecord

DIM = 768


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: marks tests requiring external services")


# ── PDF builder ────────────────────────────────────────────────────────


def build_pdf(page_texts: Sequence[str]) -> bytes:
    """Assemble a minimal, valid PDF with one text line per page."""
    page_ids = [4 + 2 * i for i in range(len(page_texts))]
    objects: dict[int, bytes] = {
        1: b"<< /Type /Catalog /Pages 2 0 R >>",
        2: (
            f"<< /Type /Pages /Kids [{' '.join(f'{pid} 0 R' for pid in page_ids)}] "
            f"/Count {len(page_ids)} >>"
        ).encode(),
        3: b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
    }
    for pid, text in zip(page_ids, page_texts):
        objects[pid] = (
            "<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] "
            f"/Resources << /Font << /F1 3 0 R >> >> /Contents {pid + 1} 0 R >>"
        ).encode()
        escaped = text.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")
        stream = f"BT /F1 12 Tf 72 720 Td ({escaped}) Tj ET".encode("latin-1")
        objects[pid + 1] = b"<< /Length %d >>\nstream\n" % len(stream) + stream + b"\nendstream"

    out = bytearray(b"%PDF-1.4\n")
    offsets: dict[int, int] = {}
    for oid in sorted(objects):
        offsets[oid] = len(out)
        out += b"%d 0 obj\n" % oid + objects[oid] + b"\nendobj\n"

    xref_at = len(out)
    size = max(objects) + 1
    out += b"xref\n0 %d\n0000000000 65535 f \n" % size
    for oid in range(1, size):
        out += b"%010d 00000 n \n" % offsets[oid]
    out += b"trailer\n<< /Size %d /Root 1 0 R >>\nstartxref\n%d\n%%%%EOF\n" % (size, xref_at)
    return bytes(out)


@pytest.fixture()
def make_pdf() -> Callable[[Sequence[str]], bytes]:
    return build_pdf


# ── Embeddings ─────────────────────────────────────────────────────────


class HashEmbeddings(Embeddings):
    """Deterministic embeddings seeded from the text; counts provider calls."""

    def __init__(self, size: int = DIM) -> None:
        self.size = size
        self.calls = 0

    def _vector(self, text: str) -> list[float]:
        seed = int(hashlib.sha256(text.encode()).hexdigest()[:16], 16)
        rng = random.Random(seed)
        return [rng.uniform(-1.0, 1.0) for _ in range(self.size)]

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [self.embed_query(t) for t in texts]

    def embed_query(self, text: str) -> list[float]:
        self.calls += 1
        return self._vector(text)

    async def aembed_query(self, text: str) -> list[float]:
        self.calls += 1
        await asyncio.sleep(0)
        return self._vector(text)


@pytest.fixture()
def hash_embeddings() -> HashEmbeddings:
    return HashEmbeddings()


# ── Fake vector store ──────────────────────────────────────────────────


def _matches(meta: dict[str, Any], filters: list[MetadataFilter] | None) -> bool:
    for f in filters or []:
        value = meta.get(f.field)
        if f.operator == "eq" and value != f.value:
            return False
        if f.operator == "in" and value not in f.value:
            return False
    return True


def _cosine(a: list[float], b: list[float]) -> float:
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    if norm == 0:
        return 0.0
    return sum(x * y for x, y in zip(a, b)) / norm


class FakeVectorStore(VectorStoreBase):
    """In-memory backend with cosine scoring and metadata filters.

    ``ignore_filters=True`` simulates a backend that drops the tenant
    filter, for isolation-breach tests.
    """

    def __init__(self, *, ignore_filters: bool = False, fail_on_batch: int | None = None) -> None:
        super().__init__("test-collection")
        self.records: dict[str, VectorRecord] = {}
        self.upsert_batches: list[int] = []
        self.last_filters: list[MetadataFilter] | None = None
        self.ignore_filters = ignore_filters
        self.fail_on_batch = fail_on_batch

    async def upsert(self, records: Sequence[VectorRecord]) -> None:
        if self.fail_on_batch is not None and len(self.upsert_batches) + 1 == self.fail_on_batch:
            raise ConnectionError("connection reset by peer")
        self.upsert_batches.append(len(records))
        for record in records:
            self.records[record.id] = record

    async def similarity_search(
        self,
        query_embedding: list[float],
        *,
        k: int = 5,
        filters: list[MetadataFilter] | None = None,
    ) -> list[dict[str, Any]]:
        self.last_filters = filters
        active = None if self.ignore_filters else filters
        hits = [
            {
                "id": r.id,
                "content": r.text,
                "score": _cosine(query_embedding, r.vector),
                "metadata": r.metadata.to_store(),
            }
            for r in self.records.values()
            if _matches(r.metadata.to_store(), active)
        ]
        hits.sort(key=lambda h: h["score"], reverse=True)
        return hits[:k]

    async def delete_where(self, filters: list[MetadataFilter]) -> None:
        doomed = [rid for rid, r in self.records.items() if _matches(r.metadata.to_store(), filters)]
        for rid in doomed:
            del self.records[rid]

    async def health_check(self) -> bool:
        return True


@pytest.fixture()
def fake_backend() -> FakeVectorStore:
    return FakeVectorStore()


@pytest.fixture()
def backend_factory() -> Callable[..., FakeVectorStore]:
    return FakeVectorStore
