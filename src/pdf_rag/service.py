"""Ingestion and query pipeline over injected components.

Usage::

    from pdf_rag.service import build_service

    service = build_service()
    result = await service.ingest(pdf_bytes, "report.pdf", user_id="u-1")
    answer = await service.query("What is the total?", user_id="u-1")
    for source in answer.sources:
        print(source.short_ref(), source.content)

Every operation validates its input before any external service is
called.  Authentication, upload parsing, and HTTP framing belong to the
caller.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from functools import partial
from typing import AsyncIterator

from pydantic import BaseModel, Field

from pdf_rag.config import Settings, settings
from pdf_rag.errors import InvalidFormatError, NoRelevantContentError, UnextractableError, ValidationError
from pdf_rag.generation.generator import Generator
from pdf_rag.generation.llm import get_chat_model
from pdf_rag.ingestion.chunker import Chunk, SentenceWindowSplitter, validate_chunk_params
from pdf_rag.ingestion.embedder import Embedder, get_embedding_function
from pdf_rag.ingestion.extractor import PdfExtractor, clean_text, validate_pdf_bytes
from pdf_rag.retrieval.models import FileListing, QueryResult, Source, VectorRecord, sanitize_file_name
from pdf_rag.retrieval.store import TenantVectorStore

logger = logging.getLogger(__name__)


# ── Result schemas ────────────────────────────────────────────────────


class ChunkStat(BaseModel):
    chunk_index: int
    page_number: int
    char_count: int


class IngestStats(BaseModel):
    """Processing statistics for one uploaded file."""

    original_file_size: int
    processed_chunks: int
    average_chunk_size: int
    min_chunk_size: int
    max_chunk_size: int
    total_text_length: int
    chunks: list[ChunkStat] = Field(default_factory=list)

    @classmethod
    def from_chunks(cls, file_size: int, chunks: list[Chunk]) -> IngestStats:
        sizes = [len(c.text) for c in chunks]
        total = sum(sizes)
        return cls(
            original_file_size=file_size,
            processed_chunks=len(chunks),
            average_chunk_size=round(total / len(chunks)) if chunks else 0,
            min_chunk_size=min(sizes, default=0),
            max_chunk_size=max(sizes, default=0),
            total_text_length=total,
            chunks=[
                ChunkStat(chunk_index=c.chunk_index, page_number=c.page_number, char_count=len(c.text))
                for c in chunks
            ],
        )


class IngestResult(BaseModel):
    file_name: str
    chunk_count: int
    stats: IngestStats


class QueryAnswer(BaseModel):
    question: str
    answer: str
    model: str
    sources: list[Source] = Field(default_factory=list)


# ── Service ───────────────────────────────────────────────────────────


class RagService:
    """Ingest PDFs and answer questions about them, per tenant.

    Parameters
    ----------
    extractor, embedder, generator, store:
        Pipeline components, created once and shared across requests.
    config:
        Limits and defaults (chunk sizes, file size, top-k, ...).
    """

    def __init__(
        self,
        *,
        extractor: PdfExtractor,
        embedder: Embedder,
        generator: Generator,
        store: TenantVectorStore,
        config: Settings | None = None,
    ) -> None:
        self._extractor = extractor
        self._embedder = embedder
        self._generator = generator
        self._store = store
        self._config = config or settings

    # -- ingestion ------------------------------------------------------------

    async def ingest(
        self,
        data: bytes,
        file_name: str,
        user_id: str,
        *,
        content_type: str = "application/pdf",
        replace_existing: bool = False,
        chunk_size: int | None = None,
        overlap: int | None = None,
    ) -> IngestResult:
        """Extract, chunk, embed, and store one PDF for *user_id*.

        With ``replace_existing`` the file's previous vectors are deleted
        before the new ones are written; otherwise re-uploads append.
        """
        cfg = self._config
        chunk_size = chunk_size if chunk_size is not None else cfg.default_chunk_size
        overlap = overlap if overlap is not None else cfg.default_chunk_overlap

        _require_user(user_id)
        if not file_name or not file_name.strip():
            raise ValidationError("Please select a file to upload")
        if content_type not in cfg.allowed_content_types:
            raise ValidationError(
                "Only PDF files are allowed",
                details={"receivedType": content_type, "expectedType": cfg.allowed_content_types},
            )
        if not isinstance(data, (bytes, bytearray)):
            raise ValidationError(
                "File content must be bytes",
                details={"receivedType": type(data).__name__},
            )
        data = bytes(data)
        if len(data) > cfg.max_file_size_bytes:
            raise ValidationError(
                f"File too large. Maximum size is {cfg.max_file_size_bytes // (1024 * 1024)}MB",
                details={"fileSize": len(data), "maxSize": cfg.max_file_size_bytes},
            )
        validate_chunk_params(chunk_size, overlap)

        validation = validate_pdf_bytes(data)
        if not validation.is_valid:
            raise InvalidFormatError(
                "Invalid PDF file",
                details={"reason": validation.error},
                possible_causes=["Please ensure you're uploading a valid PDF file"],
            )

        safe_name = sanitize_file_name(file_name.strip())
        logger.info("Ingesting %s for user %s (%d bytes)", safe_name, user_id, len(data))

        text = await asyncio.to_thread(self._extractor.extract, data)
        chunks = self._chunk(text, chunk_size, overlap)

        vectors = await self._embedder.embed_batch([c.text for c in chunks])

        uploaded_at = datetime.now(timezone.utc)
        records = [
            VectorRecord.for_chunk(
                user_id=user_id,
                file_name=safe_name,
                text=chunk.text,
                page_number=chunk.page_number,
                chunk_index=chunk.chunk_index,
                vector=vector,
                uploaded_at=uploaded_at,
            )
            for chunk, vector in zip(chunks, vectors)
        ]

        if replace_existing:
            await self._store.delete(user_id, safe_name)
        await self._store.upsert(records)

        logger.info("Stored %d chunks for %s", len(records), safe_name)
        return IngestResult(
            file_name=safe_name,
            chunk_count=len(records),
            stats=IngestStats.from_chunks(len(data), chunks),
        )

    def _chunk(self, text: str, chunk_size: int, overlap: int) -> list[Chunk]:
        cleaned = clean_text(text)
        if not cleaned:
            raise UnextractableError("No valid text content after cleaning")

        splitter = SentenceWindowSplitter(
            chunk_size=chunk_size,
            overlap=overlap,
            avg_chars_per_page=self._config.avg_chars_per_page,
        )
        chunks = [c for c in splitter.split_chunks(cleaned) if c.text.strip()]
        if not chunks:
            raise UnextractableError("Failed to create text chunks from PDF content")
        if len(chunks) > self._config.max_chunks_per_file:
            raise ValidationError(
                f"Document produces {len(chunks)} chunks; the limit is {self._config.max_chunks_per_file}",
                details={"chunks": len(chunks), "limit": self._config.max_chunks_per_file},
            )
        logger.debug("Created %d chunks from %d chars", len(chunks), len(cleaned))
        return chunks

    # -- queries --------------------------------------------------------------

    async def query(self, question: str, user_id: str, top_k: int | None = None) -> QueryAnswer:
        """Answer *question* from *user_id*'s documents, with sources."""
        question = _require_question(question)
        results = await self._retrieve(question, user_id, top_k)

        generated = await self._generator.generate(question, [r.text for r in results])
        preview = self._config.source_preview_length
        return QueryAnswer(
            question=question,
            answer=generated.text,
            model=generated.model,
            sources=[Source.from_result(i, r, preview) for i, r in enumerate(results, 1)],
        )

    async def query_stream(self, question: str, user_id: str, top_k: int | None = None) -> AsyncIterator[str]:
        """Retrieve context, then return an iterator of answer fragments."""
        question = _require_question(question)
        results = await self._retrieve(question, user_id, top_k)
        return self._generator.generate_stream(question, [r.text for r in results])

    async def _retrieve(self, question: str, user_id: str, top_k: int | None) -> list[QueryResult]:
        _require_user(user_id)
        top_k = top_k if top_k is not None else self._config.default_top_k
        if top_k < 1:
            raise ValidationError("top_k must be at least 1", details={"top_k": top_k})

        vector = await self._embedder.embed(question)
        results = await self._store.query(vector, user_id, top_k)
        if not results:
            raise NoRelevantContentError("No relevant content found. Please upload a PDF document first.")
        logger.info("Retrieved %d chunk(s) for user %s", len(results), user_id)
        return results

    # -- file management ------------------------------------------------------

    async def delete_file(self, user_id: str, file_name: str) -> None:
        """Remove every vector of *file_name* owned by *user_id*."""
        _require_user(user_id)
        if not file_name or not file_name.strip():
            raise ValidationError("File name is required")
        await self._store.delete(user_id, sanitize_file_name(file_name.strip()))

    async def list_files(self, user_id: str) -> FileListing:
        """File names and chunk count owned by *user_id*."""
        _require_user(user_id)
        return await self._store.list_files(user_id)


def _require_user(user_id: str) -> None:
    if not user_id or not str(user_id).strip():
        raise ValidationError("A user id is required")


def _require_question(question: str) -> str:
    if not isinstance(question, str):
        raise ValidationError("Question is required")
    if not question.strip():
        raise ValidationError("Question cannot be empty")
    return question.strip()


def build_service(config: Settings | None = None) -> RagService:
    """Wire the production components from *config* (defaults to env settings)."""
    from pdf_rag.retrieval.chroma_store import ChromaVectorStore

    config = config or settings
    embedder = Embedder(
        get_embedding_function(config.embedding_model),
        dimension=config.embedding_dimension,
        max_concurrency=config.embedding_max_concurrency,
    )
    generator = Generator(
        config.llm_model_names,
        partial(get_chat_model, config=config),
        max_attempts=config.llm_max_attempts,
        base_delay=config.llm_retry_base_delay,
        backoff_multiplier=config.llm_retry_multiplier,
        timeout=config.llm_timeout_seconds,
    )
    store = TenantVectorStore(
        ChromaVectorStore(config.chroma_collection, host=config.chroma_host, port=config.chroma_port),
        dimension=config.embedding_dimension,
        batch_size=config.upsert_batch_size,
        list_files_top_k=config.list_files_top_k,
    )
    return RagService(
        extractor=PdfExtractor(),
        embedder=embedder,
        generator=generator,
        store=store,
        config=config,
    )
