"""Sentence-aware text chunking with word overlap and page estimation."""

from __future__ import annotations

import math
import re
from typing import Any

from langchain_core.documents import Document
from langchain_text_splitters import TextSplitter
from pydantic import BaseModel, ConfigDict

from pdf_rag.errors import ValidationError

MIN_CHUNK_SIZE = 100
MAX_CHUNK_SIZE = 10_000
AVG_CHARS_PER_PAGE = 2500

# Terminal punctuation followed by whitespace and a capital letter; the
# capital keeps "e.g. foo" and "3.5 mm" from splitting.
SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+(?=[A-Z])")

# Overlap budget is in characters, carried over as whole words.
CHARS_PER_WORD = 6


class Chunk(BaseModel):
    """A bounded, page-tagged text segment; the unit of embedding."""

    model_config = ConfigDict(frozen=True)

    text: str
    page_number: int
    chunk_index: int


def validate_chunk_params(chunk_size: int, overlap: int) -> None:
    """Raise :class:`ValidationError` unless ``100 <= chunk_size <= 10000`` and ``0 <= overlap < chunk_size``."""
    if not MIN_CHUNK_SIZE <= chunk_size <= MAX_CHUNK_SIZE:
        raise ValidationError(
            f"Chunk size must be between {MIN_CHUNK_SIZE} and {MAX_CHUNK_SIZE} characters",
            details={"chunk_size": chunk_size},
        )
    if not 0 <= overlap < chunk_size:
        raise ValidationError(
            "Overlap must be between 0 and chunk size",
            details={"chunk_size": chunk_size, "overlap": overlap},
        )


def split_sentences(text: str) -> list[str]:
    """Split *text* on sentence boundaries, dropping blank pieces."""
    return [s.strip() for s in SENTENCE_BOUNDARY.split(text) if s.strip()]


class SentenceWindowSplitter(TextSplitter):
    """Greedy sentence packer with a word-based overlap window.

    Sentences are appended to a buffer until the next one would push it
    past ``chunk_size``; the buffer is then emitted and a new one is
    seeded with the last ``overlap // 6`` words of the emitted chunk.
    A sentence longer than ``chunk_size`` is emitted whole.

    Page numbers are estimated from the running character count and
    ``avg_chars_per_page``; they are not real page boundaries.

    Parameters
    ----------
    chunk_size:
        Soft upper bound on chunk length in characters.
    overlap:
        Character budget carried from one chunk into the next.
    avg_chars_per_page:
        Characters assumed per PDF page for page estimation.
    """

    def __init__(
        self,
        chunk_size: int = 1000,
        overlap: int = 200,
        avg_chars_per_page: int = AVG_CHARS_PER_PAGE,
        **kwargs: Any,
    ) -> None:
        validate_chunk_params(chunk_size, overlap)
        if avg_chars_per_page <= 0:
            raise ValidationError("avg_chars_per_page must be positive", details={"avg_chars_per_page": avg_chars_per_page})
        super().__init__(chunk_size=chunk_size, chunk_overlap=overlap, **kwargs)
        self.overlap = overlap
        self.avg_chars_per_page = avg_chars_per_page

    # -- TextSplitter overrides -----------------------------------------------

    def split_text(self, text: str) -> list[str]:
        return [chunk.text for chunk in self.split_chunks(text)]

    def create_documents(
        self, texts: list[str], metadatas: list[dict[Any, Any]] | None = None
    ) -> list[Document]:
        metadatas = metadatas or [{} for _ in texts]
        documents: list[Document] = []
        for text, metadata in zip(texts, metadatas):
            for chunk in self.split_chunks(text):
                documents.append(
                    Document(
                        page_content=chunk.text,
                        metadata={**metadata, "page_number": chunk.page_number, "chunk_index": chunk.chunk_index},
                    )
                )
        return documents

    # -- chunking -------------------------------------------------------------

    def split_chunks(self, text: str) -> list[Chunk]:
        """Split *text* into ordered :class:`Chunk` objects."""
        if not text or not text.strip():
            return []

        chunks: list[Chunk] = []
        buffer = ""
        for sentence in split_sentences(text):
            if buffer and len(buffer) + len(sentence) + 1 > self._chunk_size:
                self._emit(chunks, buffer)
                tail = self._overlap_tail(buffer)
                buffer = f"{tail} {sentence}" if tail else sentence
            else:
                buffer = f"{buffer} {sentence}" if buffer else sentence

        if buffer.strip():
            self._emit(chunks, buffer)
        return chunks

    def _emit(self, chunks: list[Chunk], buffer: str) -> None:
        emitted_chars = sum(len(c.text) for c in chunks)
        page = max(1, math.ceil((emitted_chars + len(buffer)) / self.avg_chars_per_page))
        chunks.append(Chunk(text=buffer.strip(), page_number=page, chunk_index=len(chunks)))

    def _overlap_tail(self, buffer: str) -> str:
        words = buffer.split()
        count = min(self.overlap // CHARS_PER_WORD, len(words))
        if count <= 0:
            return ""
        return " ".join(words[-count:])


def split_text_into_chunks(
    text: str,
    chunk_size: int = 1000,
    overlap: int = 200,
    avg_chars_per_page: int = AVG_CHARS_PER_PAGE,
) -> list[Chunk]:
    """Split *text* into overlapping, page-tagged chunks.

    Raises
    ------
    ValidationError
        If ``chunk_size`` or ``overlap`` is out of range.
    """
    splitter = SentenceWindowSplitter(chunk_size=chunk_size, overlap=overlap, avg_chars_per_page=avg_chars_per_page)
    return splitter.split_chunks(text)
