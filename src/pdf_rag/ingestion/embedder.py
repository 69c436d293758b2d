"""Text → vector conversion over a LangChain ``Embeddings`` provider."""

from __future__ import annotations

import asyncio
import logging
from typing import Sequence

from langchain_core.embeddings import Embeddings
from langchain_huggingface import HuggingFaceEmbeddings

from pdf_rag.config import settings
from pdf_rag.errors import EmbeddingDimensionError, EmbeddingError, ValidationError, categorize_exception

logger = logging.getLogger(__name__)

POSSIBLE_CAUSES = [
    "Embedding API quota exceeded",
    "Invalid API key",
    "Network connection issue",
    "Text chunks too large",
]


def get_embedding_function(model_name: str | None = None) -> HuggingFaceEmbeddings:
    """Return the configured sentence-transformer embedding function."""
    return HuggingFaceEmbeddings(model_name=model_name or settings.embedding_model)


class Embedder:
    """Embed single texts or whole batches with a fixed output dimension.

    Parameters
    ----------
    embeddings:
        Any LangChain ``Embeddings`` implementation.
    dimension:
        Expected vector length; every vector must match it.
    max_concurrency:
        Optional cap on in-flight provider calls during
        :meth:`embed_batch`.  ``None`` fans out one call per text at once.
    """

    def __init__(
        self,
        embeddings: Embeddings,
        *,
        dimension: int = 768,
        max_concurrency: int | None = None,
    ) -> None:
        if max_concurrency is not None and max_concurrency < 1:
            raise ValidationError("max_concurrency must be >= 1", details={"max_concurrency": max_concurrency})
        self._embeddings = embeddings
        self.dimension = dimension
        self.max_concurrency = max_concurrency

    async def embed(self, text: str) -> list[float]:
        """Embed a single *text*."""
        try:
            vector = await self._embeddings.aembed_query(text)
        except Exception as exc:
            logger.error("Embedding call failed: %s", exc)
            raise EmbeddingError(
                f"Failed to generate embedding: {exc}",
                category=categorize_exception(exc),
                possible_causes=list(POSSIBLE_CAUSES),
            ) from exc
        return self._check_dimension(list(vector))

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed every text concurrently, one provider call each.

        The batch is atomic: if any call fails the whole batch raises and
        no vectors are returned.
        """
        if not texts:
            return []

        if self.max_concurrency is None:
            calls = [self.embed(text) for text in texts]
        else:
            semaphore = asyncio.Semaphore(self.max_concurrency)

            async def limited(text: str) -> list[float]:
                async with semaphore:
                    return await self.embed(text)

            calls = [limited(text) for text in texts]

        tasks = [asyncio.ensure_future(call) for call in calls]
        try:
            vectors = await asyncio.gather(*tasks)
        except EmbeddingError as exc:
            for task in tasks:
                task.cancel()
            logger.error("Embedding batch of %d texts failed", len(texts))
            if isinstance(exc, EmbeddingDimensionError):
                raise
            raise EmbeddingError(
                "Failed to generate embeddings",
                category=exc.category,
                details={"batch_size": len(texts), "cause": exc.message},
                possible_causes=list(POSSIBLE_CAUSES),
            ) from exc

        logger.info("Generated %d embeddings (dim=%d)", len(vectors), self.dimension)
        return list(vectors)

    def _check_dimension(self, vector: list[float]) -> list[float]:
        if len(vector) != self.dimension:
            raise EmbeddingDimensionError(
                f"Embedding dimension mismatch: expected {self.dimension}, got {len(vector)}",
                details={"expected": self.dimension, "actual": len(vector)},
            )
        return vector
