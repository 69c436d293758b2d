"""
Retrieval: tenant-scoped vector storage and similarity search.

Public surface
--------------
- :class:`TenantVectorStore`: the only entry point the pipeline uses; enforces tenant isolation.
- :class:`VectorStoreBase`: abstract backend (subclass for Pinecone, Qdrant, ...).
- :class:`ChromaVectorStore`: default Chroma backend.
- :class:`VectorRecord`, :class:`QueryResult`, :class:`FileListing`, :class:`Source`,
  :class:`MetadataFilter`: data models.
"""

from pdf_rag.retrieval.base import VectorStoreBase
from pdf_rag.retrieval.models import (
    FileListing,
    MetadataFilter,
    QueryResult,
    RecordMetadata,
    Source,
    VectorRecord,
)
from pdf_rag.retrieval.store import TenantVectorStore

__all__ = [
    "ChromaVectorStore",
    "FileListing",
    "MetadataFilter",
    "QueryResult",
    "RecordMetadata",
    "Source",
    "TenantVectorStore",
    "VectorRecord",
    "VectorStoreBase",
]


def __getattr__(name: str):  # noqa: ANN001
    """Lazy-import ChromaVectorStore to avoid pulling in chromadb at import time."""
    if name == "ChromaVectorStore":
        from pdf_rag.retrieval.chroma_store import ChromaVectorStore

        return ChromaVectorStore
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
