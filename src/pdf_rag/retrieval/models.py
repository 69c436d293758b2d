"""Domain models for stored vectors, query hits, and citations."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

USER_ID_FIELD = "user_id"
FILE_NAME_FIELD = "file_name"

_UNSAFE_FILE_CHARS = re.compile(r"[^a-zA-Z0-9.-]")


def sanitize_file_name(file_name: str) -> str:
    """Replace anything outside ``[A-Za-z0-9.-]`` with ``_``."""
    return _UNSAFE_FILE_CHARS.sub("_", file_name)


def make_record_id(user_id: str, file_name: str, chunk_index: int, uploaded_at: datetime) -> str:
    """Stable id for one chunk of one upload.

    ``<user_id>-<sanitised file name>-<chunk_index>-<upload epoch millis>``
    """
    millis = int(uploaded_at.timestamp() * 1000)
    return f"{user_id}-{sanitize_file_name(file_name)}-{chunk_index}-{millis}"


class MetadataFilter(BaseModel):
    """Declarative metadata filter for vector-store queries.

    Attributes
    ----------
    field:
        The metadata key to filter on (e.g. ``"user_id"``, ``"file_name"``).
    operator:
        Comparison operator, one of ``eq``, ``ne``, ``gt``, ``gte``,
        ``lt``, ``lte``, ``in``, ``nin``.
    value:
        The value (or list of values for ``in`` / ``nin``) to compare against.
    """

    field: str
    operator: str = "eq"
    value: Any = None

    @classmethod
    def equals(cls, field: str, value: Any) -> MetadataFilter:
        return cls(field=field, operator="eq", value=value)

    @classmethod
    def one_of(cls, field: str, values: list[Any]) -> MetadataFilter:
        return cls(field=field, operator="in", value=values)


class RecordMetadata(BaseModel):
    """Metadata stored alongside every vector."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    file_name: str
    page_number: int
    chunk_index: int
    uploaded_at: str

    def to_store(self) -> dict[str, Any]:
        """Flat ``str/int`` mapping accepted by every backend."""
        return self.model_dump()

    @classmethod
    def from_store(cls, meta: dict[str, Any]) -> RecordMetadata:
        return cls(
            user_id=str(meta.get(USER_ID_FIELD) or ""),
            file_name=str(meta.get(FILE_NAME_FIELD) or ""),
            page_number=int(meta.get("page_number") or 0),
            chunk_index=int(meta.get("chunk_index") or 0),
            uploaded_at=str(meta.get("uploaded_at") or ""),
        )


class VectorRecord(BaseModel):
    """One chunk, its embedding, and its tenant-scoped metadata."""

    model_config = ConfigDict(frozen=True)

    id: str
    vector: list[float]
    text: str
    metadata: RecordMetadata

    @classmethod
    def for_chunk(
        cls,
        *,
        user_id: str,
        file_name: str,
        text: str,
        page_number: int,
        chunk_index: int,
        vector: list[float],
        uploaded_at: datetime | None = None,
    ) -> VectorRecord:
        uploaded_at = uploaded_at or datetime.now(timezone.utc)
        return cls(
            id=make_record_id(user_id, file_name, chunk_index, uploaded_at),
            vector=vector,
            text=text,
            metadata=RecordMetadata(
                user_id=user_id,
                file_name=file_name,
                page_number=page_number,
                chunk_index=chunk_index,
                uploaded_at=uploaded_at.isoformat(),
            ),
        )


class QueryResult(BaseModel):
    """A retrieved chunk plus its similarity score (higher = closer)."""

    id: str
    text: str
    score: float
    metadata: RecordMetadata


class FileListing(BaseModel):
    """Files owned by one tenant."""

    file_names: list[str] = Field(default_factory=list)
    total_chunks: int = 0

    @property
    def count(self) -> int:
        return len(self.file_names)


class Source(BaseModel):
    """Citation returned with an answer, pointing back at one chunk."""

    id: int
    content: str
    file_name: str
    page_number: int
    score: float

    @classmethod
    def from_result(cls, position: int, result: QueryResult, preview_length: int = 200) -> Source:
        content = result.text[:preview_length]
        if len(result.text) > preview_length:
            content += "..."
        return cls(
            id=position,
            content=content,
            file_name=result.metadata.file_name,
            page_number=result.metadata.page_number,
            score=round(result.score, 2),
        )

    def short_ref(self) -> str:
        """Return a compact ``[file p.N]`` reference string."""
        return f"[{self.file_name} p.{self.page_number}]"
