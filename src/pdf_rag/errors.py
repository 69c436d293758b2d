"""Error taxonomy for the ingestion and query pipeline.

Every error raised across a component boundary derives from
:class:`PdfRagError` and carries an :class:`ErrorCategory` so that the
transport layer can map it to a status code and a remediation hint
without string-matching messages.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Coarse cause of a failure, used for remediation."""

    VALIDATION = "validation"
    NETWORK = "network"
    TIMEOUT = "timeout"
    QUOTA = "quota"
    PROCESSING = "processing"
    NOT_FOUND = "not_found"
    ISOLATION = "isolation"


class PdfRagError(Exception):
    """Base class for all pipeline errors.

    Parameters
    ----------
    message:
        Human-readable description.
    category:
        Coarse cause of the failure.
    details:
        Extra structured context (sizes, model names, ...).
    possible_causes:
        Hints shown to the end user.
    """

    default_category = ErrorCategory.PROCESSING

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        details: dict[str, Any] | None = None,
        possible_causes: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.details = details or {}
        self.possible_causes = possible_causes or []

    def to_dict(self) -> dict[str, Any]:
        """Serialisable payload for the transport layer."""
        payload: dict[str, Any] = {
            "error": self.message,
            "type": f"{self.category.value}_error",
        }
        if self.details:
            payload["details"] = self.details
        if self.possible_causes:
            payload["possibleCauses"] = self.possible_causes
        return payload


class ValidationError(PdfRagError):
    """Bad caller input; raised before any external service is called."""

    default_category = ErrorCategory.VALIDATION


class ExtractionError(PdfRagError):
    """The document could not be turned into text."""


class InvalidFormatError(ExtractionError):
    """The byte stream is not a PDF (missing ``%PDF`` header)."""

    default_category = ErrorCategory.VALIDATION


class UnextractableError(ExtractionError):
    """Every extraction strategy failed or produced no text."""


class EmbeddingError(PdfRagError):
    """The embedding provider failed; batches fail atomically."""


class EmbeddingDimensionError(EmbeddingError):
    """The provider returned a vector of the wrong length."""


class GenerationError(PdfRagError):
    """Answer generation failed."""


class GenerationUnavailableError(GenerationError):
    """All models and their retries were exhausted."""


class StoreError(PdfRagError):
    """The vector-store backend rejected or failed an operation."""


class TenantIsolationError(StoreError):
    """A read or write would cross (or ignore) tenant boundaries."""

    default_category = ErrorCategory.ISOLATION


class NoRelevantContentError(PdfRagError):
    """Retrieval found nothing for the tenant."""

    default_category = ErrorCategory.NOT_FOUND


_QUOTA_MARKERS = ("429", "quota", "rate limit", "rate_limit", "resource exhausted", "resource_exhausted")
_NETWORK_MARKERS = ("connection", "network", "fetch", "dns", "unreachable")


def categorize_exception(exc: BaseException) -> ErrorCategory:
    """Best-effort mapping of a third-party exception to an :class:`ErrorCategory`."""
    if isinstance(exc, PdfRagError):
        return exc.category
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return ErrorCategory.TIMEOUT
    if status_code_of(exc) == 429:
        return ErrorCategory.QUOTA

    name = type(exc).__name__.lower()
    text = str(exc).lower()
    if "timeout" in name or "timed out" in text:
        return ErrorCategory.TIMEOUT
    if "ratelimit" in name or any(marker in text for marker in _QUOTA_MARKERS):
        return ErrorCategory.QUOTA
    if isinstance(exc, ConnectionError) or "connection" in name:
        return ErrorCategory.NETWORK
    if any(marker in text for marker in _NETWORK_MARKERS):
        return ErrorCategory.NETWORK
    return ErrorCategory.PROCESSING


def status_code_of(exc: BaseException) -> int | None:
    """Return the HTTP status attached to a provider exception, if any."""
    for attr in ("status_code", "status", "code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None
