"""PDF text extraction with ordered fallback strategies.

:class:`PdfExtractor` walks a list of :class:`ExtractionStrategy` objects
in priority order and returns the first non-empty result:

1. :class:`PypdfStrategy`: structured parse of the in-memory bytes.
2. :class:`PdfMinerStrategy`: writes the bytes into a private scratch
   directory and loads them through LangChain's ``PDFMinerLoader``, an
   independent parser with its own recovery rules.
3. :class:`RawStreamStrategy`: heuristic scan of the raw content
   streams, used when the document structure itself is damaged.

Each strategy declares the faults it is known to raise on damaged input;
those are logged as warnings, anything else is logged with a traceback,
and either way the next strategy runs.  When every strategy comes up
empty an :class:`UnextractableError` is raised carrying the most
informative underlying cause.
"""

from __future__ import annotations

import io
import logging
import re
import tempfile
import unicodedata
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, Sequence

from langchain_community.document_loaders import PDFMinerLoader
from pdfminer.psparser import PSException
from pypdf import PasswordType, PdfReader
from pypdf.errors import FileNotDecryptedError, PyPdfError

from pdf_rag.errors import InvalidFormatError, PdfRagError, UnextractableError

logger = logging.getLogger(__name__)

PDF_MAGIC = b"%PDF"
MIN_PDF_SIZE = 100

# Faults that mean "this strategy cannot read the document", not a bug.
RECOGNISED_FAULTS: tuple[type[BaseException], ...] = (
    OSError,
    ValueError,
    KeyError,
    IndexError,
    zlib.error,
)

# Parsers walking a damaged object graph also trip over wrong object types
# and reference cycles.
PARSER_FAULTS: tuple[type[BaseException], ...] = RECOGNISED_FAULTS + (
    TypeError,
    AttributeError,
    RecursionError,
)

POSSIBLE_CAUSES = [
    "PDF is password protected",
    "PDF is corrupted or invalid",
    "PDF contains only images without text",
    "Unsupported PDF format",
]


class ExtractionStrategy(Protocol):
    """A single way of turning PDF bytes into text."""

    name: str
    faults: tuple[type[BaseException], ...]

    def extract(self, data: bytes) -> str:
        """Return the extracted text (possibly empty) or raise."""
        ...


# ── strategies ─────────────────────────────────────────────────────────


def _ensure_decrypted(reader: PdfReader) -> None:
    if reader.is_encrypted and reader.decrypt("") == PasswordType.NOT_DECRYPTED:
        raise FileNotDecryptedError("PDF is password protected")


class PypdfStrategy:
    """Structured parse with ``pypdf`` straight from memory."""

    name = "pypdf"
    faults = PARSER_FAULTS + (PyPdfError,)

    def extract(self, data: bytes) -> str:
        reader = PdfReader(io.BytesIO(data))
        _ensure_decrypted(reader)
        pages = [page.extract_text() or "" for page in reader.pages]
        logger.debug("pypdf read %d page(s)", len(pages))
        return "\n\n".join(pages)


class PdfMinerStrategy:
    """Second opinion from ``pdfminer.six`` via ``PDFMinerLoader``.

    The loader reads by path, so the bytes go to a throwaway directory;
    the process working directory and caller-visible paths are untouched.
    """

    name = "pdfminer"
    faults = PARSER_FAULTS + (PSException,)

    def extract(self, data: bytes) -> str:
        with tempfile.TemporaryDirectory(prefix="pdf-rag-") as workdir:
            path = Path(workdir) / "upload.pdf"
            path.write_bytes(data)
            documents = PDFMinerLoader(str(path)).load()
        return "\n\n".join(doc.page_content for doc in documents)


_STREAM_RE = re.compile(rb"stream\r?\n(.*?)\r?\n?endstream", re.DOTALL)
_TJ_RE = re.compile(rb"\((.*?)(?<!\\)\)\s*Tj")
_TJ_ARRAY_RE = re.compile(rb"\[(.*?)\]\s*TJ", re.DOTALL)
_STRING_RE = re.compile(rb"\((.*?)(?<!\\)\)")
_PRINTABLE_RE = re.compile(rb"[\x20-\x7e]{4,}")
_WORD_RE = re.compile(r"[A-Za-z]{3,}")
_ESCAPES = {b"\\(": b"(", b"\\)": b")", b"\\n": b"\n", b"\\r": b"\r", b"\\t": b"\t", b"\\\\": b"\\"}


def _unescape(raw: bytes) -> bytes:
    for escaped, plain in _ESCAPES.items():
        raw = raw.replace(escaped, plain)
    return raw


class RawStreamStrategy:
    """Last resort: scrape text out of raw ``stream … endstream`` sections.

    Flate-compressed streams are inflated when possible.  Text-showing
    operands (``Tj`` / ``TJ``) are preferred; otherwise only printable
    runs that look like words are kept.  Image streams are skipped.
    """

    name = "raw-stream"
    faults = RECOGNISED_FAULTS

    def extract(self, data: bytes) -> str:
        operands: list[str] = []
        runs: list[str] = []
        for match in _STREAM_RE.finditer(data):
            header = data[max(0, match.start() - 512) : match.start()]
            if b"/Image" in header.rsplit(b"obj", 1)[-1]:
                continue
            body = match.group(1)
            try:
                body = zlib.decompress(body)
            except zlib.error:
                pass
            operands.extend(self._text_operands(body))
            runs.extend(self._printable_runs(body))

        chosen = operands or runs
        return " ".join(part for part in chosen if part)

    @staticmethod
    def _text_operands(body: bytes) -> list[str]:
        parts: list[bytes] = [m.group(1) for m in _TJ_RE.finditer(body)]
        for array in _TJ_ARRAY_RE.finditer(body):
            parts.append(b"".join(s.group(1) for s in _STRING_RE.finditer(array.group(1))))
        return [_unescape(p).decode("latin-1").strip() for p in parts]

    @staticmethod
    def _printable_runs(body: bytes) -> list[str]:
        runs = (m.group(0).decode("ascii").strip() for m in _PRINTABLE_RE.finditer(body))
        return [run for run in runs if _WORD_RE.search(run)]


DEFAULT_STRATEGIES: tuple[ExtractionStrategy, ...] = (
    PypdfStrategy(),
    PdfMinerStrategy(),
    RawStreamStrategy(),
)


# ── extractor ──────────────────────────────────────────────────────────


def _cause_rank(exc: BaseException) -> int:
    """Higher means more useful to the user when diagnosing a failure."""
    text = str(exc).lower()
    if isinstance(exc, FileNotDecryptedError) or "password" in text or "encrypt" in text:
        return 3
    if isinstance(exc, (PyPdfError, PSException)):
        return 2
    if isinstance(exc, OSError):
        return 1
    return 0


class PdfExtractor:
    """Turn raw PDF bytes into plain text.

    Parameters
    ----------
    strategies:
        Extraction strategies in priority order.  Defaults to
        :data:`DEFAULT_STRATEGIES`.
    """

    def __init__(self, strategies: Sequence[ExtractionStrategy] | None = None) -> None:
        self.strategies: tuple[ExtractionStrategy, ...] = tuple(strategies or DEFAULT_STRATEGIES)

    def extract(self, data: bytes) -> str:
        """Return the text of *data*.

        Raises
        ------
        InvalidFormatError
            *data* is empty or lacks the ``%PDF`` header.
        UnextractableError
            No strategy produced non-empty text; unexpected strategy
            faults end up here too, as the recorded cause.
        """
        if not data:
            raise InvalidFormatError("Invalid or empty PDF buffer")
        if not data.startswith(PDF_MAGIC):
            raise InvalidFormatError(
                "Invalid PDF file: Missing PDF header",
                details={"header": data[:4].hex()},
            )

        best_cause: BaseException | None = None
        attempted: list[str] = []
        for strategy in self.strategies:
            attempted.append(strategy.name)
            try:
                text = strategy.extract(data)
            except PdfRagError:
                raise
            except Exception as exc:
                if isinstance(exc, getattr(strategy, "faults", RECOGNISED_FAULTS)):
                    logger.warning("Extraction strategy %r failed: %s", strategy.name, exc)
                else:
                    logger.exception("Extraction strategy %r raised unexpectedly", strategy.name)
                if best_cause is None or _cause_rank(exc) > _cause_rank(best_cause):
                    best_cause = exc
                continue

            if text and text.strip():
                logger.info("Extracted %d chars with strategy %r", len(text), strategy.name)
                return text
            logger.info("Strategy %r produced no text", strategy.name)

        raise self._unextractable(best_cause, attempted) from best_cause

    @staticmethod
    def _unextractable(cause: BaseException | None, attempted: list[str]) -> UnextractableError:
        details = {"strategies": attempted}
        if cause is None:
            error = UnextractableError(
                "No text content found in PDF. The PDF might be image-based or password protected.",
                details=details,
                possible_causes=[
                    "PDF contains only images or scanned content",
                    "PDF text may be embedded as images",
                    "Try using a PDF with selectable text",
                ],
            )
        elif _cause_rank(cause) == 3:
            error = UnextractableError(
                "This PDF is password protected and cannot be processed",
                details={**details, "cause": str(cause)},
                possible_causes=["This PDF requires a password to access"],
            )
        else:
            error = UnextractableError(
                f"Failed to extract text from PDF: {cause}",
                details={**details, "cause": str(cause)},
                possible_causes=list(POSSIBLE_CAUSES),
            )
        return error


# ── helpers ────────────────────────────────────────────────────────────


_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def clean_text(text: str) -> str:
    """Unicode NFC, strip control chars, collapse whitespace, trim."""
    if not text:
        return ""
    text = unicodedata.normalize("NFC", text)
    text = _CONTROL_RE.sub("", text)
    text = re.sub(r"\s+", " ", text)
    return text.strip()


@dataclass(frozen=True)
class PdfValidation:
    """Outcome of :func:`validate_pdf_bytes`."""

    is_valid: bool
    error: str | None = None


def validate_pdf_bytes(data: bytes, max_size: int | None = None) -> PdfValidation:
    """Cheap sanity checks run before any parsing."""
    if not data:
        return PdfValidation(False, "Empty or invalid buffer")
    if len(data) < MIN_PDF_SIZE:
        return PdfValidation(False, "File too small to be a valid PDF")
    if max_size is not None and len(data) > max_size:
        return PdfValidation(False, f"File too large. Maximum size is {max_size} bytes")
    if not data.startswith(PDF_MAGIC):
        return PdfValidation(False, "Invalid PDF file format")
    return PdfValidation(True)
