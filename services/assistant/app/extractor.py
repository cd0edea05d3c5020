"""
Responsible for "extraction":
- Pick a decoder from the declared filename's extension (case-insensitive)
- Decode PDF (pdfplumber), DOCX/DOC (mammoth raw text) or plain UTF-8 text
- Return one immutable DocumentRecord per file, whatever happens

A decode error never escapes extract(): it is logged and recorded as a
Failure outcome on the record. extract_all() runs every decode concurrently
in worker threads and returns the records in input order.
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import mammoth     # DOCX -> raw text, with conversion warnings
import pdfplumber  # Extract text from PDF pages

from .errors import ExtractionFailure

logger = logging.getLogger("extraction")


class DocumentFormat(str, Enum):
    PDF = "pdf"
    DOCX = "docx"
    TEXT = "text"
    UNSUPPORTED = "unsupported"


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    EMPTY_CONTENT = "empty_content"
    FAILURE = "failure"


# -----------------------------------------------------------------------------
# Per-format metadata (tagged by `kind`)
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class PdfMetadata:
    page_count: int
    info: Dict[str, str] = field(default_factory=dict)
    kind: str = "pdf"


@dataclass(frozen=True)
class DocxMetadata:
    warnings: Tuple[str, ...] = ()
    kind: str = "docx"


@dataclass(frozen=True)
class TextMetadata:
    encoding: str = "utf-8"
    kind: str = "text"


@dataclass(frozen=True)
class NoMetadata:
    kind: str = "none"


Metadata = Union[PdfMetadata, DocxMetadata, TextMetadata, NoMetadata]


@dataclass(frozen=True)
class DocumentOutcome:
    """What an analysis keeps about one document: no text."""
    filename: str
    format: DocumentFormat
    status: OutcomeStatus
    error: Optional[str] = None


@dataclass(frozen=True)
class DocumentRecord:
    filename: str
    format: DocumentFormat
    text: str
    status: OutcomeStatus
    metadata: Metadata = field(default_factory=NoMetadata)
    error: Optional[str] = None

    @property
    def has_content(self) -> bool:
        return self.status is OutcomeStatus.SUCCESS

    def outcome(self) -> DocumentOutcome:
        return DocumentOutcome(self.filename, self.format, self.status, self.error)


# -----------------------------------------------------------------------------
# Decoders: path -> (text, metadata); raise ExtractionFailure on any error
# -----------------------------------------------------------------------------
def _decode_pdf(path: str) -> Tuple[str, Metadata]:
    try:
        with pdfplumber.open(path) as pdf:
            # Some pages may be images (no text)
            pages = [page.extract_text() or "" for page in pdf.pages]
            info = {str(k): str(v) for k, v in (pdf.metadata or {}).items()}
    except Exception as exc:
        raise ExtractionFailure(f"Failed to parse PDF: {exc}") from exc
    return "\n".join(pages), PdfMetadata(page_count=len(pages), info=info)


def _decode_docx(path: str) -> Tuple[str, Metadata]:
    try:
        with open(path, "rb") as fh:
            result = mammoth.extract_raw_text(fh)
    except Exception as exc:
        raise ExtractionFailure(f"Failed to parse DOCX: {exc}") from exc
    warnings = tuple(m.message for m in result.messages)
    return result.value, DocxMetadata(warnings=warnings)


def _decode_text(path: str) -> Tuple[str, Metadata]:
    try:
        with open(path, "rb") as fh:
            raw = fh.read()
        # utf-8-sig drops a leading BOM; anything not valid UTF-8 is a failure
        text = raw.decode("utf-8-sig")
    except (OSError, UnicodeDecodeError) as exc:
        raise ExtractionFailure(f"Failed to parse TXT: {exc}") from exc
    return text, TextMetadata(encoding="utf-8")


Decoder = Callable[[str], Tuple[str, Metadata]]

_DECODERS: Dict[str, Tuple[DocumentFormat, Decoder]] = {
    ".pdf": (DocumentFormat.PDF, _decode_pdf),
    ".docx": (DocumentFormat.DOCX, _decode_docx),
    ".doc": (DocumentFormat.DOCX, _decode_docx),
    ".txt": (DocumentFormat.TEXT, _decode_text),
}

SUPPORTED_EXTENSIONS = tuple(_DECODERS)


def extract(path: str, declared_name: str) -> DocumentRecord:
    """
    Extract one file. The declared (original) name decides the format;
    the stored path is only read.
    """
    ext = os.path.splitext(declared_name)[1].lower()
    entry = _DECODERS.get(ext)
    if entry is None:
        logger.warning("Unsupported file type for %s", declared_name)
        return DocumentRecord(
            filename=declared_name,
            format=DocumentFormat.UNSUPPORTED,
            text="",
            status=OutcomeStatus.FAILURE,
            error=f"Unsupported file type: {ext or '(none)'}",
        )

    fmt, decoder = entry
    try:
        text, metadata = decoder(path)
    except ExtractionFailure as exc:
        logger.warning("Extraction failed for %s: %s", declared_name, exc.message)
        return DocumentRecord(
            filename=declared_name,
            format=fmt,
            text="",
            status=OutcomeStatus.FAILURE,
            error=exc.message,
        )

    status = OutcomeStatus.SUCCESS if text.strip() else OutcomeStatus.EMPTY_CONTENT
    logger.info("Extracted %s format=%s status=%s chars=%s", declared_name, fmt.value, status.value, len(text))
    return DocumentRecord(filename=declared_name, format=fmt, text=text, status=status, metadata=metadata)


async def extract_all(files: Sequence[Tuple[str, str]]) -> List[DocumentRecord]:
    """
    Fan out one decode per (path, declared_name) pair and wait for all of them.
    Order of the result matches the input.
    """
    tasks = [asyncio.to_thread(extract, path, name) for path, name in files]
    return list(await asyncio.gather(*tasks))
