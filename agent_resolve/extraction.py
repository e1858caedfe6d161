"""File-to-text extraction for evidence uploads.

PDFs are read with pypdf; plain-text formats are decoded as UTF-8. Anything
that yields no usable text raises ``ExtractionFailed`` so the caller can ask
the agent to resubmit the evidence as text.
"""

from __future__ import annotations

import io
import logging
import os

from pypdf import PdfReader
from pypdf.errors import PdfReadError

from agent_resolve.config import settings
from agent_resolve.errors import ExtractionFailed
from agent_resolve.schemas import ExtractionResult

logger = logging.getLogger(__name__)

TEXT_EXTENSIONS = {".txt", ".md", ".markdown", ".json", ".csv", ".log", ".eml"}
PDF_EXTENSIONS = {".pdf"}


def _truncate(text: str, limit: int) -> tuple[str, bool]:
    if len(text) > limit:
        return text[:limit], True
    return text, False


def _extract_pdf(data: bytes, filename: str) -> tuple[str, int]:
    try:
        reader = PdfReader(io.BytesIO(data))
        if reader.is_encrypted:
            raise ExtractionFailed(f"{filename} is encrypted; resubmit the evidence as text")
        pages = [page.extract_text() or "" for page in reader.pages]
    except (PdfReadError, ValueError, OSError) as exc:
        logger.warning("Could not parse PDF %s: %s", filename, exc)
        raise ExtractionFailed(f"Could not read {filename}; resubmit the evidence as text") from exc
    return "\n\n".join(p.strip() for p in pages if p.strip()), len(pages)


def extract_text(data: bytes, filename: str, max_chars: int | None = None) -> ExtractionResult:
    """Extract plain text from an uploaded file."""
    max_chars = max_chars or settings.max_evidence_chars
    if not data:
        raise ExtractionFailed(f"{filename} is empty")
    if len(data) > settings.max_upload_bytes:
        raise ExtractionFailed(f"{filename} exceeds the {settings.max_upload_bytes} byte upload limit")

    ext = os.path.splitext(filename)[1].lower()
    page_count = None
    if ext in PDF_EXTENSIONS:
        text, page_count = _extract_pdf(data, filename)
        if not text:
            # Scanned or image-only documents have no text layer
            raise ExtractionFailed(
                f"No text could be extracted from {filename}; it may be a scanned document. "
                "Resubmit the evidence as text."
            )
    elif ext in TEXT_EXTENSIONS:
        try:
            text = data.decode("utf-8").strip()
        except UnicodeDecodeError as exc:
            raise ExtractionFailed(f"{filename} is not valid UTF-8 text") from exc
        if not text:
            raise ExtractionFailed(f"{filename} contains no text")
    else:
        raise ExtractionFailed(f"Unsupported file type {ext or '(none)'}; resubmit the evidence as text")

    text, truncated = _truncate(text, max_chars)
    if truncated:
        logger.info("Truncated extracted text from %s to %d characters", filename, max_chars)
    return ExtractionResult(text=text, page_count=page_count, truncated=truncated)
