"""
Page Extractor — per-page text and the authoritative page count.

Uses PyMuPDF's native text layer. The page count returned here is the
single source of truth for the job: the renderer is driven by it and the
final aggregate must contain exactly that many PageResult entries.

Malformed input (not a PDF, truncated, encrypted) raises MalformedDocument,
which the queue treats as non-retryable. Anything else is an I/O problem
and propagates unchanged.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field

from pagepipe.core.errors import MalformedDocument

logger = logging.getLogger(__name__)

# MuPDF keeps global context state; serialize every call into it.
MUPDF_LOCK = threading.Lock()


@dataclass(frozen=True)
class PageText:
    page_number: int    # 1-based
    text:        str


@dataclass(frozen=True)
class ExtractedDocument:
    page_count: int
    pages:      list[PageText] = field(default_factory=list)

    @property
    def total_chars(self) -> int:
        return sum(len(p.text) for p in self.pages)

    def text_for(self, page_number: int) -> str:
        return self.pages[page_number - 1].text


def open_pdf(pdf_bytes: bytes):
    """Open a PDF from memory, mapping MuPDF parse errors to MalformedDocument."""
    import fitz  # PyMuPDF; imported here to avoid module-level import cost

    if not pdf_bytes:
        raise MalformedDocument("Document is empty")
    try:
        doc = fitz.open(stream=pdf_bytes, filetype="pdf")
    except (RuntimeError, ValueError) as exc:   # fitz.FileDataError is a RuntimeError
        raise MalformedDocument(f"Cannot parse PDF: {exc}") from exc

    if doc.needs_pass:
        doc.close()
        raise MalformedDocument("Document is password protected")
    return doc


def extract_pages(pdf_bytes: bytes) -> ExtractedDocument:
    """Pure function: bytes → (page count, ordered page texts)."""
    with MUPDF_LOCK:
        doc = open_pdf(pdf_bytes)
        try:
            pages: list[PageText] = []
            for page_number, page in enumerate(doc, start=1):
                try:
                    raw = page.get_text("text") or ""
                except RuntimeError as exc:
                    raise MalformedDocument(f"Cannot read page {page_number}: {exc}") from exc
                pages.append(PageText(page_number=page_number, text=raw.strip()))
            return ExtractedDocument(page_count=len(pages), pages=pages)
        finally:
            doc.close()


class PageExtractor:
    """Async facade: runs extract_pages() in a thread so the event loop stays free."""

    async def extract(self, pdf_bytes: bytes) -> ExtractedDocument:
        loop = asyncio.get_running_loop()
        t0 = time.monotonic()
        result = await loop.run_in_executor(None, extract_pages, pdf_bytes)
        logger.info(
            "Extraction | pages=%d total_chars=%d elapsed_ms=%.0f",
            result.page_count, result.total_chars, (time.monotonic() - t0) * 1000,
        )
        return result
