"""
Page Renderer — one page of the in-memory document to PNG.

Works on the whole document buffer plus a page index, so no single-page
temporary PDFs are written to disk and there is nothing to clean up.
Render failures are deterministic for a given input and are never retried.
"""

from __future__ import annotations

import asyncio
import logging

from pagepipe.core.errors import MalformedDocument, PageRenderFailed
from pagepipe.processing.extractor import MUPDF_LOCK, open_pdf

logger = logging.getLogger(__name__)


def render_page(pdf_bytes: bytes, page_index: int, dpi: int = 150) -> bytes:
    """Rasterize page `page_index` (0-based) and return PNG bytes."""
    page_number = page_index + 1
    with MUPDF_LOCK:
        try:
            doc = open_pdf(pdf_bytes)
        except MalformedDocument as exc:
            raise PageRenderFailed(page_number, str(exc)) from exc
        try:
            if not 0 <= page_index < doc.page_count:
                raise PageRenderFailed(
                    page_number, f"Page index {page_index} out of range (pages={doc.page_count})",
                )
            try:
                pix = doc.load_page(page_index).get_pixmap(dpi=dpi)
                return pix.tobytes("png")
            except Exception as exc:
                raise PageRenderFailed(page_number, f"MuPDF render error: {exc}") from exc
        finally:
            doc.close()


class PageRenderer:

    def __init__(self, dpi: int = 150) -> None:
        self._dpi = dpi

    async def render(self, pdf_bytes: bytes, page_index: int) -> bytes:
        loop = asyncio.get_running_loop()
        image = await loop.run_in_executor(None, render_page, pdf_bytes, page_index, self._dpi)
        logger.debug("Rendered | page=%d bytes=%d dpi=%d", page_index + 1, len(image), self._dpi)
        return image
