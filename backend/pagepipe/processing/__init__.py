"""
Page Processing Package
════════════════════════

  source.py     SourceFetcher — download the original PDF (httpx / blob store)
  extractor.py  PageExtractor — page count + per-page text (PyMuPDF)
  renderer.py   PageRenderer — one page → PNG from the whole buffer
  uploader.py   ArtifactUploader — blob put with exponential back-off
  limiter.py    ConcurrencyLimiter — width-W bound on in-flight page tasks
"""

from pagepipe.processing.extractor import ExtractedDocument, PageExtractor, PageText
from pagepipe.processing.limiter import ConcurrencyLimiter
from pagepipe.processing.renderer import PageRenderer
from pagepipe.processing.source import SourceFetcher
from pagepipe.processing.uploader import ArtifactUploader, BlobStore

__all__ = [
    "ArtifactUploader",
    "BlobStore",
    "ConcurrencyLimiter",
    "ExtractedDocument",
    "PageExtractor",
    "PageRenderer",
    "PageText",
    "SourceFetcher",
]
