"""
Source fetch — download the original PDF for a job.

http(s) URLs are fetched with httpx; any non-2xx response, transport error
or oversized body is a SourceUnavailable (job-level, retryable by the
queue). s3:// URLs and URLs of our own blob store are read through the
Blob Store instead.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from pagepipe.core.errors import SourceUnavailable
from pagepipe.processing.uploader import BlobStore

logger = logging.getLogger(__name__)


class SourceFetcher:

    def __init__(
        self,
        client:     httpx.AsyncClient,
        blob_store: Optional[BlobStore] = None,
        max_bytes:  int = 64 * 1024 * 1024,
    ) -> None:
        self._client = client
        self._blob_store = blob_store
        self._max_bytes = max_bytes

    async def fetch(self, url: str) -> bytes:
        if self._is_blob_url(url):
            return await self._fetch_blob(url)

        try:
            async with self._client.stream("GET", url) as response:
                if not response.is_success:
                    raise SourceUnavailable(
                        f"Failed to fetch PDF: HTTP {response.status_code} {response.reason_phrase}"
                    )
                declared = response.headers.get("content-length")
                if declared and declared.isdigit() and int(declared) > self._max_bytes:
                    raise SourceUnavailable(
                        f"Source too large: {declared} bytes (limit {self._max_bytes})"
                    )
                chunks: list[bytes] = []
                received = 0
                async for chunk in response.aiter_bytes():
                    received += len(chunk)
                    if received > self._max_bytes:
                        raise SourceUnavailable(f"Source exceeds {self._max_bytes} bytes")
                    chunks.append(chunk)
        except httpx.HTTPError as exc:
            raise SourceUnavailable(f"Failed to fetch PDF: {type(exc).__name__}: {exc}") from exc

        data = b"".join(chunks)
        logger.info("Source fetched | url=%s bytes=%d", url, len(data))
        return data

    def _is_blob_url(self, url: str) -> bool:
        if self._blob_store is None:
            return False
        if url.startswith("s3://"):
            return True
        owns = getattr(self._blob_store, "owns", None)
        return bool(owns and owns(url))

    async def _fetch_blob(self, url: str) -> bytes:
        try:
            data = await self._blob_store.get(url)
        except Exception as exc:
            raise SourceUnavailable(f"Failed to fetch PDF from blob store: {exc}") from exc
        logger.info("Source fetched from blob store | url=%s bytes=%d", url, len(data))
        return data
