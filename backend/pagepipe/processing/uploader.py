"""
Artifact Uploader — Blob Store put with exponential back-off.

Retry policy (BackoffPolicy, shared type with the job queue):
  try 1 fails → sleep delay(0) → try 2 fails → sleep delay(1) → …
  up to policy.max_attempts tries in total (1 + upload_max_retries).

Re-uploading under the same key is safe: the Blob Store overwrites and
returns the same URL, so a retry after an ambiguous failure is harmless.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Protocol

from pagepipe.core.backoff import BackoffPolicy
from pagepipe.core.errors import PageUploadFailed

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class BlobStore(Protocol):
    async def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> str: ...

    async def get(self, url: str) -> bytes: ...


class ArtifactUploader:

    def __init__(
        self,
        blob_store: BlobStore,
        policy:     BackoffPolicy,
        sleep:      Sleep = asyncio.sleep,
    ) -> None:
        self._blob_store = blob_store
        self._policy = policy
        self._sleep = sleep

    async def upload(
        self,
        key:          str,
        data:         bytes,
        content_type: str = "image/png",
    ) -> str:
        """Return the object URL, or raise PageUploadFailed once retries are exhausted."""
        last_error: Exception | None = None

        for attempt in range(self._policy.max_attempts):
            if attempt > 0:
                delay = self._policy.delay(attempt - 1)
                logger.warning(
                    "Upload retry | key=%s attempt=%d/%d delay=%.1fs error=%s",
                    key, attempt + 1, self._policy.max_attempts, delay, last_error,
                )
                await self._sleep(delay)

            try:
                return await self._blob_store.put(key, data, content_type=content_type)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                last_error = exc

        logger.error(
            "Upload failed permanently | key=%s attempts=%d error=%s",
            key, self._policy.max_attempts, last_error,
        )
        raise PageUploadFailed(
            key, self._policy.max_attempts, f"{type(last_error).__name__}: {last_error}",
        ) from last_error
