"""
S3 Blob Store — "put bytes, get URL"

The pipeline consumes object storage as an opaque capability:

    put(key, data) → url     idempotent: same key overwrites, same URL back
    get(url)       → bytes

Key layout (server-constructed, never taken from the client):
    documents/<document_id>/page_<n>.png      rendered page images
    documents/<document_id>/document.json     aggregate result

URLs are stable, not presigned: either <blob_public_base_url>/<key> (CDN,
MinIO, LocalStack) or the virtual-hosted S3 URL. Stable URLs are what makes
re-uploading a page after a retry safe — the URL recorded on the first
attempt stays valid.
"""

from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass
from typing import Optional
from urllib.parse import unquote, urlparse

import aioboto3
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Key helpers
# ---------------------------------------------------------------------------

def _safe_segment(value: str) -> str:
    """Strip path components from a server-side key segment."""
    return str(value).replace("/", "_").replace("..", "_")


def page_image_key(document_id: str, page_number: int) -> str:
    return f"documents/{_safe_segment(document_id)}/page_{page_number}.png"


def document_result_key(document_id: str) -> str:
    return f"documents/{_safe_segment(document_id)}/document.json"


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BlobStoreConfig:
    bucket:          str
    region:          str = "us-east-1"
    endpoint_url:    str = ""    # LocalStack / MinIO; empty = AWS
    public_base_url: str = ""    # empty = virtual-hosted S3 URL

    def url_for(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url.rstrip('/')}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    def key_for(self, url: str) -> str:
        """Inverse of url_for(); also accepts s3://<bucket>/<key>."""
        if url.startswith("s3://"):
            parsed = urlparse(url)
            if parsed.netloc != self.bucket:
                raise ValueError(f"URL points at bucket {parsed.netloc!r}, expected {self.bucket!r}")
            return unquote(parsed.path.lstrip("/"))

        base = self.url_for("")
        if url.startswith(base):
            return unquote(url[len(base):])
        raise ValueError(f"Not a URL of this blob store: {url}")


# ---------------------------------------------------------------------------
# S3 Service
# ---------------------------------------------------------------------------

class S3BlobStore:
    """
    Async S3 operations for one bucket.

    One instance per worker process; aioboto3 clients are opened per call,
    so the object is safe to share across concurrent page tasks.
    """

    def __init__(self, config: BlobStoreConfig) -> None:
        self._cfg = config
        self._session = aioboto3.Session()

    @property
    def config(self) -> BlobStoreConfig:
        return self._cfg

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client(self):
        """Return a scoped async S3 client context manager."""
        kwargs: dict = {"region_name": self._cfg.region}
        if self._cfg.endpoint_url:
            kwargs["endpoint_url"] = self._cfg.endpoint_url
        # Credentials: IAM role in production, AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY locally
        return self._session.client("s3", **kwargs)

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def put(
        self,
        key:          str,
        data:         bytes,
        content_type: Optional[str] = None,
    ) -> str:
        """
        Upload (or overwrite) `key` and return its stable URL.

        Raises botocore ClientError / connection errors unchanged; retry
        policy belongs to the caller (ArtifactUploader).
        """
        ct = content_type or mimetypes.guess_type(key)[0] or "application/octet-stream"

        async with self._client() as s3:
            resp = await s3.put_object(
                Bucket=self._cfg.bucket,
                Key=key,
                Body=data,
                ContentType=ct,
            )

        logger.info(
            "S3 upload ok | bucket=%s key=%s size=%d etag=%s",
            self._cfg.bucket, key, len(data), resp.get("ETag", "").strip('"'),
        )
        return self._cfg.url_for(key)

    async def get(self, url: str) -> bytes:
        """Download the object behind a URL previously returned by put()."""
        key = self._cfg.key_for(url)
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=self._cfg.bucket, Key=key)
                return await resp["Body"].read()
            except ClientError as exc:
                code = exc.response["Error"]["Code"]
                if code in ("NoSuchKey", "404"):
                    raise FileNotFoundError(f"Object not found: {key}") from exc
                raise

    def owns(self, url: str) -> bool:
        try:
            self._cfg.key_for(url)
        except ValueError:
            return False
        return True
