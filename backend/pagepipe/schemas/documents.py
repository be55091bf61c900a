"""
Pydantic schemas — page results, the persisted artifact, and the HTTP API.

Persisted artifact (documents/<id>/document.json), camelCase on the wire:

    {
      "documentId": "...",
      "pageCount": 3,
      "pages": [{"pageNumber": 1, "text": "...", "imageUrl": "https://…", "status": "succeeded"}, …],
      "succeededPages": 2,
      "failedPages": 1,
      "imageCount": 2,
      "processedDate": "2026-01-01T00:00:00+00:00"
    }

Invariants enforced at construction:
  - imageUrl is present iff status == succeeded
  - pages are sorted by pageNumber with no gaps or duplicates, and
    len(pages) == pageCount
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# ---------------------------------------------------------------------------
# Page results
# ---------------------------------------------------------------------------

class PageStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED    = "failed"


class PageResult(BaseModel):
    """One page's outcome. Immutable once built."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    page_number: int            = Field(..., ge=1, alias="pageNumber")
    text:        str            = Field("", description="Extracted text; may be empty")
    image_url:   Optional[str]  = Field(None, alias="imageUrl")
    status:      PageStatus
    error:       Optional[str]  = Field(None, description="Why the page failed (failed pages only)")

    @model_validator(mode="after")
    def _image_url_matches_status(self) -> "PageResult":
        if self.status is PageStatus.SUCCEEDED and not self.image_url:
            raise ValueError("A succeeded page must carry an imageUrl")
        if self.status is PageStatus.FAILED and self.image_url is not None:
            raise ValueError("A failed page must not carry an imageUrl")
        return self

    @classmethod
    def succeeded(cls, page_number: int, text: str, image_url: str) -> "PageResult":
        return cls(page_number=page_number, text=text, image_url=image_url, status=PageStatus.SUCCEEDED)

    @classmethod
    def failed(cls, page_number: int, text: str, error: str) -> "PageResult":
        return cls(page_number=page_number, text=text, image_url=None, status=PageStatus.FAILED, error=error)


# ---------------------------------------------------------------------------
# Aggregate artifact
# ---------------------------------------------------------------------------

class DocumentArtifact(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    document_id:     str              = Field(..., alias="documentId")
    page_count:      int              = Field(..., ge=0, alias="pageCount")
    pages:           list[PageResult] = Field(default_factory=list)
    succeeded_pages: int              = Field(0, ge=0, alias="succeededPages")
    failed_pages:    int              = Field(0, ge=0, alias="failedPages")
    image_count:     int              = Field(0, ge=0, alias="imageCount")
    processed_date:  datetime         = Field(..., alias="processedDate")

    @model_validator(mode="after")
    def _pages_complete_and_ordered(self) -> "DocumentArtifact":
        numbers = [p.page_number for p in self.pages]
        if numbers != list(range(1, self.page_count + 1)):
            raise ValueError(
                f"pages must be exactly 1..{self.page_count} in order, got {numbers[:10]}…"
                if len(numbers) > 10 else
                f"pages must be exactly 1..{self.page_count} in order, got {numbers}"
            )
        return self

    @classmethod
    def build(
        cls,
        document_id:    str,
        page_count:     int,
        results:        list[PageResult],
        processed_date: datetime,
    ) -> "DocumentArtifact":
        pages = sorted(results, key=lambda r: r.page_number)
        succeeded = sum(1 for p in pages if p.status is PageStatus.SUCCEEDED)
        return cls(
            document_id=document_id,
            page_count=page_count,
            pages=pages,
            succeeded_pages=succeeded,
            failed_pages=len(pages) - succeeded,
            image_count=sum(1 for p in pages if p.image_url),
            processed_date=processed_date,
        )

    def to_json_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True, indent=2).encode("utf-8")


# ---------------------------------------------------------------------------
# HTTP API — requests
# ---------------------------------------------------------------------------

class EnqueueRequest(BaseModel):
    document_id: str = Field(..., min_length=1, max_length=128)
    source_url:  str = Field(..., min_length=1, description="Where the original PDF can be fetched")

    @field_validator("document_id", "source_url")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    @field_validator("source_url")
    @classmethod
    def _supported_scheme(cls, value: str) -> str:
        if not value.startswith(("http://", "https://", "s3://")):
            raise ValueError("source_url must be an http(s) or s3 URL")
        return value


# ---------------------------------------------------------------------------
# HTTP API — responses
# ---------------------------------------------------------------------------

class EnqueueResponse(BaseModel):
    job_id:      str
    document_id: str
    status:      str = "pending"


class ProgressResponse(BaseModel):
    """Read-only projection polled by clients."""
    document_id: str
    progress:    int = Field(..., ge=0, le=100)
    complete:    bool
    error:       Optional[str] = None
    updated_at:  Optional[datetime] = None


class JobStatusResponse(BaseModel):
    job_id:           str
    document_id:      str
    status:           str
    attempt:          int
    max_attempts:     int
    cancel_requested: bool = False
    last_error:       Optional[str] = None
    available_at:     Optional[datetime] = None
    lease_expiry:     Optional[datetime] = None
    finished_at:      Optional[datetime] = None


class ErrorResponse(BaseModel):
    error_code: str
    message:    str
