"""
SQLAlchemy ORM Models — Document Records & Processing Jobs

Two tables:

  documents        — the processing-state subset of the Document Record
                     (progress, complete, error). Polled by clients, written
                     only by the worker holding the job's lease.
  processing_jobs  — the durable job queue. One row per enqueue; a document
                     has at most one pending or leased row at a time.

Job state machine (status column):
    pending    — waiting for a worker (available_at gates backoff delays)
    leased     — claimed; lease_owner holds it until lease_expiry
    done       — acked; no longer part of the active set
    dead       — exhausted attempts or non-retryable; kept for inspection
    cancelled  — cancelled by request before or during processing

`version` is bumped on every state change and used as the compare-and-swap
token by JobQueue.claim(), so a claim is atomic on PostgreSQL and SQLite.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from pagepipe.core.clock import utcnow


# ---------------------------------------------------------------------------
# Declarative base — shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Job status values
# ---------------------------------------------------------------------------

JOB_PENDING   = "pending"
JOB_LEASED    = "leased"
JOB_DONE      = "done"
JOB_DEAD      = "dead"
JOB_CANCELLED = "cancelled"

ACTIVE_JOB_STATUSES   = frozenset({JOB_PENDING, JOB_LEASED})
TERMINAL_JOB_STATUSES = frozenset({JOB_DONE, JOB_DEAD, JOB_CANCELLED})

_ACTIVE_JOB_PREDICATE = text("status IN ('pending', 'leased')")


# ---------------------------------------------------------------------------
# Document model — documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    Processing state of one uploaded PDF.

    progress  : 0–100, never lowered while a job for this document runs
    complete  : True once Finalizing wrote the aggregate artifact
    error     : last job-level failure message; cleared when a new run starts
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint("progress >= 0 AND progress <= 100", name="documents_progress_range"),
    )

    id: Mapped[str] = mapped_column(String(128), primary_key=True)

    source_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    progress: Mapped[int]  = mapped_column(Integer, nullable=False, default=0)
    complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    error:    Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    page_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    result_url: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Blob URL of documents/<id>/document.json",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow,
    )

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} progress={self.progress} "
            f"complete={self.complete} error={self.error!r}>"
        )


# ---------------------------------------------------------------------------
# ProcessingJob model — processing_jobs
# ---------------------------------------------------------------------------

class ProcessingJob(Base):
    __tablename__ = "processing_jobs"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'leased', 'done', 'dead', 'cancelled')",
            name="processing_jobs_status_check",
        ),
        Index("idx_processing_jobs_claim", "status", "available_at"),
        Index("idx_processing_jobs_lease", "status", "lease_expiry"),
        Index("idx_processing_jobs_document", "document_id"),
        # At most one pending or leased job per document
        Index(
            "uq_processing_jobs_active_document",
            "document_id",
            unique=True,
            postgresql_where=_ACTIVE_JOB_PREDICATE,
            sqlite_where=_ACTIVE_JOB_PREDICATE,
        ),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4()),
    )
    document_id: Mapped[str] = mapped_column(String(128), nullable=False)
    source_url:  Mapped[str] = mapped_column(Text, nullable=False)

    status:       Mapped[str] = mapped_column(String(16), nullable=False, default=JOB_PENDING)
    attempt:      Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    version:      Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    available_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow,
    )
    lease_owner:  Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    lease_expiry: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    cancel_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_error:       Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at:  Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at:  Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<ProcessingJob id={self.id} doc={self.document_id} status={self.status} "
            f"attempt={self.attempt}/{self.max_attempts}>"
        )
