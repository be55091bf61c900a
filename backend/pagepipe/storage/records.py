"""
Document Record Store — processing-state fields only.

The pipeline owns three fields of the Document Record while a job is
leased: progress, complete, error. Everything else about a document
(owner, title, file metadata) lives with other services.

Progress is written with a conditional UPDATE (`progress < :new`), so a
late or reordered write can never lower the value a polling client sees.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pagepipe.core.clock import Clock, as_utc, utcnow
from pagepipe.core.errors import StorageWriteFailed
from pagepipe.models.documents import Document

logger = logging.getLogger(__name__)

MAX_ERROR_CHARS = 1000


@dataclass(frozen=True)
class ProgressView:
    """Read-only projection served to polling clients."""
    document_id: str
    progress:    int
    complete:    bool
    error:       Optional[str]
    updated_at:  Optional[datetime] = None


class DocumentRecordStore:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock:           Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def _execute_update(self, operation: str, document_id: str, values: dict, *criteria) -> int:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        update(Document)
                        .where(Document.id == document_id, *criteria)
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
                    return result.rowcount
        except (DBAPIError, OSError) as exc:
            logger.error("Record write failed | op=%s doc=%s error=%s", operation, document_id, exc)
            raise StorageWriteFailed(f"{operation} for document {document_id}: {exc}") from exc

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def ensure(self, document_id: str, source_url: Optional[str] = None) -> None:
        """Create the record if the document-creation side has not done so."""
        now = self._clock()
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    existing = await session.get(Document, document_id)
                    if existing is None:
                        session.add(Document(
                            id=document_id,
                            source_url=source_url,
                            progress=0,
                            complete=False,
                            error=None,
                            created_at=now,
                            updated_at=now,
                        ))
                    elif source_url and existing.source_url != source_url:
                        existing.source_url = source_url
                        existing.updated_at = now
        except (DBAPIError, OSError) as exc:
            raise StorageWriteFailed(f"ensure document {document_id}: {exc}") from exc

    async def begin_run(self, document_id: str, reset_progress: bool) -> None:
        """
        Claimed: clear the previous error and completion flag. Progress is
        reset only on a job's first attempt; retries of the same job keep
        the value so polling never observes a drop.
        """
        values: dict = dict(complete=False, error=None, updated_at=self._clock())
        if reset_progress:
            values["progress"] = 0
        updated = await self._execute_update("begin_run", document_id, values)
        if not updated:
            # Job enqueued for a record that was never created
            await self.ensure(document_id)
            await self._execute_update("begin_run", document_id, values)

    async def set_progress(self, document_id: str, progress: int) -> bool:
        """Raise progress to `progress`; returns False if it was already >= that value."""
        progress = max(0, min(int(progress), 100))
        updated = await self._execute_update(
            "set_progress",
            document_id,
            dict(progress=progress, updated_at=self._clock()),
            Document.progress < progress,
        )
        if updated:
            logger.debug("Progress | doc=%s progress=%d", document_id, progress)
        return bool(updated)

    async def mark_complete(self, document_id: str, page_count: int, result_url: str) -> None:
        await self._execute_update(
            "mark_complete",
            document_id,
            dict(
                progress=100,
                complete=True,
                error=None,
                page_count=page_count,
                result_url=result_url,
                updated_at=self._clock(),
            ),
        )
        logger.info("Document complete | doc=%s pages=%d result=%s", document_id, page_count, result_url)

    async def mark_failed(self, document_id: str, message: str) -> None:
        """Failed: record the error, leave `complete` untouched (False)."""
        await self._execute_update(
            "mark_failed",
            document_id,
            dict(error=(message or "unknown error")[:MAX_ERROR_CHARS], updated_at=self._clock()),
        )
        logger.warning("Document failed | doc=%s error=%s", document_id, message)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_progress(self, document_id: str) -> Optional[ProgressView]:
        async with self._session_factory() as session:
            row = (
                await session.execute(select(Document).where(Document.id == document_id))
            ).scalars().first()
        if row is None:
            return None
        return ProgressView(
            document_id=row.id,
            progress=row.progress,
            complete=row.complete,
            error=row.error,
            updated_at=as_utc(row.updated_at),
        )
