"""
Ingestion Service — the enqueue side of the pipeline.

  1. Ensure the Document Record exists (progress 0, complete False)
  2. Persist a pending job in processing_jobs        → job_id
  3. Publish a process_next_job nudge to Celery       (best effort)

Step 3 can fail without losing work: the job row is already durable and
the beat sweep dispatches every claimable job.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Protocol

from pagepipe.queue.job_queue import JobQueue
from pagepipe.schemas.documents import EnqueueResponse
from pagepipe.storage.records import DocumentRecordStore

logger = logging.getLogger(__name__)


class Publisher(Protocol):
    async def publish_job_nudge(self, document_id: str) -> bool: ...


class TaskPublisher:
    """
    Sends process_next_job to the Celery broker.
    Import is deferred so the broker connection is not required at module load time.
    """

    async def publish_job_nudge(self, document_id: str) -> bool:
        from pagepipe.workers.tasks import process_next_job

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(
                None,
                lambda: process_next_job.apply_async(
                    kwargs={"document_id": document_id},
                    retry=False,
                ),
            )
        except Exception as exc:
            # kombu raises OperationalError and friends; the sweep picks the job up later
            logger.warning("Broker publish failed, relying on sweep | doc=%s error=%s", document_id, exc)
            return False
        logger.info("Processing task published | doc=%s", document_id)
        return True


class IngestionService:

    def __init__(
        self,
        queue:     JobQueue,
        records:   DocumentRecordStore,
        publisher: Optional[Publisher] = None,
    ) -> None:
        self._queue = queue
        self._records = records
        self._publisher = publisher

    async def enqueue(self, document_id: str, source_url: str) -> EnqueueResponse:
        await self._records.ensure(document_id, source_url)
        job_id = await self._queue.enqueue(document_id, source_url)
        if self._publisher is not None:
            await self._publisher.publish_job_nudge(document_id)
        return EnqueueResponse(job_id=job_id, document_id=document_id, status="pending")
