"""
Pipeline Runtime — every long-lived component, built once per process.

    runtime = PipelineRuntime.from_settings(get_settings())
    await runtime.start(create_schema=True)
    …
    await runtime.close()

Used by the API (queue + records only), each Celery worker process and
the standalone `python -m pagepipe.workers` entry point.
"""

from __future__ import annotations

import logging
import os
import socket
from typing import Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine

from pagepipe.core.backoff import BackoffPolicy
from pagepipe.core.config import Settings, get_settings
from pagepipe.db.session import check_db_health, create_engine_from_settings, create_session_factory, init_models
from pagepipe.processing import (
    ArtifactUploader,
    BlobStore,
    PageExtractor,
    PageRenderer,
    SourceFetcher,
)
from pagepipe.queue.job_queue import JobQueue
from pagepipe.storage.records import DocumentRecordStore
from pagepipe.storage.s3 import BlobStoreConfig, S3BlobStore
from pagepipe.workers.orchestrator import JobOrchestrator
from pagepipe.workers.pool import WorkerPool

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def job_retry_policy(settings: Settings) -> BackoffPolicy:
    return BackoffPolicy(
        base_delay=settings.job_backoff_base_seconds,
        max_delay=settings.job_backoff_max_seconds,
        max_attempts=settings.job_max_attempts,
    )


def upload_retry_policy(settings: Settings) -> BackoffPolicy:
    return BackoffPolicy(
        base_delay=settings.upload_backoff_base_seconds,
        max_delay=settings.upload_backoff_max_seconds,
        max_attempts=1 + settings.upload_max_retries,
    )


class PipelineRuntime:

    def __init__(
        self,
        settings:     Settings,
        engine:       AsyncEngine,
        queue:        JobQueue,
        records:      DocumentRecordStore,
        blob_store:   BlobStore,
        http_client:  httpx.AsyncClient,
        orchestrator: JobOrchestrator,
        pool:         WorkerPool,
    ) -> None:
        self.settings     = settings
        self.engine       = engine
        self.queue        = queue
        self.records      = records
        self.blob_store   = blob_store
        self.http_client  = http_client
        self.orchestrator = orchestrator
        self.pool         = pool
        self._closed = False

    @classmethod
    def from_settings(
        cls,
        settings:    Optional[Settings] = None,
        *,
        engine:      Optional[AsyncEngine] = None,
        blob_store:  Optional[BlobStore] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        worker_id:   Optional[str] = None,
    ) -> "PipelineRuntime":
        settings = settings or get_settings()
        engine = engine or create_engine_from_settings(settings)
        session_factory = create_session_factory(engine)

        if blob_store is None:
            blob_store = S3BlobStore(BlobStoreConfig(
                bucket=settings.s3_bucket,
                region=settings.aws_region,
                endpoint_url=settings.s3_endpoint_url,
                public_base_url=settings.blob_public_base_url,
            ))
        if http_client is None:
            http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(settings.source_fetch_timeout_seconds),
                follow_redirects=True,
            )

        queue = JobQueue(session_factory, job_retry_policy(settings), lease_seconds=settings.lease_seconds)
        records = DocumentRecordStore(session_factory)
        orchestrator = JobOrchestrator(
            queue,
            records,
            SourceFetcher(http_client, blob_store=blob_store, max_bytes=settings.source_max_bytes),
            PageExtractor(),
            PageRenderer(dpi=settings.render_dpi),
            ArtifactUploader(blob_store, upload_retry_policy(settings)),
            blob_store,
            page_concurrency=settings.page_concurrency,
            worker_id=worker_id or default_worker_id(),
        )
        pool = WorkerPool(
            queue,
            orchestrator,
            records,
            slots=settings.worker_job_concurrency,
            poll_interval=settings.claim_poll_interval_seconds,
            heartbeat_interval=settings.heartbeat_interval_seconds,
            reap_interval=float(settings.sweep_interval_seconds),
        )
        return cls(settings, engine, queue, records, blob_store, http_client, orchestrator, pool)

    async def start(self, create_schema: bool = False) -> None:
        if create_schema:
            await init_models(self.engine)
        health = await check_db_health(self.engine)
        if health["status"] != "ok":
            logger.critical("Database unavailable at startup: %s", health)
            raise RuntimeError(f"DB unavailable: {health}")
        logger.info(
            "Runtime ready | env=%s worker=%s slots=%d page_concurrency=%d bucket=%s",
            self.settings.app_env, self.orchestrator.worker_id, self.pool.slots,
            self.settings.page_concurrency, self.settings.s3_bucket,
        )

    async def close(self, drain: bool = True) -> None:
        if self._closed:
            return
        self._closed = True
        await self.pool.stop(drain=drain, timeout=self.settings.drain_timeout_seconds)
        await self.http_client.aclose()
        await self.engine.dispose()
        logger.info("Runtime closed | worker=%s", self.orchestrator.worker_id)
