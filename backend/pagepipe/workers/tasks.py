"""
Celery Tasks — dispatch into the durable job queue

Task: process_next_job
  Claims one job from processing_jobs and runs it through the
  JobOrchestrator under this process's WorkerPool (lease + heartbeat).
  `document_id` is informational only; whichever job is claimable first
  is processed. When the run ends in a scheduled retry, a new message is
  published with the retry delay as countdown.

Task: sweep_queue  (Celery Beat)
  Reaps expired leases that must not be re-claimed, then publishes one
  process_next_job per claimable job. Covers broker outages at enqueue
  time and jobs whose backoff delay has elapsed.

Each worker process owns one PipelineRuntime and one event loop, built
on worker_process_init and closed on worker_process_shutdown.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from celery import Task
from celery.signals import worker_process_init, worker_process_shutdown

from pagepipe.core.config import get_settings
from pagepipe.core.errors import QueueUnavailable
from pagepipe.db.session import check_db_health
from pagepipe.workers.celery_app import celery_app
from pagepipe.workers.runtime import PipelineRuntime

logger = logging.getLogger(__name__)

_runtime: Optional[PipelineRuntime] = None
_loop:    Optional[asyncio.AbstractEventLoop] = None


# ---------------------------------------------------------------------------
# Async task helper
# The engine pool and the httpx client are bound to one loop, so every task
# in this process runs on the same one.
# ---------------------------------------------------------------------------

def _event_loop() -> asyncio.AbstractEventLoop:
    global _loop
    if _loop is None or _loop.is_closed():
        _loop = asyncio.new_event_loop()
        asyncio.set_event_loop(_loop)
    return _loop


def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    return _event_loop().run_until_complete(coro)


def get_runtime() -> PipelineRuntime:
    global _runtime
    if _runtime is None:
        settings = get_settings()
        runtime = PipelineRuntime.from_settings(settings)
        run_async(runtime.start(create_schema=not settings.is_production))
        _runtime = runtime
    return _runtime


@worker_process_init.connect
def init_worker_process(**_) -> None:
    get_runtime()


@worker_process_shutdown.connect
def shutdown_worker_process(**_) -> None:
    global _runtime, _loop
    if _runtime is not None:
        run_async(_runtime.close(drain=True))
        _runtime = None
    if _loop is not None and not _loop.is_closed():
        _loop.close()
        _loop = None


# ---------------------------------------------------------------------------
# Main processing task
# ---------------------------------------------------------------------------

@celery_app.task(
    name="pagepipe.workers.tasks.process_next_job",
    bind=True,
    max_retries=5,
    default_retry_delay=10,
    acks_late=True,
    reject_on_worker_lost=True,
)
def process_next_job(self: Task, document_id: Optional[str] = None) -> dict[str, Any]:
    runtime = get_runtime()
    try:
        outcome = run_async(runtime.pool.run_once())
    except QueueUnavailable as exc:
        logger.warning("Queue unavailable, retrying task | task_id=%s error=%s", self.request.id, exc)
        raise self.retry(exc=exc)

    if outcome is None:
        logger.debug("Nothing claimable | hint_doc=%s", document_id or "-")
        return {"status": "idle"}

    if outcome.retry_delay is not None:
        process_next_job.apply_async(
            kwargs={"document_id": outcome.document_id},
            countdown=outcome.retry_delay,
        )
    return outcome.as_dict()


# ---------------------------------------------------------------------------
# Sweep — runs every sweep_interval_seconds via Celery Beat
# ---------------------------------------------------------------------------

@celery_app.task(
    name="pagepipe.workers.tasks.sweep_queue",
    bind=False,
    acks_late=True,
    soft_time_limit=55,
    time_limit=60,
)
def sweep_queue() -> dict[str, int]:
    return run_async(_sweep_queue_async(get_runtime()))


async def _sweep_queue_async(runtime: PipelineRuntime) -> dict[str, int]:
    reaped = await runtime.pool.reap()
    claimable = await runtime.queue.count_claimable()

    for _ in range(claimable):
        process_next_job.apply_async()

    if reaped or claimable:
        logger.info("Sweep | reaped=%d dispatched=%d", len(reaped), claimable)
    return {"reaped": len(reaped), "dispatched": claimable}


# ---------------------------------------------------------------------------
# Health check task
# ---------------------------------------------------------------------------

@celery_app.task(name="pagepipe.workers.tasks.health_check")
def health_check() -> dict[str, str]:
    runtime = get_runtime()
    db = run_async(check_db_health(runtime.engine))
    return {"status": "ok" if db["status"] == "ok" else "degraded", "worker": runtime.orchestrator.worker_id}
