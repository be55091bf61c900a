"""
Worker Pool — claim loop with bounded job slots.

Each slot repeatedly claims one job and hands it to the JobOrchestrator;
`slots` bounds how many jobs run at once in this process, the orchestrator's
ConcurrencyLimiter bounds pages within each job.

While a job runs, a heartbeat task extends its lease every
`heartbeat_interval` seconds. The heartbeat reply carries the job's
cancel flag; a cancel request or a lost lease is passed to the
orchestrator through the run's StopSignal.

Shutdown (`stop(drain=True)`) stops claiming and waits for in-flight jobs
up to a timeout; jobs still running after that are cancelled and their
leases simply expire.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Optional

from pagepipe.core.errors import LeaseLost, QueueUnavailable, StorageWriteFailed
from pagepipe.models.documents import JOB_CANCELLED
from pagepipe.queue.job_queue import Job, JobQueue
from pagepipe.storage.records import DocumentRecordStore
from pagepipe.workers.orchestrator import CANCELLED_MESSAGE, JobOrchestrator, JobOutcome
from pagepipe.workers.state import StopSignal

logger = logging.getLogger(__name__)


class WorkerPool:

    def __init__(
        self,
        queue:              JobQueue,
        orchestrator:       JobOrchestrator,
        records:            DocumentRecordStore,
        *,
        slots:              int = 2,
        poll_interval:      float = 2.0,
        heartbeat_interval: float = 30.0,
        reap_interval:      float = 30.0,
    ) -> None:
        if slots < 1:
            raise ValueError("slots must be >= 1")
        self._queue        = queue
        self._orchestrator = orchestrator
        self._records      = records
        self._slots        = slots
        self._poll_interval      = poll_interval
        self._heartbeat_interval = heartbeat_interval
        self._reap_interval      = reap_interval
        self._stopping = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self._active: dict[str, Job] = {}

    @property
    def worker_id(self) -> str:
        return self._orchestrator.worker_id

    @property
    def slots(self) -> int:
        return self._slots

    @property
    def active_jobs(self) -> list[str]:
        return list(self._active)

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not self._stopping.is_set()

    # ------------------------------------------------------------------
    # Single job
    # ------------------------------------------------------------------

    async def run_once(self) -> Optional[JobOutcome]:
        """Claim and run at most one job. Returns None when nothing is claimable."""
        job = await self._queue.claim(self.worker_id)
        if job is None:
            return None
        return await self.run_leased(job)

    async def run_leased(self, job: Job) -> JobOutcome:
        stop = StopSignal()
        self._active[job.job_id] = job
        heartbeat = asyncio.create_task(self._heartbeat_loop(job, stop), name=f"heartbeat:{job.job_id}")
        try:
            return await self._orchestrator.run(job, stop)
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat
            self._active.pop(job.job_id, None)

    async def _heartbeat_loop(self, job: Job, stop: StopSignal) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            try:
                result = await self._queue.heartbeat(job.job_id, self.worker_id)
            except LeaseLost as exc:
                logger.error("Heartbeat lost lease | job=%s worker=%s error=%s", job.job_id, self.worker_id, exc)
                stop.lease_lost(str(exc))
                return
            except QueueUnavailable as exc:
                # Lease is still valid until lease_expiry; try again next tick
                logger.warning("Heartbeat failed | job=%s error=%s", job.job_id, exc)
                continue
            if result.cancel_requested and not stop.is_set:
                logger.info("Cancel observed | job=%s worker=%s", job.job_id, self.worker_id)
                stop.cancel()

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def reap(self) -> list[Job]:
        """Terminate expired leases that cannot be re-claimed and record their error."""
        reaped = await self._queue.reap_expired()
        for job in reaped:
            message = CANCELLED_MESSAGE if job.status == JOB_CANCELLED else (job.last_error or "Lease expired")
            try:
                await self._records.mark_failed(job.document_id, message)
            except StorageWriteFailed as exc:
                logger.error("Could not record reaped job | job=%s doc=%s error=%s", job.job_id, job.document_id, exc)
        return reaped

    # ------------------------------------------------------------------
    # Long-running mode
    # ------------------------------------------------------------------

    async def run_forever(self) -> None:
        if self._tasks:
            raise RuntimeError("WorkerPool is already running")
        self._stopping.clear()
        logger.info(
            "Worker pool start | worker=%s slots=%d poll=%.1fs heartbeat=%.1fs",
            self.worker_id, self._slots, self._poll_interval, self._heartbeat_interval,
        )
        self._tasks = [
            asyncio.create_task(self._slot_loop(i), name=f"slot:{i}") for i in range(self._slots)
        ]
        self._tasks.append(asyncio.create_task(self._reap_loop(), name="reaper"))
        try:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        finally:
            self._tasks = []
            logger.info("Worker pool stopped | worker=%s", self.worker_id)

    async def stop(self, drain: bool = True, timeout: Optional[float] = None) -> None:
        self._stopping.set()
        tasks = list(self._tasks)
        if not tasks:
            return

        pending: set[asyncio.Task] = set(tasks)
        if drain:
            logger.info("Draining | worker=%s active_jobs=%d timeout=%s", self.worker_id, len(self._active), timeout)
            _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(
                "Drain incomplete, cancelled %d task(s) | worker=%s abandoned_jobs=%s",
                len(pending), self.worker_id, self.active_jobs,
            )
            await asyncio.gather(*pending, return_exceptions=True)

    async def _slot_loop(self, slot: int) -> None:
        while not self._stopping.is_set():
            try:
                outcome = await self.run_once()
            except QueueUnavailable as exc:
                logger.warning("Claim failed | slot=%d error=%s", slot, exc)
                outcome = None
            except Exception:
                logger.exception("Slot error | slot=%d worker=%s", slot, self.worker_id)
                outcome = None
            if outcome is None:
                await self._idle(self._poll_interval)

    async def _reap_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.reap()
            except QueueUnavailable as exc:
                logger.warning("Reap failed | error=%s", exc)
            await self._idle(self._reap_interval)

    async def _idle(self, seconds: float) -> None:
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
