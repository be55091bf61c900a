"""
Durable Job Queue — lease-based, at-least-once
═══════════════════════════════════════════════

Backed by the processing_jobs table (PostgreSQL in production, SQLite in
tests). The queue owns exactly one job kind: "turn this PDF into pages".

Contract
────────
  enqueue(document_id, source_url) → job_id
      Persists a pending job, or returns the id of the document's job that
      is already pending or leased. Store outage → QueueUnavailable.

  claim(worker_id, lease_seconds) → Job | None
      Picks one pending job whose available_at has passed, or one leased
      job whose lease expired (crash recovery), assigns a fresh lease and
      increments attempt. Atomic under concurrent callers:

        1. SELECT candidates … FOR UPDATE SKIP LOCKED   (PostgreSQL)
        2. UPDATE … WHERE id = :id AND version = :seen  (compare-and-swap)

      Only the caller whose UPDATE hits exactly one row owns the job; every
      state change bumps `version`, so a stale reader can never win.

  heartbeat(job_id, worker_id) → HeartbeatResult
      Extends the lease. Raises LeaseLost if the lease now belongs to
      someone else. Reports cancel_requested so the worker can stop early.

  ack(job_id)                  → job leaves the active set (status=done)
  fail(job_id, reason)         → pending again after backoff, or dead

Backoff: delay = retry_policy.delay(attempt - 1), i.e. base × 2^(attempt-1)
for the run that just failed. With base 5s and max_attempts=3 that is 5s,
then 10s; the third failure is final.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import AsyncGenerator, Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pagepipe.core.backoff import BackoffPolicy
from pagepipe.core.clock import Clock, as_utc, utcnow
from pagepipe.core.errors import JobNotFound, LeaseLost, QueueUnavailable
from pagepipe.models.documents import (
    ACTIVE_JOB_STATUSES,
    JOB_CANCELLED,
    JOB_DEAD,
    JOB_DONE,
    JOB_LEASED,
    JOB_PENDING,
    TERMINAL_JOB_STATUSES,
    ProcessingJob,
)

logger = logging.getLogger(__name__)

# Candidates inspected per claim; losing a CAS race moves on to the next one
CLAIM_BATCH_SIZE = 10

# Upper bound on stored failure reasons
MAX_REASON_CHARS = 2000


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Job:
    """Immutable snapshot of a queue row, as seen by the caller."""
    job_id:           str
    document_id:      str
    source_url:       str
    status:           str
    attempt:          int
    max_attempts:     int
    lease_owner:      Optional[str] = None
    lease_expiry:     Optional[datetime] = None
    available_at:     Optional[datetime] = None
    cancel_requested: bool = False
    last_error:       Optional[str] = None
    created_at:       Optional[datetime] = None
    updated_at:       Optional[datetime] = None
    finished_at:      Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    @classmethod
    def from_row(cls, row: ProcessingJob, **overrides) -> "Job":
        values = dict(
            job_id=row.id,
            document_id=row.document_id,
            source_url=row.source_url,
            status=row.status,
            attempt=row.attempt,
            max_attempts=row.max_attempts,
            lease_owner=row.lease_owner,
            lease_expiry=as_utc(row.lease_expiry),
            available_at=as_utc(row.available_at),
            cancel_requested=bool(row.cancel_requested),
            last_error=row.last_error,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
            finished_at=as_utc(row.finished_at),
        )
        values.update(overrides)
        return cls(**values)


class FailOutcome(str, Enum):
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD_LETTERED   = "dead_lettered"


@dataclass(frozen=True)
class FailResult:
    outcome:       FailOutcome
    job:           Job
    delay_seconds: Optional[float] = None

    @property
    def dead_lettered(self) -> bool:
        return self.outcome is FailOutcome.DEAD_LETTERED


@dataclass(frozen=True)
class HeartbeatResult:
    lease_expiry:     datetime
    cancel_requested: bool


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

class JobQueue:
    """
    Process-wide queue handle. Stateless apart from its injected
    session factory, so one instance is shared by every worker slot.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        retry_policy:    BackoffPolicy,
        lease_seconds:   int = 120,
        clock:           Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._retry_policy    = retry_policy
        self._lease_seconds   = lease_seconds
        self._clock           = clock

    @property
    def retry_policy(self) -> BackoffPolicy:
        return self._retry_policy

    @property
    def lease_seconds(self) -> int:
        return self._lease_seconds

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncGenerator[AsyncSession, None]:
        """One transaction per queue operation; store errors become QueueUnavailable."""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except (DBAPIError, OSError) as exc:
            logger.error("Queue store error | op=%s error=%s", operation, exc)
            raise QueueUnavailable(f"{operation} failed: {exc}") from exc

    async def _active_job_id(self, session: AsyncSession, document_id: str) -> Optional[str]:
        stmt = (
            select(ProcessingJob.id)
            .where(
                ProcessingJob.document_id == document_id,
                ProcessingJob.status.in_(ACTIVE_JOB_STATUSES),
            )
            .with_for_update()
        )
        return (await session.execute(stmt)).scalars().first()

    async def _load(self, session: AsyncSession, job_id: str, lock: bool = False) -> ProcessingJob:
        stmt = select(ProcessingJob).where(ProcessingJob.id == job_id)
        if lock:
            stmt = stmt.with_for_update()
        row = (await session.execute(stmt)).scalars().first()
        if row is None:
            raise JobNotFound(f"Job not found: {job_id}")
        return row

    @staticmethod
    async def _compare_and_swap(
        session: AsyncSession,
        row:     ProcessingJob,
        values:  dict,
    ) -> bool:
        result = await session.execute(
            update(ProcessingJob)
            .where(
                ProcessingJob.id == row.id,
                ProcessingJob.version == row.version,
            )
            .values(version=row.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        document_id:  str,
        source_url:   str,
        max_attempts: Optional[int] = None,
    ) -> str:
        if not document_id or not document_id.strip():
            raise ValueError("document_id is required")
        if not source_url or not source_url.strip():
            raise ValueError("source_url is required")

        document_id = document_id.strip()
        now = self._clock()
        row = ProcessingJob(
            document_id=document_id,
            source_url=source_url.strip(),
            status=JOB_PENDING,
            attempt=0,
            max_attempts=max_attempts or self._retry_policy.max_attempts,
            version=0,
            available_at=now,
            cancel_requested=False,
            created_at=now,
            updated_at=now,
        )
        try:
            async with self._transaction("enqueue") as session:
                existing = await self._active_job_id(session, document_id)
                if existing is None:
                    session.add(row)
                    await session.flush()
        except QueueUnavailable as exc:
            # A concurrent enqueue for the same document won the unique index
            if not isinstance(exc.__cause__, IntegrityError):
                raise
            async with self._transaction("enqueue") as session:
                existing = await self._active_job_id(session, document_id)
            if existing is None:
                raise

        if existing is not None:
            logger.info("Job already active | job=%s doc=%s", existing, document_id)
            return existing

        job_id = row.id
        logger.info(
            "Job enqueued | job=%s doc=%s max_attempts=%d",
            job_id, row.document_id, row.max_attempts,
        )
        return job_id

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    async def claim(
        self,
        worker_id:     str,
        lease_seconds: Optional[int] = None,
    ) -> Optional[Job]:
        now   = self._clock()
        lease = timedelta(seconds=lease_seconds or self._lease_seconds)

        async with self._transaction("claim") as session:
            candidates = (
                await session.execute(
                    select(ProcessingJob)
                    .where(
                        or_(
                            and_(
                                ProcessingJob.status == JOB_PENDING,
                                ProcessingJob.available_at <= now,
                            ),
                            and_(
                                ProcessingJob.status == JOB_LEASED,
                                ProcessingJob.lease_expiry <= now,
                                ProcessingJob.attempt < ProcessingJob.max_attempts,
                                ProcessingJob.cancel_requested.is_(False),
                            ),
                        )
                    )
                    .order_by(ProcessingJob.available_at, ProcessingJob.created_at)
                    .limit(CLAIM_BATCH_SIZE)
                    .with_for_update(skip_locked=True)
                )
            ).scalars().all()

            for row in candidates:
                reclaimed = row.status == JOB_LEASED
                values = dict(
                    status=JOB_LEASED,
                    lease_owner=worker_id,
                    lease_expiry=now + lease,
                    attempt=row.attempt + 1,
                    updated_at=now,
                )
                if not await self._compare_and_swap(session, row, values):
                    logger.debug("Claim race lost | job=%s worker=%s", row.id, worker_id)
                    continue

                job = Job.from_row(row, **values)
                logger.info(
                    "Job claimed | job=%s doc=%s worker=%s attempt=%d/%d reclaimed=%s",
                    job.job_id, job.document_id, worker_id,
                    job.attempt, job.max_attempts, reclaimed,
                )
                return job

        return None

    async def heartbeat(
        self,
        job_id:        str,
        worker_id:     str,
        lease_seconds: Optional[int] = None,
    ) -> HeartbeatResult:
        now    = self._clock()
        expiry = now + timedelta(seconds=lease_seconds or self._lease_seconds)

        async with self._transaction("heartbeat") as session:
            row = await self._load(session, job_id)
            if row.status != JOB_LEASED or row.lease_owner != worker_id:
                raise LeaseLost(
                    f"Job {job_id} is {row.status} (owner={row.lease_owner}), not held by {worker_id}"
                )
            if not await self._compare_and_swap(
                session, row, dict(lease_expiry=expiry, updated_at=now),
            ):
                raise LeaseLost(f"Job {job_id} changed concurrently")
            cancel_requested = bool(row.cancel_requested)

        logger.debug("Lease extended | job=%s worker=%s until=%s", job_id, worker_id, expiry)
        return HeartbeatResult(lease_expiry=expiry, cancel_requested=cancel_requested)

    async def ack(self, job_id: str, worker_id: Optional[str] = None) -> Job:
        now = self._clock()
        async with self._transaction("ack") as session:
            row = await self._load(session, job_id, lock=True)
            self._require_lease(row, worker_id)
            values = dict(
                status=JOB_DONE,
                lease_owner=None,
                lease_expiry=None,
                last_error=None,
                updated_at=now,
                finished_at=now,
            )
            if not await self._compare_and_swap(session, row, values):
                raise LeaseLost(f"Job {job_id} changed concurrently")
            job = Job.from_row(row, **values)

        logger.info("Job acked | job=%s doc=%s attempt=%d", job_id, job.document_id, job.attempt)
        return job

    async def fail(
        self,
        job_id:    str,
        reason:    str,
        *,
        retryable: bool = True,
        worker_id: Optional[str] = None,
    ) -> FailResult:
        now    = self._clock()
        reason = (reason or "unknown error")[:MAX_REASON_CHARS]

        async with self._transaction("fail") as session:
            row = await self._load(session, job_id, lock=True)
            self._require_lease(row, worker_id)

            if retryable and row.attempt < row.max_attempts:
                delay = self._retry_policy.delay(row.attempt - 1)
                values = dict(
                    status=JOB_PENDING,
                    available_at=now + timedelta(seconds=delay),
                    lease_owner=None,
                    lease_expiry=None,
                    last_error=reason,
                    updated_at=now,
                )
                outcome = FailOutcome.RETRY_SCHEDULED
            else:
                delay = None
                values = dict(
                    status=JOB_DEAD,
                    lease_owner=None,
                    lease_expiry=None,
                    last_error=reason,
                    updated_at=now,
                    finished_at=now,
                )
                outcome = FailOutcome.DEAD_LETTERED

            if not await self._compare_and_swap(session, row, values):
                raise LeaseLost(f"Job {job_id} changed concurrently")
            job = Job.from_row(row, **values)

        if outcome is FailOutcome.RETRY_SCHEDULED:
            logger.warning(
                "Job failed, retry scheduled | job=%s doc=%s attempt=%d/%d delay=%.1fs reason=%s",
                job_id, job.document_id, job.attempt, job.max_attempts, delay, reason,
            )
        else:
            logger.error(
                "Job dead-lettered | job=%s doc=%s attempt=%d/%d retryable=%s reason=%s",
                job_id, job.document_id, job.attempt, job.max_attempts, retryable, reason,
            )
        return FailResult(outcome=outcome, job=job, delay_seconds=delay)

    async def mark_cancelled(
        self,
        job_id:    str,
        reason:    str = "Processing cancelled",
        worker_id: Optional[str] = None,
    ) -> Job:
        """Terminal transition for a leased job that observed its cancel flag."""
        now = self._clock()
        async with self._transaction("mark_cancelled") as session:
            row = await self._load(session, job_id, lock=True)
            self._require_lease(row, worker_id)
            values = dict(
                status=JOB_CANCELLED,
                lease_owner=None,
                lease_expiry=None,
                last_error=reason,
                updated_at=now,
                finished_at=now,
            )
            if not await self._compare_and_swap(session, row, values):
                raise LeaseLost(f"Job {job_id} changed concurrently")
            job = Job.from_row(row, **values)

        logger.info("Job cancelled | job=%s doc=%s", job_id, job.document_id)
        return job

    @staticmethod
    def _require_lease(row: ProcessingJob, worker_id: Optional[str]) -> None:
        if row.status != JOB_LEASED:
            raise LeaseLost(f"Job {row.id} is {row.status}, not leased")
        if worker_id is not None and row.lease_owner != worker_id:
            raise LeaseLost(f"Job {row.id} is leased by {row.lease_owner}, not {worker_id}")

    # ------------------------------------------------------------------
    # Control / maintenance
    # ------------------------------------------------------------------

    async def request_cancel(self, job_id: str) -> Job:
        """
        Pending jobs are cancelled on the spot. Leased jobs get a flag the
        worker sees on its next heartbeat; terminal jobs are left alone.
        """
        now = self._clock()
        async with self._transaction("request_cancel") as session:
            row = await self._load(session, job_id, lock=True)

            if row.status in TERMINAL_JOB_STATUSES:
                return Job.from_row(row)

            if row.status == JOB_PENDING:
                values = dict(
                    status=JOB_CANCELLED,
                    cancel_requested=True,
                    last_error="Cancelled before processing",
                    updated_at=now,
                    finished_at=now,
                )
            else:
                values = dict(cancel_requested=True, updated_at=now)

            if not await self._compare_and_swap(session, row, values):
                raise QueueUnavailable(f"Job {job_id} changed concurrently, retry the request")
            job = Job.from_row(row, **values)

        logger.info("Cancel requested | job=%s status=%s", job_id, job.status)
        return job

    async def reap_expired(self) -> list[Job]:
        """
        Terminate expired leases that must not be claimed again: jobs that
        already used their last attempt (dead) and jobs with a pending
        cancel request (cancelled). Returns the jobs that changed.
        """
        now = self._clock()
        reaped: list[Job] = []

        async with self._transaction("reap_expired") as session:
            rows = (
                await session.execute(
                    select(ProcessingJob)
                    .where(
                        ProcessingJob.status == JOB_LEASED,
                        ProcessingJob.lease_expiry <= now,
                        or_(
                            ProcessingJob.attempt >= ProcessingJob.max_attempts,
                            ProcessingJob.cancel_requested.is_(True),
                        ),
                    )
                    .with_for_update(skip_locked=True)
                )
            ).scalars().all()

            for row in rows:
                if row.cancel_requested:
                    status, reason = JOB_CANCELLED, "Processing cancelled"
                else:
                    status = JOB_DEAD
                    reason = (
                        f"Lease expired on final attempt {row.attempt}/{row.max_attempts}"
                        + (f"; last error: {row.last_error}" if row.last_error else "")
                    )[:MAX_REASON_CHARS]
                values = dict(
                    status=status,
                    lease_owner=None,
                    lease_expiry=None,
                    last_error=reason,
                    updated_at=now,
                    finished_at=now,
                )
                if await self._compare_and_swap(session, row, values):
                    reaped.append(Job.from_row(row, **values))

        for job in reaped:
            logger.warning(
                "Expired lease reaped | job=%s doc=%s status=%s", job.job_id, job.document_id, job.status,
            )
        return reaped

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    async def get(self, job_id: str) -> Optional[Job]:
        async with self._transaction("get") as session:
            row = (
                await session.execute(select(ProcessingJob).where(ProcessingJob.id == job_id))
            ).scalars().first()
            return Job.from_row(row) if row else None

    async def list_dead(self, limit: int = 50) -> list[Job]:
        async with self._transaction("list_dead") as session:
            rows = (
                await session.execute(
                    select(ProcessingJob)
                    .where(ProcessingJob.status == JOB_DEAD)
                    .order_by(ProcessingJob.finished_at.desc())
                    .limit(limit)
                )
            ).scalars().all()
            return [Job.from_row(r) for r in rows]

    async def count_claimable(self) -> int:
        now = self._clock()
        async with self._transaction("count_claimable") as session:
            count = (
                await session.execute(
                    select(func.count())
                    .select_from(ProcessingJob)
                    .where(
                        or_(
                            and_(
                                ProcessingJob.status == JOB_PENDING,
                                ProcessingJob.available_at <= now,
                            ),
                            and_(
                                ProcessingJob.status == JOB_LEASED,
                                ProcessingJob.lease_expiry <= now,
                                ProcessingJob.attempt < ProcessingJob.max_attempts,
                                ProcessingJob.cancel_requested.is_(False),
                            ),
                        )
                    )
                )
            ).scalar_one()
            return int(count)

