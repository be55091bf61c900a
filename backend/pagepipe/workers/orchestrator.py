"""
Job Orchestrator — runs one leased job through the state machine.

  1. Claimed         begin_run on the Document Record, fetch source bytes
  2. Extracting      page count + per-page text (authoritative page count)
  3. PageProcessing  render → upload per page under the ConcurrencyLimiter
  4. Finalizing      aggregate JSON → Blob Store, record complete, ack
  5. Failed          record error, JobQueue.fail() (retry or dead-letter)

Page-level errors (PageRenderFailed, PageUploadFailed) are caught at the
page-task boundary and become status=failed entries. Anything else that
escapes the run is a job-level failure.

The lease is owned by the caller (WorkerPool), which feeds cancellation
and lease loss into the run through a StopSignal.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from pagepipe.core.backoff import BackoffPolicy
from pagepipe.core.clock import Clock, utcnow
from pagepipe.core.errors import (
    JobCancelled,
    LeaseLost,
    PageRenderFailed,
    PageUploadFailed,
    PipelineError,
    QueueUnavailable,
    StorageWriteFailed,
)
from pagepipe.processing import (
    ArtifactUploader,
    BlobStore,
    ConcurrencyLimiter,
    ExtractedDocument,
    PageExtractor,
    PageRenderer,
    PageText,
    SourceFetcher,
)
from pagepipe.queue.job_queue import Job, JobQueue
from pagepipe.schemas.documents import DocumentArtifact, PageResult
from pagepipe.storage.records import DocumentRecordStore
from pagepipe.storage.s3 import document_result_key, page_image_key
from pagepipe.workers.state import (
    EXTRACTED_PROGRESS,
    FETCHED_PROGRESS,
    JobState,
    JobStateMachine,
    ProgressTracker,
    StopReason,
    StopSignal,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

CANCELLED_MESSAGE = "Processing cancelled"


@dataclass(frozen=True)
class JobOutcome:
    """What happened to one claimed job."""
    job_id:          str
    document_id:     str
    state:           JobState
    attempt:         int = 0
    page_count:      Optional[int] = None
    succeeded_pages: int = 0
    failed_pages:    int = 0
    result_url:      Optional[str] = None
    error:           Optional[str] = None
    retry_delay:     Optional[float] = None    # set when the queue re-scheduled the job
    dead_lettered:   bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "job_id":          self.job_id,
            "document_id":     self.document_id,
            "state":           self.state.value,
            "attempt":         self.attempt,
            "page_count":      self.page_count,
            "succeeded_pages": self.succeeded_pages,
            "failed_pages":    self.failed_pages,
            "result_url":      self.result_url,
            "error":           self.error,
            "retry_delay":     self.retry_delay,
            "dead_lettered":   self.dead_lettered,
        }


class JobOrchestrator:

    def __init__(
        self,
        queue:              JobQueue,
        records:            DocumentRecordStore,
        fetcher:            SourceFetcher,
        extractor:          PageExtractor,
        renderer:           PageRenderer,
        uploader:           ArtifactUploader,
        blob_store:         BlobStore,
        *,
        page_concurrency:   int = 2,
        worker_id:          str = "worker",
        queue_retry_policy: Optional[BackoffPolicy] = None,
        sleep:              Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock:              Clock = utcnow,
    ) -> None:
        if page_concurrency < 1:
            raise ValueError("page_concurrency must be >= 1")
        self._queue      = queue
        self._records    = records
        self._fetcher    = fetcher
        self._extractor  = extractor
        self._renderer   = renderer
        self._uploader   = uploader
        self._blob_store = blob_store
        self._page_concurrency = page_concurrency
        self._worker_id  = worker_id
        self._queue_retry = queue_retry_policy or BackoffPolicy(base_delay=0.5, max_delay=5.0, max_attempts=3)
        self._sleep      = sleep
        self._clock      = clock

    @property
    def worker_id(self) -> str:
        return self._worker_id

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self, job: Job, stop: Optional[StopSignal] = None) -> JobOutcome:
        stop = stop or StopSignal()
        machine = JobStateMachine(job.job_id)
        t0 = time.monotonic()
        logger.info(
            "Job start | job=%s doc=%s attempt=%d/%d worker=%s",
            job.job_id, job.document_id, job.attempt, job.max_attempts, self._worker_id,
        )

        try:
            outcome = await self._run_states(job, machine, stop)
        except LeaseLost as exc:
            machine.transition(JobState.ABANDONED)
            logger.warning("Lease lost, abandoning job | job=%s doc=%s error=%s", job.job_id, job.document_id, exc)
            return self._outcome(job, machine, error=exc.describe())
        except JobCancelled:
            return await self._cancel(job, machine)
        except PipelineError as exc:
            return await self._fail(job, machine, exc.describe(), retryable=exc.retryable)
        except Exception as exc:
            logger.exception("Unexpected error | job=%s doc=%s", job.job_id, job.document_id)
            return await self._fail(job, machine, f"UnexpectedError: {type(exc).__name__}: {exc}", retryable=True)

        logger.info(
            "Job done | job=%s doc=%s pages=%d ok=%d failed=%d elapsed_ms=%.0f",
            job.job_id, job.document_id, outcome.page_count or 0,
            outcome.succeeded_pages, outcome.failed_pages, (time.monotonic() - t0) * 1000,
        )
        return outcome

    async def _run_states(self, job: Job, machine: JobStateMachine, stop: StopSignal) -> JobOutcome:
        # Claimed
        await self._records.begin_run(job.document_id, reset_progress=job.attempt <= 1)
        tracker = ProgressTracker(self._records, job.document_id)
        pdf_bytes = await self._fetcher.fetch(job.source_url)
        await tracker.advance(FETCHED_PROGRESS)
        self._check_stop(stop)

        # Extracting
        machine.transition(JobState.EXTRACTING)
        extracted = await self._extractor.extract(pdf_bytes)
        await tracker.advance(EXTRACTED_PROGRESS)
        self._check_stop(stop)

        # PageProcessing
        results: list[PageResult] = []
        if extracted.page_count > 0:
            machine.transition(JobState.PAGE_PROCESSING)
            tracker.set_total(extracted.page_count)
            results = await self._process_pages(job, pdf_bytes, extracted, tracker, stop)
            self._check_stop(stop)
        else:
            logger.info("Zero-page document | job=%s doc=%s", job.job_id, job.document_id)

        # Finalizing
        machine.transition(JobState.FINALIZING)
        artifact = DocumentArtifact.build(job.document_id, extracted.page_count, results, self._clock())
        result_url = await self._write_artifact(artifact)
        await self._records.mark_complete(job.document_id, extracted.page_count, result_url)
        try:
            await self._queue_call("ack", lambda: self._queue.ack(job.job_id, worker_id=self._worker_id))
        except QueueUnavailable as exc:
            # Record is already complete; an unacked lease expires and the re-run overwrites the same keys
            logger.error("Ack failed, job will be re-run | job=%s doc=%s error=%s", job.job_id, job.document_id, exc)
        machine.transition(JobState.DONE)

        return self._outcome(
            job,
            machine,
            page_count=artifact.page_count,
            succeeded_pages=artifact.succeeded_pages,
            failed_pages=artifact.failed_pages,
            result_url=result_url,
        )

    # ------------------------------------------------------------------
    # Page fan-out
    # ------------------------------------------------------------------

    async def _process_pages(
        self,
        job:       Job,
        pdf_bytes: bytes,
        extracted: ExtractedDocument,
        tracker:   ProgressTracker,
        stop:      StopSignal,
    ) -> list[PageResult]:
        limiter = ConcurrencyLimiter(self._page_concurrency)

        def page_task(page: PageText) -> Callable[[], Awaitable[Optional[PageResult]]]:
            return lambda: self._process_page(job, pdf_bytes, page, tracker, stop)

        gathered = await asyncio.gather(
            *(limiter.run(page_task(page)) for page in extracted.pages),
            return_exceptions=True,
        )

        # In-flight siblings have finished by now; surface the first job-level error
        for item in gathered:
            if isinstance(item, BaseException):
                raise item

        results = [r for r in gathered if r is not None]
        logger.info(
            "Pages processed | job=%s doc=%s pages=%d done=%d peak_in_flight=%d",
            job.job_id, job.document_id, extracted.page_count, len(results), limiter.peak,
        )
        return sorted(results, key=lambda r: r.page_number)

    async def _process_page(
        self,
        job:       Job,
        pdf_bytes: bytes,
        page:      PageText,
        tracker:   ProgressTracker,
        stop:      StopSignal,
    ) -> Optional[PageResult]:
        if stop.is_set:
            return None

        try:
            image = await self._render_page(pdf_bytes, page)
            url = await self._upload_page(page_image_key(job.document_id, page.page_number), image)
            result = PageResult.succeeded(page.page_number, page.text, url)
        except (PageRenderFailed, PageUploadFailed) as exc:
            logger.warning(
                "Page failed | job=%s doc=%s page=%d error=%s",
                job.job_id, job.document_id, page.page_number, exc.describe(),
            )
            result = PageResult.failed(page.page_number, page.text, exc.describe())

        await tracker.page_done()
        return result

    async def _render_page(self, pdf_bytes: bytes, page: PageText) -> bytes:
        try:
            return await self._renderer.render(pdf_bytes, page.page_number - 1)
        except PipelineError:
            raise
        except Exception as exc:
            raise PageRenderFailed(page.page_number, f"{type(exc).__name__}: {exc}") from exc

    async def _upload_page(self, key: str, image: bytes) -> str:
        try:
            return await self._uploader.upload(key, image)
        except PipelineError:
            raise
        except Exception as exc:
            raise PageUploadFailed(key, attempts=1, message=f"{type(exc).__name__}: {exc}") from exc

    # ------------------------------------------------------------------
    # Finalizing helpers
    # ------------------------------------------------------------------

    async def _write_artifact(self, artifact: DocumentArtifact) -> str:
        key = document_result_key(artifact.document_id)
        try:
            return await self._blob_store.put(key, artifact.to_json_bytes(), content_type="application/json")
        except PipelineError:
            raise
        except Exception as exc:
            raise StorageWriteFailed(f"Aggregate write to {key} failed: {type(exc).__name__}: {exc}") from exc

    @staticmethod
    def _check_stop(stop: StopSignal) -> None:
        if stop.reason is StopReason.LEASE_LOST:
            raise LeaseLost(stop.detail)
        if stop.reason is StopReason.CANCEL_REQUESTED:
            raise JobCancelled(CANCELLED_MESSAGE)

    async def _queue_call(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        """Retry transient queue-store errors with the queue retry policy."""
        attempt = 0
        while True:
            try:
                return await call()
            except QueueUnavailable as exc:
                attempt += 1
                if not self._queue_retry.should_retry(attempt):
                    raise
                delay = self._queue_retry.delay(attempt - 1)
                logger.warning("Queue call retry | op=%s attempt=%d delay=%.1fs error=%s", operation, attempt, delay, exc)
                await self._sleep(delay)

    # ------------------------------------------------------------------
    # Terminal paths
    # ------------------------------------------------------------------

    async def _record_error(self, job: Job, message: str) -> None:
        try:
            await self._records.mark_failed(job.document_id, message)
        except StorageWriteFailed as exc:
            logger.error("Could not record job error | job=%s doc=%s error=%s", job.job_id, job.document_id, exc)

    async def _fail(self, job: Job, machine: JobStateMachine, reason: str, *, retryable: bool) -> JobOutcome:
        machine.transition(JobState.FAILED)
        await self._record_error(job, reason)

        try:
            result = await self._queue_call(
                "fail",
                lambda: self._queue.fail(job.job_id, reason, retryable=retryable, worker_id=self._worker_id),
            )
        except LeaseLost as exc:
            logger.warning("Lease lost while failing job | job=%s error=%s", job.job_id, exc)
            return self._outcome(job, machine, error=reason)
        except QueueUnavailable as exc:
            logger.error("Could not fail job, lease will expire | job=%s error=%s", job.job_id, exc)
            return self._outcome(job, machine, error=reason)

        if result.dead_lettered:
            terminal = (
                f"{reason} (gave up after attempt {job.attempt}/{job.max_attempts})"
                if retryable else f"{reason} (not retryable)"
            )
            await self._record_error(job, terminal)
            return self._outcome(job, machine, error=terminal, dead_lettered=True)

        return self._outcome(job, machine, error=reason, retry_delay=result.delay_seconds)

    async def _cancel(self, job: Job, machine: JobStateMachine) -> JobOutcome:
        machine.transition(JobState.CANCELLED)
        logger.info("Job stopping on cancel request | job=%s doc=%s", job.job_id, job.document_id)
        await self._record_error(job, CANCELLED_MESSAGE)
        try:
            await self._queue_call(
                "mark_cancelled",
                lambda: self._queue.mark_cancelled(job.job_id, CANCELLED_MESSAGE, worker_id=self._worker_id),
            )
        except (LeaseLost, QueueUnavailable) as exc:
            logger.warning("Could not mark job cancelled | job=%s error=%s", job.job_id, exc)
        return self._outcome(job, machine, error=CANCELLED_MESSAGE)

    @staticmethod
    def _outcome(job: Job, machine: JobStateMachine, **fields) -> JobOutcome:
        return JobOutcome(
            job_id=job.job_id,
            document_id=job.document_id,
            state=machine.state,
            attempt=job.attempt,
            **fields,
        )
