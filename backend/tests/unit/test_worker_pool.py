"""
Unit Tests — Worker Pool (claim loop, heartbeat monitor, reaping, drain)
"""

from __future__ import annotations

import asyncio

import httpx
import pytest

from pagepipe.core.backoff import BackoffPolicy
from pagepipe.core.errors import LeaseLost
from pagepipe.models.documents import JOB_CANCELLED, JOB_DONE, JOB_LEASED
from pagepipe.processing import ArtifactUploader, PageExtractor, PageRenderer, SourceFetcher
from pagepipe.workers.orchestrator import JobOrchestrator
from pagepipe.workers.pool import WorkerPool
from pagepipe.workers.state import JobState

SOURCE = "https://files.example.com/doc.pdf"


class SlowRenderer(PageRenderer):
    def __init__(self, delay: float) -> None:
        super().__init__(dpi=36)
        self._delay = delay

    async def render(self, pdf_bytes: bytes, page_index: int) -> bytes:
        await asyncio.sleep(self._delay)
        return await super().render(pdf_bytes, page_index)


@pytest.fixture
def make_pool(queue, records, blob_store, sleep_recorder, clock):
    def _make(pdf_bytes: bytes, render_delay: float = 0.0, slots: int = 1, heartbeat_interval: float = 0.01) -> WorkerPool:
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, content=pdf_bytes)),
        )
        orchestrator = JobOrchestrator(
            queue,
            records,
            SourceFetcher(client),
            PageExtractor(),
            SlowRenderer(render_delay),
            ArtifactUploader(blob_store, BackoffPolicy(max_attempts=2), sleep=sleep_recorder),
            blob_store,
            page_concurrency=1,
            worker_id="pool-worker",
            sleep=sleep_recorder,
            clock=clock,
        )
        return WorkerPool(
            queue,
            orchestrator,
            records,
            slots=slots,
            poll_interval=0.01,
            heartbeat_interval=heartbeat_interval,
            reap_interval=0.05,
        )
    return _make


async def _wait_for_status(queue, job_id: str, status: str, timeout: float = 10.0) -> None:
    async def _poll():
        while (await queue.get(job_id)).status != status:
            await asyncio.sleep(0.01)
    await asyncio.wait_for(_poll(), timeout)


@pytest.mark.unit
class TestRunOnce:

    async def test_idle_queue_returns_none(self, make_pool, sample_pdf_bytes):
        assert await make_pool(sample_pdf_bytes).run_once() is None

    async def test_claims_and_completes_one_job(self, make_pool, queue, records, sample_pdf_bytes):
        await records.ensure("doc-1", SOURCE)
        job_id = await queue.enqueue("doc-1", SOURCE)
        pool = make_pool(sample_pdf_bytes)

        outcome = await pool.run_once()

        assert outcome.job_id == job_id
        assert outcome.state is JobState.DONE
        assert (await queue.get(job_id)).status == JOB_DONE
        assert pool.active_jobs == []

    async def test_cancel_request_reaches_running_job(self, make_pool, queue, records, make_pdf):
        await records.ensure("doc-1", SOURCE)
        job_id = await queue.enqueue("doc-1", SOURCE)
        pool = make_pool(make_pdf([f"p{i}" for i in range(8)]), render_delay=0.05)

        run = asyncio.create_task(pool.run_once())
        await _wait_for_status(queue, job_id, JOB_LEASED)
        await queue.request_cancel(job_id)
        outcome = await asyncio.wait_for(run, 10)

        assert outcome.state is JobState.CANCELLED
        assert (await queue.get(job_id)).status == JOB_CANCELLED
        assert (await records.get_progress("doc-1")).error == "Processing cancelled"

    async def test_lost_lease_abandons_job(self, make_pool, queue, records, make_pdf, monkeypatch):
        await records.ensure("doc-1", SOURCE)
        job_id = await queue.enqueue("doc-1", SOURCE)
        pool = make_pool(make_pdf(["a", "b", "c", "d"]), render_delay=0.05)

        async def lost(job_id, worker_id, lease_seconds=None):
            raise LeaseLost(f"Job {job_id} taken over")

        monkeypatch.setattr(queue, "heartbeat", lost)
        outcome = await asyncio.wait_for(pool.run_once(), 10)

        assert outcome.state is JobState.ABANDONED
        assert (await queue.get(job_id)).status == JOB_LEASED
        assert (await records.get_progress("doc-1")).error is None


@pytest.mark.unit
class TestReap:

    async def test_reaped_job_gets_terminal_record_error(self, make_pool, queue, records, clock, sample_pdf_bytes):
        await records.ensure("doc-1", SOURCE)
        job_id = await queue.enqueue("doc-1", SOURCE, max_attempts=1)
        await queue.claim("crashed-worker")
        clock.advance(120)

        reaped = await make_pool(sample_pdf_bytes).reap()

        assert [j.job_id for j in reaped] == [job_id]
        view = await records.get_progress("doc-1")
        assert "Lease expired on final attempt" in view.error
        assert view.complete is False


@pytest.mark.unit
class TestRunForever:

    async def test_processes_jobs_then_drains(self, make_pool, queue, records, sample_pdf_bytes):
        job_ids = []
        for i in range(3):
            await records.ensure(f"doc-{i}", SOURCE)
            job_ids.append(await queue.enqueue(f"doc-{i}", SOURCE))
        pool = make_pool(sample_pdf_bytes, slots=2)

        runner = asyncio.create_task(pool.run_forever())
        for job_id in job_ids:
            await _wait_for_status(queue, job_id, JOB_DONE)
        await pool.stop(drain=True, timeout=5)
        await asyncio.wait_for(runner, 5)

        for i in range(3):
            assert (await records.get_progress(f"doc-{i}")).complete is True
        assert not pool.running

    async def test_drain_timeout_cancels_in_flight_job(self, make_pool, queue, records, make_pdf):
        await records.ensure("doc-1", SOURCE)
        job_id = await queue.enqueue("doc-1", SOURCE)
        pool = make_pool(make_pdf([f"p{i}" for i in range(10)]), render_delay=0.2)

        runner = asyncio.create_task(pool.run_forever())
        await _wait_for_status(queue, job_id, JOB_LEASED)
        await pool.stop(drain=True, timeout=0.05)
        await asyncio.wait_for(runner, 5)

        # Lease left in place; it expires and the job is claimed again
        assert (await queue.get(job_id)).status == JOB_LEASED

    async def test_double_start_rejected(self, make_pool, sample_pdf_bytes):
        pool = make_pool(sample_pdf_bytes)
        runner = asyncio.create_task(pool.run_forever())
        await asyncio.sleep(0.02)
        try:
            with pytest.raises(RuntimeError):
                await pool.run_forever()
        finally:
            await pool.stop(drain=True, timeout=1)
            await asyncio.wait_for(runner, 5)

    def test_slots_must_be_positive(self, queue, records):
        with pytest.raises(ValueError):
            WorkerPool(queue, orchestrator=None, records=records, slots=0)
