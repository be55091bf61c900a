"""
Unit Tests — Celery dispatch layer
══════════════════════════════════
Tests for pagepipe/workers/tasks.py. Tasks are called directly (no broker);
apply_async is patched with unittest.mock so published messages can be
inspected.

Coverage:
  ✅ scheduled job retry → new message with countdown=retry_delay
  ✅ finished and dead-lettered runs publish nothing
  ✅ idle queue → {"status": "idle"}
  ✅ QueueUnavailable → Celery task retry
  ✅ sweep reaps expired final-attempt leases, then publishes one message per claimable job
"""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from celery.exceptions import Retry

from pagepipe.core.config import Settings
from pagepipe.core.errors import QueueUnavailable
from pagepipe.models.documents import JOB_DEAD, JOB_PENDING
from pagepipe.workers import tasks
from pagepipe.workers.orchestrator import JobOutcome
from pagepipe.workers.runtime import PipelineRuntime
from pagepipe.workers.state import JobState
from pagepipe.workers.tasks import _sweep_queue_async, process_next_job, sweep_queue

SOURCE = "https://files.example.com/doc.pdf"


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def fake_runtime():
    """Stands in for the per-process runtime; tasks run on the module's own loop."""
    runtime = MagicMock()
    runtime.pool.run_once = AsyncMock(return_value=None)
    runtime.pool.reap = AsyncMock(return_value=[])
    runtime.queue.count_claimable = AsyncMock(return_value=0)
    with patch("pagepipe.workers.tasks.get_runtime", return_value=runtime):
        yield runtime
    tasks.shutdown_worker_process()


@pytest.fixture
async def sqlite_runtime(db_engine, blob_store):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(404)))
    runtime = PipelineRuntime.from_settings(
        Settings(app_env="development", database_url="sqlite+aiosqlite://"),
        engine=db_engine,
        blob_store=blob_store,
        http_client=http_client,
        worker_id="sweep-test-worker",
    )
    yield runtime
    await http_client.aclose()


def _outcome(state: JobState, retry_delay=None, dead_lettered: bool = False) -> JobOutcome:
    return JobOutcome(
        job_id="job-1",
        document_id="doc-1",
        state=state,
        attempt=1,
        retry_delay=retry_delay,
        dead_lettered=dead_lettered,
    )


# ─────────────────────────────────────────────────────────────────────────────
# process_next_job
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestProcessNextJob:

    def test_scheduled_retry_is_republished_with_countdown(self, fake_runtime):
        fake_runtime.pool.run_once.return_value = _outcome(JobState.FAILED, retry_delay=5.0)

        with patch.object(process_next_job, "apply_async") as apply_async:
            result = process_next_job(document_id="doc-1")

        apply_async.assert_called_once_with(kwargs={"document_id": "doc-1"}, countdown=5.0)
        assert result["state"] == "failed"
        assert result["retry_delay"] == 5.0

    @pytest.mark.parametrize(
        "outcome",
        [
            _outcome(JobState.DONE),
            _outcome(JobState.FAILED, dead_lettered=True),
            _outcome(JobState.ABANDONED),
        ],
    )
    def test_runs_without_retry_publish_nothing(self, fake_runtime, outcome):
        fake_runtime.pool.run_once.return_value = outcome

        with patch.object(process_next_job, "apply_async") as apply_async:
            result = process_next_job()

        apply_async.assert_not_called()
        assert result == outcome.as_dict()

    def test_idle_queue_reports_idle(self, fake_runtime):
        with patch.object(process_next_job, "apply_async") as apply_async:
            assert process_next_job(document_id="doc-1") == {"status": "idle"}
        apply_async.assert_not_called()

    def test_queue_outage_retries_the_task(self, fake_runtime):
        error = QueueUnavailable("claim failed: db down")
        fake_runtime.pool.run_once.side_effect = error

        with patch.object(process_next_job, "retry", side_effect=Retry("retry scheduled")) as retry:
            with pytest.raises(Retry):
                process_next_job()

        retry.assert_called_once_with(exc=error)


# ─────────────────────────────────────────────────────────────────────────────
# sweep_queue
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestSweepQueue:

    def test_sweep_task_uses_process_runtime(self, fake_runtime):
        fake_runtime.queue.count_claimable.return_value = 3

        with patch.object(process_next_job, "apply_async") as apply_async:
            result = sweep_queue()

        assert result == {"reaped": 0, "dispatched": 3}
        assert apply_async.call_count == 3
        fake_runtime.pool.reap.assert_awaited_once()

    async def test_sweep_reaps_then_dispatches_per_claimable_job(self, sqlite_runtime, queue, records, clock):
        # Rows written through the fake clock are long past for the runtime's wall clock
        clock.now = datetime(2020, 1, 1, tzinfo=timezone.utc)
        await records.ensure("doc-stale", SOURCE)
        stale = await queue.enqueue("doc-stale", SOURCE, max_attempts=1)
        await queue.claim("crashed-worker")
        waiting = [await queue.enqueue(f"doc-{i}", SOURCE) for i in range(2)]

        with patch.object(process_next_job, "apply_async") as apply_async:
            result = await _sweep_queue_async(sqlite_runtime)

        assert result == {"reaped": 1, "dispatched": 2}
        assert apply_async.call_count == 2
        assert (await queue.get(stale)).status == JOB_DEAD
        assert "Lease expired on final attempt" in (await records.get_progress("doc-stale")).error
        for job_id in waiting:
            assert (await queue.get(job_id)).status == JOB_PENDING

    async def test_empty_queue_sweep_publishes_nothing(self, sqlite_runtime):
        with patch.object(process_next_job, "apply_async") as apply_async:
            result = await _sweep_queue_async(sqlite_runtime)

        assert result == {"reaped": 0, "dispatched": 0}
        apply_async.assert_not_called()
