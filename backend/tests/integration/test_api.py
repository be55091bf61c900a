"""
Integration Tests — Pipeline HTTP API
═════════════════════════════════════
These tests exercise the FULL FastAPI routing stack, including:
  - Dependency injection chain (runtime on app.state)
  - Pydantic request validation and structured ErrorResponse bodies
  - Response status codes and headers (X-Document-ID, Location)
  - Enqueue → worker run → progress poll, end to end

What is mocked vs real
──────────────────────
  ✅ Real: FastAPI routing, JobQueue + DocumentRecordStore on SQLite,
           JobOrchestrator / WorkerPool, PyMuPDF extraction and rendering
  🔲 Mock: S3 storage        (FakeBlobStore)
  🔲 Mock: source download   (httpx.MockTransport)
  🔲 Mock: Celery broker     (mock_publisher fixture)

How to run
──────────
  pytest -m integration tests/integration/test_api.py -v
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from pagepipe.core.config import Settings
from pagepipe.core.errors import QueueUnavailable
from pagepipe.main import create_app
from pagepipe.workers.runtime import PipelineRuntime

SOURCE = "https://files.example.com/report.pdf"


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def mock_publisher() -> MagicMock:
    publisher = MagicMock()
    publisher.publish_job_nudge = AsyncMock(return_value=True)
    return publisher


@pytest.fixture
async def runtime(db_engine, blob_store, sample_pdf_bytes):
    settings = Settings(
        app_env="development",
        database_url="sqlite+aiosqlite://",
        page_concurrency=2,
        render_dpi=36,
    )
    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(200, content=sample_pdf_bytes)),
    )
    rt = PipelineRuntime.from_settings(
        settings,
        engine=db_engine,
        blob_store=blob_store,
        http_client=http_client,
        worker_id="api-test-worker",
    )
    yield rt
    await http_client.aclose()


@pytest.fixture
async def client(runtime, mock_publisher):
    app = create_app(runtime=runtime, publisher=mock_publisher)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def _enqueue(client, document_id: str = "doc-1", source_url: str = SOURCE) -> httpx.Response:
    return await client.post(
        "/api/v1/jobs", json={"document_id": document_id, "source_url": source_url},
    )


# ─────────────────────────────────────────────────────────────────────────────
# POST /api/v1/jobs
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestEnqueue:

    async def test_returns_202_with_job_and_headers(self, client, mock_publisher):
        response = await _enqueue(client)

        assert response.status_code == 202
        body = response.json()
        assert body["document_id"] == "doc-1"
        assert body["status"] == "pending"
        assert body["job_id"]
        assert response.headers["X-Document-ID"] == "doc-1"
        assert response.headers["Location"] == "/api/v1/documents/doc-1/progress"
        assert "X-Request-ID" in response.headers
        mock_publisher.publish_job_nudge.assert_awaited_once_with("doc-1")

    async def test_duplicate_post_returns_active_job(self, client, runtime):
        first = (await _enqueue(client)).json()["job_id"]

        response = await _enqueue(client)

        assert response.status_code == 202
        assert response.json()["job_id"] == first
        assert await runtime.queue.count_claimable() == 1

    async def test_record_starts_at_zero(self, client):
        await _enqueue(client)

        response = await client.get("/api/v1/documents/doc-1/progress")

        assert response.status_code == 200
        assert response.json()["progress"] == 0
        assert response.json()["complete"] is False

    async def test_broker_outage_still_accepts_job(self, client, mock_publisher, runtime):
        mock_publisher.publish_job_nudge.return_value = False

        response = await _enqueue(client)

        assert response.status_code == 202
        assert await runtime.queue.count_claimable() == 1

    @pytest.mark.parametrize(
        "payload",
        [
            {"document_id": "doc-1"},
            {"document_id": "   ", "source_url": SOURCE},
            {"document_id": "doc-1", "source_url": "ftp://files.example.com/a.pdf"},
        ],
    )
    async def test_invalid_body_is_422(self, client, payload):
        response = await client.post("/api/v1/jobs", json=payload)

        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    async def test_queue_outage_is_503(self, client, runtime, monkeypatch):
        monkeypatch.setattr(runtime.queue, "enqueue", AsyncMock(side_effect=QueueUnavailable("enqueue failed: db down")))

        response = await _enqueue(client)

        assert response.status_code == 503
        assert response.json() == {"error_code": "QUEUE_UNAVAILABLE", "message": "enqueue failed: db down"}


# ─────────────────────────────────────────────────────────────────────────────
# Enqueue → process → poll
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestEndToEnd:

    async def test_processed_document_reports_complete(self, client, runtime, blob_store):
        job_id = (await _enqueue(client)).json()["job_id"]

        outcome = await runtime.pool.run_once()
        assert outcome.job_id == job_id

        progress = (await client.get("/api/v1/documents/doc-1/progress")).json()
        assert progress["progress"] == 100
        assert progress["complete"] is True
        assert progress["error"] is None

        job = (await client.get(f"/api/v1/jobs/{job_id}")).json()
        assert job["status"] == "done"
        assert job["attempt"] == 1
        assert "documents/doc-1/document.json" in blob_store.objects
        assert "documents/doc-1/page_3.png" in blob_store.objects


# ─────────────────────────────────────────────────────────────────────────────
# Progress / job inspection
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestInspection:

    async def test_unknown_document_is_404(self, client):
        response = await client.get("/api/v1/documents/missing/progress")

        assert response.status_code == 404
        assert response.json()["error_code"] == "DOCUMENT_NOT_FOUND"

    async def test_unknown_job_is_404(self, client):
        response = await client.get("/api/v1/jobs/no-such-job")

        assert response.status_code == 404
        assert response.json()["error_code"] == "JOB_NOT_FOUND"

    async def test_dead_letter_listing(self, client, runtime):
        job_id = (await _enqueue(client)).json()["job_id"]
        job = await runtime.queue.claim("someone-else")
        await runtime.queue.fail(
            job.job_id, "MalformedDocument: Cannot parse PDF", retryable=False, worker_id="someone-else",
        )

        response = await client.get("/api/v1/jobs/dead", params={"limit": 10})

        assert response.status_code == 200
        dead = response.json()
        assert [j["job_id"] for j in dead] == [job_id]
        assert dead[0]["last_error"].startswith("MalformedDocument")

    async def test_dead_letter_limit_is_bounded(self, client):
        response = await client.get("/api/v1/jobs/dead", params={"limit": 0})
        assert response.status_code == 422


# ─────────────────────────────────────────────────────────────────────────────
# Cancellation
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestCancel:

    async def test_cancel_pending_job(self, client, runtime):
        job_id = (await _enqueue(client)).json()["job_id"]

        response = await client.post(f"/api/v1/jobs/{job_id}/cancel")

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        progress = (await client.get("/api/v1/documents/doc-1/progress")).json()
        assert progress["error"] == "Processing cancelled"
        assert progress["complete"] is False
        assert await runtime.pool.run_once() is None

    async def test_cancel_leased_job_only_flags_it(self, client, runtime):
        job_id = (await _enqueue(client)).json()["job_id"]
        await runtime.queue.claim("someone-else")

        body = (await client.post(f"/api/v1/jobs/{job_id}/cancel")).json()

        assert body["status"] == "leased"
        assert body["cancel_requested"] is True

    async def test_cancel_unknown_job_is_404(self, client):
        response = await client.post("/api/v1/jobs/no-such-job/cancel")
        assert response.status_code == 404


# ─────────────────────────────────────────────────────────────────────────────
# Health
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestHealth:

    async def test_health_ok(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.json()["database"]["status"] == "ok"

    async def test_health_before_runtime_is_503(self, mock_publisher):
        app = create_app(runtime=None, publisher=mock_publisher, settings=Settings(app_env="development"))
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
            response = await ac.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "starting"
