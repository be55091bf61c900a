"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy (all function-scoped):
  clock            : FakeClock, injected wherever time matters
  session_factory  : SQLite (aiosqlite) file database under tmp_path, tables created
  queue / records  : JobQueue + DocumentRecordStore on that database
  blob_store       : in-memory FakeBlobStore ("put bytes, get URL")
  make_pdf         : builds real PDFs with PyMuPDF

Environment strategy:
  - No PostgreSQL, Redis or S3 needed; the queue runs on SQLite.
  - Celery uses the in-memory broker.
  - Source downloads go through httpx.MockTransport.

How to run:
  pytest                          # all tests
  pytest -m unit                  # unit tests only
  pytest -m integration           # API tests
"""

from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Optional

import pytest

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any pagepipe imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("DATABASE_URL",          "sqlite+aiosqlite:///./pagepipe-test.db")
os.environ.setdefault("AWS_REGION",            "us-east-1")
os.environ.setdefault("AWS_ACCESS_KEY_ID",     "test")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "test")
os.environ.setdefault("S3_BUCKET",             "test-bucket")
os.environ.setdefault("CELERY_BROKER_URL",     "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("APP_ENV",               "development")

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from pagepipe.core.backoff import BackoffPolicy  # noqa: E402
from pagepipe.db.session import create_session_factory, init_models  # noqa: E402
from pagepipe.queue.job_queue import JobQueue  # noqa: E402
from pagepipe.storage.records import DocumentRecordStore  # noqa: E402


# ─────────────────────────────────────────────────────────────────────────────
# Time
# ─────────────────────────────────────────────────────────────────────────────

class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class SleepRecorder:
    """Drop-in for asyncio.sleep that records delays and returns at once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


# ─────────────────────────────────────────────────────────────────────────────
# Database
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'pagepipe.db'}",
        connect_args={"timeout": 30},
    )
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(db_engine)


@pytest.fixture
def job_policy() -> BackoffPolicy:
    return BackoffPolicy(base_delay=5.0, max_delay=300.0, max_attempts=3)


@pytest.fixture
def queue(session_factory, job_policy, clock) -> JobQueue:
    return JobQueue(session_factory, job_policy, lease_seconds=60, clock=clock)


@pytest.fixture
def records(session_factory, clock) -> DocumentRecordStore:
    return DocumentRecordStore(session_factory, clock=clock)


# ─────────────────────────────────────────────────────────────────────────────
# Blob store
# ─────────────────────────────────────────────────────────────────────────────

class FakeBlobStore:
    """
    In-memory "put bytes, get URL" store.

    fail_puts[key] = n makes the next n puts of `key` raise ConnectionError.
    """

    BASE_URL = "https://blobs.test/"

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.put_calls: list[str] = []
        self.fail_puts: dict[str, int] = {}

    async def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        self.put_calls.append(key)
        remaining = self.fail_puts.get(key, 0)
        if remaining:
            self.fail_puts[key] = remaining - 1
            raise ConnectionError(f"simulated outage for {key}")
        self.objects[key] = bytes(data)
        return self.BASE_URL + key

    async def get(self, url: str) -> bytes:
        key = url[len(self.BASE_URL):] if url.startswith(self.BASE_URL) else url
        if key not in self.objects:
            raise FileNotFoundError(key)
        return self.objects[key]

    def owns(self, url: str) -> bool:
        return url.startswith(self.BASE_URL)


@pytest.fixture
def blob_store() -> FakeBlobStore:
    return FakeBlobStore()


# ─────────────────────────────────────────────────────────────────────────────
# Sample PDFs (generated with PyMuPDF)
# ─────────────────────────────────────────────────────────────────────────────

def build_pdf(page_texts: list[str]) -> bytes:
    import fitz

    doc = fitz.open()
    try:
        for text in page_texts:
            page = doc.new_page(width=300, height=200)
            if text:
                page.insert_text((36, 72), text, fontsize=12)
        return doc.tobytes()
    finally:
        doc.close()


@pytest.fixture
def make_pdf():
    return build_pdf


@pytest.fixture
def sample_pdf_bytes() -> bytes:
    """Three pages: 'Page one', 'Page two', 'Page three'."""
    return build_pdf(["Page one", "Page two", "Page three"])


@pytest.fixture
def not_a_pdf_bytes() -> bytes:
    return b"this is plainly not a PDF document\n" * 4
