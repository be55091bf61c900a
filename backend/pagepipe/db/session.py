"""
Database engine and session management.

Nothing is created at import time: the runtime builds one engine per
process from Settings and hands the session factory to the queue and the
record store. Tests build their own against SQLite (aiosqlite).

PostgreSQL (asyncpg) in production:
  - pool_pre_ping detects stale connections before use
  - pool_recycle caps connection age at one hour
"""

from __future__ import annotations

import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from pagepipe.core.config import Settings
from pagepipe.models.documents import Base

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Engine / session factory
# ---------------------------------------------------------------------------

def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    url = settings.database_url
    if url.startswith("sqlite"):
        # SQLite ignores pool sizing; a busy timeout lets concurrent claimers queue up
        return create_async_engine(
            url,
            echo=settings.db_echo_sql,
            connect_args={"timeout": 30},
        )
    return create_async_engine(
        url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,          # detect stale connections before use
        pool_recycle=3600,           # recycle connections every hour
        echo=settings.db_echo_sql,   # log SQL in dev; disable in prod
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False keeps ORM objects usable after commit
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_models(engine: AsyncEngine) -> None:
    """Create tables that do not exist yet (idempotent)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Schema ready | tables=%s", ",".join(sorted(Base.metadata.tables)))


# ---------------------------------------------------------------------------
# Health check helper
# ---------------------------------------------------------------------------

async def check_db_health(engine: AsyncEngine) -> dict:
    """Ping the database; used by /health and worker startup."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}
