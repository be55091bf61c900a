"""
FastAPI Application — Entry Point

Enqueue + progress API for the PDF page pipeline.

  - Routes are versioned under /api/v1/
  - One PipelineRuntime per process, held on app.state (built in the
    lifespan unless one is injected, e.g. by tests)
  - Structured ErrorResponse bodies on all 4xx/5xx

Middleware stack (innermost → outermost):
  1. CORS
  2. Request ID injection + request logging
  3. Gzip for responses > 1 KB
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from pagepipe.api.v1.documents import router as pipeline_router
from pagepipe.core.config import Settings, get_settings
from pagepipe.core.errors import JobNotFound, PipelineError, QueueUnavailable, StorageWriteFailed
from pagepipe.core.logging import configure_logging
from pagepipe.db.session import check_db_health
from pagepipe.schemas.documents import ErrorResponse
from pagepipe.services.ingestion import Publisher, TaskPublisher
from pagepipe.workers.runtime import PipelineRuntime

logger = logging.getLogger(__name__)

# Pipeline error → (HTTP status, error_code)
ERROR_STATUS: dict[type[PipelineError], tuple[int, str]] = {
    QueueUnavailable:   (status.HTTP_503_SERVICE_UNAVAILABLE, "QUEUE_UNAVAILABLE"),
    StorageWriteFailed: (status.HTTP_503_SERVICE_UNAVAILABLE, "STORAGE_UNAVAILABLE"),
    JobNotFound:        (status.HTTP_404_NOT_FOUND, "JOB_NOT_FOUND"),
}


def _error_body(error_code: str, message: str) -> dict:
    return ErrorResponse(error_code=error_code, message=message).model_dump(mode="json")


# ---------------------------------------------------------------------------
# Application lifespan — startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    owns_runtime = app.state.runtime is None

    if owns_runtime:
        logger.info("Starting pagepipe API | env=%s bucket=%s", settings.app_env, settings.s3_bucket)
        runtime = PipelineRuntime.from_settings(settings)
        await runtime.start(create_schema=not settings.is_production)
        app.state.runtime = runtime

    yield

    if owns_runtime:
        logger.info("Shutting down pagepipe API")
        await app.state.runtime.close(drain=False)
        app.state.runtime = None


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(
    runtime:   Optional[PipelineRuntime] = None,
    publisher: Optional[Publisher] = None,
    settings:  Optional[Settings] = None,
) -> FastAPI:
    settings = settings or (runtime.settings if runtime else get_settings())
    configure_logging(settings.log_level, settings.debug)

    app = FastAPI(
        title="PDF Page Pipeline",
        description="Enqueue PDFs for per-page text extraction and rendering; poll progress.",
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url="/api/redoc" if not settings.is_production else None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.runtime = runtime
    app.state.publisher = publisher if publisher is not None else TaskPublisher()

    # ----------------------------------------------------------------
    # Middleware (applied in reverse order — last added = outermost)
    # ----------------------------------------------------------------

    app.add_middleware(GZipMiddleware, minimum_size=1024)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.app_env == "development" else [],
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "X-Document-ID", "Location"],
    )

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start = time.perf_counter()

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "HTTP %s %s %d %.1fms | request_id=%s",
            request.method, request.url.path, response.status_code, duration_ms, request_id,
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers — uniform structured error responses
    # ----------------------------------------------------------------

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        message = "; ".join(
            f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=_error_body("VALIDATION_ERROR", message or "Request validation failed."),
        )

    @app.exception_handler(PipelineError)
    async def pipeline_exception_handler(request: Request, exc: PipelineError):
        code, error_code = ERROR_STATUS.get(
            type(exc), (status.HTTP_500_INTERNAL_SERVER_ERROR, exc.reason.upper()),
        )
        logger.warning("Pipeline error | path=%s error=%s", request.url.path, exc.describe())
        return JSONResponse(status_code=code, content=_error_body(error_code, exc.message))

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all for unhandled exceptions — never expose stack traces."""
        logger.exception("Unhandled exception | path=%s", request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=_error_body("INTERNAL_ERROR", "An unexpected error occurred."),
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(pipeline_router, prefix="/api/v1")

    # ----------------------------------------------------------------
    # Health (no external checks beyond the database)
    # ----------------------------------------------------------------

    @app.get("/health", tags=["Operations"], summary="Liveness + database probe")
    async def health(request: Request) -> JSONResponse:
        current = request.app.state.runtime
        if current is None:
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "starting", "database": {"status": "unknown"}},
            )
        db_status = await check_db_health(current.engine)
        ok = db_status["status"] == "ok"
        return JSONResponse(
            status_code=status.HTTP_200_OK if ok else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "ok" if ok else "degraded", "database": db_status},
        )

    return app


def get_app() -> FastAPI:
    """uvicorn factory: `uvicorn pagepipe.main:get_app --factory`."""
    return create_app()
