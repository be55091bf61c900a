"""
Pipeline API Router

  POST /api/v1/jobs                              enqueue {document_id, source_url} → 202
  GET  /api/v1/documents/{document_id}/progress  read-only progress projection
  GET  /api/v1/jobs/dead                         dead-letter inspection
  GET  /api/v1/jobs/{job_id}                     job status view
  POST /api/v1/jobs/{job_id}/cancel              cooperative cancellation

Error bodies are ErrorResponse {error_code, message}; pipeline errors
(QueueUnavailable, JobNotFound, …) are mapped in pagepipe.main.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from pagepipe.core.errors import JobNotFound
from pagepipe.models.documents import JOB_CANCELLED
from pagepipe.queue.job_queue import Job
from pagepipe.schemas.documents import (
    EnqueueRequest,
    EnqueueResponse,
    ErrorResponse,
    JobStatusResponse,
    ProgressResponse,
)
from pagepipe.services.ingestion import IngestionService
from pagepipe.workers.runtime import PipelineRuntime

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Page Pipeline"])


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_runtime(request: Request) -> PipelineRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Pipeline runtime not started",
        )
    return runtime


def get_ingestion_service(
    request: Request,
    runtime: PipelineRuntime = Depends(get_runtime),
) -> IngestionService:
    return IngestionService(
        queue=runtime.queue,
        records=runtime.records,
        publisher=getattr(request.app.state, "publisher", None),
    )


def _job_view(job: Job) -> JobStatusResponse:
    return JobStatusResponse(
        job_id=job.job_id,
        document_id=job.document_id,
        status=job.status,
        attempt=job.attempt,
        max_attempts=job.max_attempts,
        cancel_requested=job.cancel_requested,
        last_error=job.last_error,
        available_at=job.available_at,
        lease_expiry=job.lease_expiry,
        finished_at=job.finished_at,
    )


# ---------------------------------------------------------------------------
# POST /jobs
# ---------------------------------------------------------------------------

@router.post(
    "/jobs",
    response_model=EnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Enqueue a PDF for page processing",
    responses={
        202: {"model": EnqueueResponse, "description": "Job persisted; processing is asynchronous"},
        422: {"model": ErrorResponse, "description": "Invalid request body"},
        503: {"model": ErrorResponse, "description": "Queue store unavailable"},
    },
)
async def enqueue_job(
    body:    EnqueueRequest,
    service: IngestionService = Depends(get_ingestion_service),
) -> JSONResponse:
    result = await service.enqueue(body.document_id, body.source_url)
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=result.model_dump(mode="json"),
        headers={
            "X-Document-ID": result.document_id,
            "Location":      f"/api/v1/documents/{result.document_id}/progress",
        },
    )


# ---------------------------------------------------------------------------
# GET /documents/{document_id}/progress
# ---------------------------------------------------------------------------

@router.get(
    "/documents/{document_id}/progress",
    response_model=ProgressResponse,
    summary="Poll processing progress",
    responses={404: {"model": ErrorResponse}},
)
async def get_progress(
    document_id: str,
    runtime:     PipelineRuntime = Depends(get_runtime),
) -> ProgressResponse:
    view = await runtime.records.get_progress(document_id)
    if view is None:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content=ErrorResponse(
                error_code="DOCUMENT_NOT_FOUND",
                message=f"Document {document_id} not found.",
            ).model_dump(mode="json"),
        )
    return ProgressResponse(
        document_id=view.document_id,
        progress=view.progress,
        complete=view.complete,
        error=view.error,
        updated_at=view.updated_at,
    )


# ---------------------------------------------------------------------------
# Job inspection / control
# ---------------------------------------------------------------------------

@router.get(
    "/jobs/dead",
    response_model=list[JobStatusResponse],
    summary="List dead-lettered jobs, newest first",
)
async def list_dead_jobs(
    limit:   int = Query(50, ge=1, le=500),
    runtime: PipelineRuntime = Depends(get_runtime),
) -> list[JobStatusResponse]:
    return [_job_view(job) for job in await runtime.queue.list_dead(limit)]


@router.get(
    "/jobs/{job_id}",
    response_model=JobStatusResponse,
    summary="Job status",
    responses={404: {"model": ErrorResponse}},
)
async def get_job(
    job_id:  str,
    runtime: PipelineRuntime = Depends(get_runtime),
) -> JobStatusResponse:
    job = await runtime.queue.get(job_id)
    if job is None:
        raise JobNotFound(f"Job not found: {job_id}")
    return _job_view(job)


@router.post(
    "/jobs/{job_id}/cancel",
    response_model=JobStatusResponse,
    summary="Request cooperative cancellation",
    description=(
        "A pending job is cancelled immediately. A running job stops scheduling "
        "new pages at its next heartbeat, lets in-flight pages finish and ends "
        "with error 'Processing cancelled'. Finished jobs are returned unchanged."
    ),
    responses={404: {"model": ErrorResponse}},
)
async def cancel_job(
    job_id:  str,
    runtime: PipelineRuntime = Depends(get_runtime),
) -> JobStatusResponse:
    job = await runtime.queue.request_cancel(job_id)
    if job.status == JOB_CANCELLED:
        await runtime.records.mark_failed(job.document_id, "Processing cancelled")
    return _job_view(job)
