"""
Error taxonomy for the page pipeline.

Three levels:

  infra  — QueueUnavailable: the backing store is down. Callers retry with
           the queue BackoffPolicy; never swallowed.
  job    — SourceUnavailable, MalformedDocument, StorageWriteFailed,
           JobCancelled: propagate to the orchestrator, which writes the
           Document Record error and calls JobQueue.fail().
  page   — PageRenderFailed, PageUploadFailed: caught at the page-task
           boundary and recorded as status=failed. They never reach the
           orchestrator as exceptions.

`retryable` drives the queue decision: a non-retryable job error is
dead-lettered on the first failure regardless of remaining attempts.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class — every pipeline error carries a stable reason code."""

    reason: str = "PipelineError"
    retryable: bool = True

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.reason)
        self.message = message or self.reason

    def describe(self) -> str:
        """`<reason>: <message>` — the string stored on records and jobs."""
        if self.message == self.reason:
            return self.reason
        return f"{self.reason}: {self.message}"


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------

class QueueUnavailable(PipelineError):
    reason = "QueueUnavailable"


class LeaseLost(PipelineError):
    """The job lease expired or was taken over by another worker."""

    reason = "LeaseLost"
    retryable = False


class JobNotFound(PipelineError):
    reason = "JobNotFound"
    retryable = False


# ---------------------------------------------------------------------------
# Job level
# ---------------------------------------------------------------------------

class SourceUnavailable(PipelineError):
    reason = "SourceUnavailable"


class MalformedDocument(PipelineError):
    reason = "MalformedDocument"
    retryable = False


class StorageWriteFailed(PipelineError):
    reason = "StorageWriteFailed"


class JobCancelled(PipelineError):
    reason = "JobCancelled"
    retryable = False


# ---------------------------------------------------------------------------
# Page level
# ---------------------------------------------------------------------------

class PageRenderFailed(PipelineError):
    reason = "PageRenderFailed"
    retryable = False

    def __init__(self, page_number: int, message: str = "") -> None:
        super().__init__(message)
        self.page_number = page_number


class PageUploadFailed(PipelineError):
    reason = "PageUploadFailed"

    def __init__(self, key: str, attempts: int, message: str = "") -> None:
        super().__init__(message)
        self.key = key
        self.attempts = attempts
