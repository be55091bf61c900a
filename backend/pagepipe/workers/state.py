"""
Job state machine and progress tracking for one job run.

    Claimed → Extracting → PageProcessing → Finalizing → Done
        │          │              │              │
        └──────────┴──────┬───────┴──────────────┘
                          ▼
                 Failed / Cancelled / Abandoned

Extracting may skip straight to Finalizing (zero-page document).
Abandoned is the lease-lost exit: the worker stops without writing state.

Progress milestones:
    10   source bytes fetched
    15   extraction done
    15 + round(80 * k / N), capped at 95, after page k of N is accounted for
    100  written by the record store when the job finalizes
"""

from __future__ import annotations

import asyncio
import logging
import math
from enum import Enum
from typing import Optional, Protocol

logger = logging.getLogger(__name__)

FETCHED_PROGRESS   = 10
EXTRACTED_PROGRESS = 15
PAGES_SPAN         = 80
PAGES_CEILING      = 95


class JobState(str, Enum):
    CLAIMED         = "claimed"
    EXTRACTING      = "extracting"
    PAGE_PROCESSING = "page_processing"
    FINALIZING      = "finalizing"
    DONE            = "done"
    FAILED          = "failed"
    CANCELLED       = "cancelled"
    ABANDONED       = "abandoned"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({JobState.DONE, JobState.FAILED, JobState.CANCELLED, JobState.ABANDONED})

_EXITS = frozenset({JobState.FAILED, JobState.CANCELLED, JobState.ABANDONED})

ALLOWED_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.CLAIMED:         frozenset({JobState.EXTRACTING}) | _EXITS,
    JobState.EXTRACTING:      frozenset({JobState.PAGE_PROCESSING, JobState.FINALIZING}) | _EXITS,
    JobState.PAGE_PROCESSING: frozenset({JobState.FINALIZING}) | _EXITS,
    # No cancellation once the aggregate is being written
    JobState.FINALIZING:      frozenset({JobState.DONE, JobState.FAILED, JobState.ABANDONED}),
    JobState.DONE:            frozenset(),
    JobState.FAILED:          frozenset(),
    JobState.CANCELLED:       frozenset(),
    JobState.ABANDONED:       frozenset(),
}


class InvalidTransition(RuntimeError):
    pass


class JobStateMachine:
    """Tracks one run's state and rejects illegal moves."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        self._state = JobState.CLAIMED
        self._history: list[JobState] = [JobState.CLAIMED]

    @property
    def state(self) -> JobState:
        return self._state

    @property
    def history(self) -> list[JobState]:
        return list(self._history)

    def can_transition(self, target: JobState) -> bool:
        return target in ALLOWED_TRANSITIONS[self._state]

    def transition(self, target: JobState) -> None:
        if not self.can_transition(target):
            raise InvalidTransition(f"Job {self.job_id}: {self._state.value} → {target.value} not allowed")
        logger.debug("State | job=%s %s → %s", self.job_id, self._state.value, target.value)
        self._state = target
        self._history.append(target)


# ---------------------------------------------------------------------------
# Stop signal (cancellation / lease loss)
# ---------------------------------------------------------------------------

class StopReason(str, Enum):
    CANCEL_REQUESTED = "cancel_requested"
    LEASE_LOST       = "lease_lost"


class StopSignal:
    """
    Set by the heartbeat monitor, read by the orchestrator between page
    tasks. The first reason wins.
    """

    def __init__(self) -> None:
        self._reason: Optional[StopReason] = None
        self._detail: str = ""

    @property
    def is_set(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> Optional[StopReason]:
        return self._reason

    @property
    def detail(self) -> str:
        return self._detail

    def cancel(self) -> None:
        self._set(StopReason.CANCEL_REQUESTED, "Processing cancelled")

    def lease_lost(self, detail: str) -> None:
        self._set(StopReason.LEASE_LOST, detail)

    def _set(self, reason: StopReason, detail: str) -> None:
        if self._reason is None:
            self._reason = reason
            self._detail = detail


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------

class ProgressSink(Protocol):
    async def set_progress(self, document_id: str, progress: int) -> bool: ...


def page_progress(completed: int, total: int) -> int:
    """15 + round(80 * k / N), half rounded up, capped at 95."""
    if total <= 0:
        return EXTRACTED_PROGRESS
    value = EXTRACTED_PROGRESS + math.floor(PAGES_SPAN * completed / total + 0.5)
    return min(value, PAGES_CEILING)


class ProgressTracker:
    """
    Serializes progress writes for one job run.

    Page tasks finish out of order; the completed-page counter and the
    write happen under one lock, so values reach the record store in
    increasing order and never go down.
    """

    def __init__(self, sink: ProgressSink, document_id: str, total_pages: int = 0) -> None:
        self._sink = sink
        self._document_id = document_id
        self._total = total_pages
        self._completed = 0
        self._last = 0
        self._lock = asyncio.Lock()

    @property
    def completed(self) -> int:
        return self._completed

    @property
    def last_reported(self) -> int:
        return self._last

    def set_total(self, total_pages: int) -> None:
        self._total = total_pages

    async def advance(self, progress: int) -> None:
        async with self._lock:
            await self._write(progress)

    async def page_done(self) -> int:
        async with self._lock:
            self._completed += 1
            value = page_progress(self._completed, self._total)
            await self._write(value)
            return value

    async def _write(self, progress: int) -> None:
        if progress <= self._last:
            return
        await self._sink.set_progress(self._document_id, progress)
        self._last = progress
