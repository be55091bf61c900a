"""
Named retry/backoff policy.

One policy type is used at both retry levels:

  page upload  — ArtifactUploader retries a failed put up to max_retries
                 times, sleeping delay(0), delay(1), … between tries.
  whole job    — JobQueue.fail() re-schedules the job delay(attempt - 1)
                 seconds in the future while attempt < max_attempts.

delay(n) = min(base_delay × multiplier^n plus optional proportional jitter,
max_delay). With base 5s: 5s, 10s, 20s, 40s … A job with max_attempts=3
only ever waits delay(0) and delay(1), i.e. 5s then 10s.
"""

from __future__ import annotations

import random
from dataclasses import dataclass


@dataclass(frozen=True)
class BackoffPolicy:
    base_delay:   float = 1.0
    multiplier:   float = 2.0
    max_delay:    float = 60.0
    max_attempts: int   = 3
    jitter:       float = 0.0    # 0.1 = up to +10% random extra delay

    def __post_init__(self) -> None:
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("Backoff delays must be non-negative")
        if self.multiplier < 1:
            raise ValueError("Backoff multiplier must be >= 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def delay(self, retry_index: int) -> float:
        """Seconds to wait before retry number `retry_index` (0-based)."""
        raw = self.base_delay * (self.multiplier ** max(retry_index, 0))
        if self.jitter:
            raw += raw * random.uniform(0, self.jitter)
        return min(raw, self.max_delay)

    def should_retry(self, attempts_made: int) -> bool:
        return attempts_made < self.max_attempts
