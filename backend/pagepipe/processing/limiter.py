"""
Concurrency Limiter — caps in-flight page tasks within one job.

Thin wrapper over asyncio.Semaphore that also tracks how many tasks hold
a slot (and the peak), so the width bound is observable in logs and tests.
Tasks beyond the width wait in FIFO order until a slot frees.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

T = TypeVar("T")


class ConcurrencyLimiter:

    def __init__(self, width: int = 2) -> None:
        if width < 1:
            raise ValueError("Concurrency width must be >= 1")
        self._width = width
        self._semaphore = asyncio.Semaphore(width)
        self._in_flight = 0
        self._peak = 0

    @property
    def width(self) -> int:
        return self._width

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def peak(self) -> int:
        return self._peak

    async def run(self, fn: Callable[[], Awaitable[T]]) -> T:
        async with self._semaphore:
            self._in_flight += 1
            self._peak = max(self._peak, self._in_flight)
            try:
                return await fn()
            finally:
                self._in_flight -= 1
