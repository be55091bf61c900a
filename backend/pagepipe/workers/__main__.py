"""
Standalone worker: `python -m pagepipe.workers` (or `pagepipe-worker`).

Runs WorkerPool.run_forever() without a broker. SIGINT / SIGTERM stop
claiming and drain in-flight jobs for up to drain_timeout_seconds.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal

from pagepipe.core.config import Settings, get_settings
from pagepipe.core.logging import configure_logging
from pagepipe.workers.runtime import PipelineRuntime

logger = logging.getLogger("pagepipe.workers")


async def serve(settings: Settings) -> None:
    runtime = PipelineRuntime.from_settings(settings)
    await runtime.start(create_schema=not settings.is_production)

    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, shutdown.set)

    runner = asyncio.create_task(runtime.pool.run_forever())
    waiter = asyncio.create_task(shutdown.wait())
    try:
        await asyncio.wait({runner, waiter}, return_when=asyncio.FIRST_COMPLETED)
        logger.info("Shutdown requested | worker=%s", runtime.orchestrator.worker_id)
    finally:
        waiter.cancel()
        await runtime.close(drain=True)
        await asyncio.gather(runner, return_exceptions=True)


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level, settings.debug)
    asyncio.run(serve(settings))


if __name__ == "__main__":
    main()
