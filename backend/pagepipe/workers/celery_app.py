"""
Celery Application Factory

Celery is the dispatch layer only: a task message means "claim and run
the next job", never "run job X". The durable state (leases, attempts,
backoff, dead-letter) lives in the processing_jobs table, so a lost or
duplicated message costs at most one idle claim.

Broker: Redis (redis://) by default; RabbitMQ (amqp://) works unchanged.
Result backend: Redis, short TTL; job state is read from the database.

Queue topology:
  pagepipe.jobs    process_next_job — one claim + run per message
  pagepipe.sweep   sweep_queue (beat) — reap expired leases, re-dispatch
  system.health    health_check
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import after_setup_logger, task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from pagepipe.core.config import Settings, get_settings
from pagepipe.core.logging import configure_logging

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

JOBS_EXCHANGE = Exchange("pagepipe", type="direct", durable=True)

TASK_QUEUES = (
    Queue(
        "pagepipe.jobs",
        exchange=JOBS_EXCHANGE,
        routing_key="pagepipe.jobs",
        durable=True,
    ),
    Queue(
        "pagepipe.sweep",
        exchange=JOBS_EXCHANGE,
        routing_key="pagepipe.sweep",
        durable=True,
    ),
    Queue(
        "system.health",
        Exchange("system", type="direct"),
        routing_key="system.health",
        durable=True,
    ),
)

TASK_ROUTES = {
    "pagepipe.workers.tasks.process_next_job": {"queue": "pagepipe.jobs"},
    "pagepipe.workers.tasks.sweep_queue":      {"queue": "pagepipe.sweep"},
    "pagepipe.workers.tasks.health_check":     {"queue": "system.health"},
}

# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app(settings: Settings | None = None) -> Celery:
    settings = settings or get_settings()
    app = Celery("pagepipe")

    app.conf.update(
        # --- Broker / Backend ---
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        # --- Serialization (reject non-JSON messages) ---
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        # --- Queues ---
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue="pagepipe.jobs",
        task_default_exchange="pagepipe",
        task_default_routing_key="pagepipe.jobs",

        # --- Reliability ---
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,

        # --- Timeouts ---
        # Leases and heartbeats bound a job's run; these only stop runaway processes
        task_soft_time_limit=1800,
        task_time_limit=1860,

        # --- Result TTL ---
        result_expires=3600,

        # --- Timezone ---
        timezone="UTC",
        enable_utc=True,

        # --- Beat schedule (reaper + re-dispatch) ---
        beat_schedule={
            "sweep-queue": {
                "task":     "pagepipe.workers.tasks.sweep_queue",
                "schedule": settings.sweep_interval_seconds,
                "options":  {"queue": "pagepipe.sweep"},
            },
        },

        # --- Worker ---
        worker_concurrency=settings.worker_job_concurrency,
        worker_max_tasks_per_child=200,
        worker_hijack_root_logger=False,
    )

    app.autodiscover_tasks(["pagepipe.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals — logging
# ---------------------------------------------------------------------------

@after_setup_logger.connect
def on_setup_logger(**_):
    settings = get_settings()
    configure_logging(settings.log_level, settings.debug)


@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info("Task start | task_id=%s task=%s doc=%s", task_id, task.name, kwargs.get("document_id", "-"))


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info("Task end | task_id=%s task=%s state=%s", task_id, task.name, state)


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s doc=%s error=%s",
        task_id, kwargs.get("document_id", "-"), exception,
        exc_info=True,
    )
