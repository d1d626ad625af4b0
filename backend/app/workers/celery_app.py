"""
Celery Application Factory — periodic queue maintenance

The document pipeline itself runs in the Scheduler worker processes
(app.workers.main). Celery only hosts the beat-driven housekeeping that
must run once per deployment rather than once per worker:

  maintenance.sweep_stuck_processing   clear stale in-flight markers
  maintenance.log_queue_health         log QueueStats, warn on degraded health

Broker / backend: Redis (same instance as the work queue, separate DBs).
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import after_setup_logger, task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from app.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queue definitions
# ---------------------------------------------------------------------------

MAINTENANCE_QUEUE = "system.maintenance"

TASK_QUEUES = (
    Queue(
        MAINTENANCE_QUEUE,
        Exchange("system", type="direct"),
        routing_key=MAINTENANCE_QUEUE,
        durable=True,
    ),
)

TASK_ROUTES = {
    "app.workers.tasks.sweep_stuck_processing": {"queue": MAINTENANCE_QUEUE},
    "app.workers.tasks.log_queue_health":       {"queue": MAINTENANCE_QUEUE},
}

# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    app = Celery("docflow")

    app.conf.update(
        # --- Broker / Backend ---
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        # --- Serialization ---
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        # --- Queues ---
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue=MAINTENANCE_QUEUE,

        # --- Reliability ---
        task_acks_late=True,
        worker_prefetch_multiplier=1,

        # --- Timeouts ---
        task_soft_time_limit=50,
        task_time_limit=60,

        result_expires=3600,

        timezone="UTC",
        enable_utc=True,

        # --- Beat schedule ---
        beat_schedule={
            "sweep-stuck-processing": {
                "task":     "app.workers.tasks.sweep_stuck_processing",
                "schedule": settings.stuck_sweep_interval_seconds,
            },
            "log-queue-health": {
                "task":     "app.workers.tasks.log_queue_health",
                "schedule": settings.stats_log_interval_seconds,
            },
        },
    )

    app.autodiscover_tasks(["app.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals — structured logging
# ---------------------------------------------------------------------------

@after_setup_logger.connect
def on_setup_logger(logger, **_):
    logger.setLevel(logging.DEBUG if settings.debug else logging.INFO)


@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info("Task start | task_id=%s task=%s", task_id, task.name)


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info("Task end | task_id=%s task=%s state=%s result=%s", task_id, task.name, state, retval)


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error("Task failed | task_id=%s error=%s", task_id, exception, exc_info=True)
