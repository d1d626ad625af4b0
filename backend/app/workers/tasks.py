"""
Celery Tasks — queue maintenance

Task: sweep_stuck_processing
  Every stuck_sweep_interval_seconds. A worker that dies between dequeue and
  completion leaves its file_id in the in-flight map forever; markers older
  than stuck_threshold_seconds are cleared so stats and de-duplication stop
  counting the dead claim. The files themselves are not re-queued: an
  operator decides via the admin surface.

Task: log_queue_health
  Every stats_log_interval_seconds. Logs depth, in-flight count, wait times
  and health; WARNING when health is not "healthy".
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from app.core.config import settings
from app.queue.base import WorkQueue
from app.queue.factory import create_redis_client, get_work_queue
from app.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        loop = asyncio.get_event_loop()
        if loop.is_running():
            import concurrent.futures
            with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
                future = pool.submit(asyncio.run, coro)
                return future.result()
        return loop.run_until_complete(coro)
    except RuntimeError:
        return asyncio.run(coro)


async def _with_queue(fn, queue: WorkQueue | None = None):
    """Build a queue for one task run (own Redis connection) unless one is given."""
    if queue is not None:
        return await fn(queue)

    client = create_redis_client(settings)
    try:
        return await fn(get_work_queue(settings, client=client))
    finally:
        await client.aclose()


# ---------------------------------------------------------------------------
# Stuck in-flight sweep
# ---------------------------------------------------------------------------

@celery_app.task(name="app.workers.tasks.sweep_stuck_processing", acks_late=True)
def sweep_stuck_processing() -> dict[str, Any]:
    return run_async(_with_queue(_sweep_stuck_processing_async))


async def _sweep_stuck_processing_async(
    queue:             WorkQueue,
    threshold_seconds: float | None = None,
) -> dict[str, Any]:
    threshold = threshold_seconds if threshold_seconds is not None else settings.stuck_threshold_seconds
    cleared   = await queue.clear_in_flight_older_than(int(threshold * 1000))
    for file_id in cleared:
        logger.warning("Stuck file cleared | file=%s threshold=%ss", file_id, threshold)
    return {"cleared": len(cleared), "file_ids": cleared}


# ---------------------------------------------------------------------------
# Queue health log
# ---------------------------------------------------------------------------

@celery_app.task(name="app.workers.tasks.log_queue_health")
def log_queue_health() -> dict[str, Any]:
    return run_async(_with_queue(_log_queue_health_async))


async def _log_queue_health_async(queue: WorkQueue) -> dict[str, Any]:
    stats  = await queue.stats()
    health = stats.health

    level = logging.INFO if health.status == "healthy" else logging.WARNING
    logger.log(
        level,
        "Queue health | status=%s score=%d queued=%d in_flight=%d paused=%s "
        "avg_wait=%.0fms oldest=%dms",
        health.status, health.score, stats.queue_size, stats.processing_count,
        stats.paused, stats.avg_wait_time_ms, stats.oldest_item_age_ms,
    )
    return {"status": health.status, "score": health.score, "queue_size": stats.queue_size}
