"""
Worker process entrypoint.

    python -m app.workers.main

Start-up:
  1. Configure logging
  2. Connect Redis (queue + status pub/sub) and ping it
  3. Check database connectivity
  4. Wire Scheduler(queue, store, extractor, processor, status_sink)
  5. Run until SIGINT / SIGTERM; the item in progress finishes first

Run N of these processes for N-way parallelism.
"""

from __future__ import annotations

import asyncio
import logging
import signal

from app.core.config import settings
from app.db.session import check_db_health, engine
from app.processing.extraction import HttpExtractionClient
from app.processing.structured import LLMProcessingClient
from app.queue.factory import create_redis_client, get_work_queue
from app.storage.s3 import DocumentStorage
from app.store.sql_store import SqlJobStore
from app.workers.retry import RetryPolicy
from app.workers.scheduler import Scheduler
from app.workers.status import RedisStatusSink

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    # httpx logs every request at INFO; collaborator calls are logged by the clients
    logging.getLogger("httpx").setLevel(logging.WARNING)


async def main() -> None:
    configure_logging()
    logger.info(
        "Starting worker | env=%s queue=%s interval=%dms max_retries=%d",
        settings.app_env, settings.queue_backend,
        settings.worker_interval_ms, settings.worker_max_retries,
    )

    redis = create_redis_client(settings)
    await redis.ping()
    logger.info("Redis: connected")

    db_health = await check_db_health()
    if db_health["status"] != "ok":
        logger.critical("Database health check failed at startup: %s", db_health)
        raise RuntimeError(f"DB unavailable: {db_health}")
    logger.info("Database: connected")

    scheduler = Scheduler(
        queue=get_work_queue(settings, client=redis),
        store=SqlJobStore(),
        extractor=HttpExtractionClient(storage=DocumentStorage()),
        processor=LLMProcessingClient(),
        status_sink=RedisStatusSink(redis),
        retry_policy=RetryPolicy.from_settings(),
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, scheduler.stop)

    try:
        await scheduler.run()
    finally:
        await redis.aclose()
        await engine.dispose()
        logger.info("Worker shutdown complete")


if __name__ == "__main__":
    asyncio.run(main())
