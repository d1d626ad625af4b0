"""
Work Queue Factory

Selects the queue backend (redis | memory) based on config. The worker
entrypoint calls this once at start-up and passes the instance to the
Scheduler and the admin service; nothing caches it at module level.
"""

from __future__ import annotations

from redis.asyncio import Redis

from app.core.config import Settings, settings as default_settings
from app.queue.base import WorkQueue


def create_redis_client(cfg: Settings | None = None) -> Redis:
    """One client per process; the connection pool is shared by its users."""
    cfg = cfg or default_settings
    return Redis.from_url(cfg.redis_url, decode_responses=True)


def get_work_queue(cfg: Settings | None = None, client: Redis | None = None) -> WorkQueue:
    cfg     = cfg or default_settings
    backend = cfg.queue_backend.lower()

    if backend == "redis":
        from app.queue.redis_queue import RedisWorkQueue
        return RedisWorkQueue(
            client=client or create_redis_client(cfg),
            queue_key=cfg.queue_key,
            processing_key=cfg.processing_key,
            paused_key=cfg.paused_key,
        )

    if backend == "memory":
        from app.queue.memory_queue import InMemoryWorkQueue
        return InMemoryWorkQueue()

    raise ValueError(
        f"Unknown queue backend: '{backend}'. "
        f"Valid options: 'redis', 'memory'"
    )
