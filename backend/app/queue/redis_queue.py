"""
Redis WorkQueue — shared across worker processes.

Key layout (names configurable via settings):
    file_processing_queue   ZSET   member = "<enqueued_at:015d>|<item json>"
                                   score  = priority (+ retry backoff)
    file_processing_active  HASH   file_id → claim timestamp (ms)
    queue_paused            STRING present ⇔ paused

Ordering:
  Redis orders equal scores lexicographically by member. Prefixing the
  member with a zero-padded enqueue timestamp makes equal-score items pop
  in enqueue order.

Atomicity:
  dequeue() is a single ZPOPMIN, so concurrent workers never receive the
  same member. mark_in_flight() is a separate HSET issued by the caller.
"""

from __future__ import annotations

import json
import logging

from redis.asyncio import Redis

from app.core.config import settings
from app.queue.base import WorkItem, WorkQueue, now_ms

logger = logging.getLogger(__name__)

_MEMBER_SEP = "|"


def _encode_member(item: WorkItem) -> str:
    payload = json.dumps(item.to_dict(), separators=(",", ":"), sort_keys=True)
    return f"{item.enqueued_at:015d}{_MEMBER_SEP}{payload}"


def _decode_member(member: str | bytes) -> WorkItem:
    if isinstance(member, bytes):
        member = member.decode("utf-8")
    _, _, payload = member.partition(_MEMBER_SEP)
    return WorkItem.from_dict(json.loads(payload))


def _decode_valid(members: list[str | bytes]) -> list[tuple[str | bytes, WorkItem]]:
    """Decode members in order, skipping (and logging) any that are malformed."""
    decoded = []
    for member in members:
        try:
            decoded.append((member, _decode_member(member)))
        except (ValueError, KeyError) as exc:
            logger.error("Skipping malformed queue member %r: %s", member, exc)
    return decoded


class RedisWorkQueue(WorkQueue):
    """
    WorkQueue over a redis.asyncio client.

    The client is injected so tests can pass an AsyncMock and the worker
    entrypoint can share one connection pool with the StatusSink.
    """

    def __init__(
        self,
        client:         Redis,
        queue_key:      str | None = None,
        processing_key: str | None = None,
        paused_key:     str | None = None,
    ) -> None:
        self._redis          = client
        self._queue_key      = queue_key or settings.queue_key
        self._processing_key = processing_key or settings.processing_key
        self._paused_key     = paused_key or settings.paused_key

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    async def _push(self, item: WorkItem) -> None:
        await self._redis.zadd(self._queue_key, {_encode_member(item): item.score})
        logger.debug(
            "Enqueued | file=%s job=%s score=%s retries=%d mode=%s",
            item.file_id, item.job_id, item.score, item.retries, item.mode.value,
        )

    async def dequeue(self) -> WorkItem | None:
        popped = await self._redis.zpopmin(self._queue_key, 1)
        if not popped:
            return None
        member, _score = popped[0]
        try:
            return _decode_member(member)
        except (ValueError, KeyError) as exc:
            # Undecodable member is already off the queue; nothing to retry.
            logger.error("Dropping malformed queue member %r: %s", member, exc)
            return None

    async def peek(self, count: int = 5) -> list[WorkItem]:
        members = await self._redis.zrange(self._queue_key, 0, count - 1)
        return [item for _, item in _decode_valid(members)]

    async def size(self) -> int:
        return int(await self._redis.zcard(self._queue_key))

    async def _members_for(self, file_id: str) -> list[str | bytes]:
        members = await self._redis.zrange(self._queue_key, 0, -1)
        return [m for m, item in _decode_valid(members) if item.file_id == str(file_id)]

    async def contains(self, file_id: str) -> bool:
        return bool(await self._members_for(file_id))

    async def remove(self, file_id: str) -> int:
        matches = await self._members_for(file_id)
        removed = int(await self._redis.zrem(self._queue_key, *matches)) if matches else 0
        await self._redis.hdel(self._processing_key, str(file_id))
        logger.info("Removed from queue | file=%s entries=%d", file_id, removed)
        return removed

    # ------------------------------------------------------------------
    # In-flight map
    # ------------------------------------------------------------------

    async def mark_in_flight(self, file_id: str, claimed_at: int | None = None) -> None:
        await self._redis.hset(
            self._processing_key,
            str(file_id),
            claimed_at if claimed_at is not None else now_ms(),
        )

    async def clear_in_flight(self, file_id: str) -> bool:
        return bool(await self._redis.hdel(self._processing_key, str(file_id)))

    async def in_flight(self) -> dict[str, int]:
        raw = await self._redis.hgetall(self._processing_key)
        markers: dict[str, int] = {}
        for key, value in raw.items():
            if isinstance(key, bytes):
                key = key.decode("utf-8")
            markers[key] = int(value)
        return markers

    async def is_in_flight(self, file_id: str) -> bool:
        return bool(await self._redis.hexists(self._processing_key, str(file_id)))

    async def clear_in_flight_all(self) -> int:
        count = int(await self._redis.hlen(self._processing_key))
        await self._redis.delete(self._processing_key)
        return count

    # ------------------------------------------------------------------
    # Pause flag
    # ------------------------------------------------------------------

    async def pause(self) -> None:
        await self._redis.set(self._paused_key, "true")
        logger.info("Queue paused | key=%s", self._paused_key)

    async def resume(self) -> None:
        await self._redis.delete(self._paused_key)
        logger.info("Queue resumed | key=%s", self._paused_key)

    async def is_paused(self) -> bool:
        return bool(await self._redis.exists(self._paused_key))

    async def clear(self) -> dict[str, int]:
        queued    = int(await self._redis.zcard(self._queue_key))
        in_flight = int(await self._redis.hlen(self._processing_key))
        await self._redis.delete(self._queue_key, self._processing_key)
        logger.warning("Queue cleared | queued=%d in_flight=%d", queued, in_flight)
        return {"queued": queued, "in_flight": in_flight}
