"""
In-process WorkQueue.

Used by the test suite and for single-process local runs. A heap ordered by
(score, enqueued_at, sequence) gives the same dequeue order as the Redis
backend; one asyncio.Lock serialises every operation so dequeue stays an
atomic pop even with many coroutines polling the same instance.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging

from app.queue.base import WorkItem, WorkQueue, now_ms

logger = logging.getLogger(__name__)


class InMemoryWorkQueue(WorkQueue):

    def __init__(self) -> None:
        self._heap:      list[tuple[float, int, int, WorkItem]] = []
        self._seq        = itertools.count()
        self._in_flight: dict[str, int] = {}
        self._paused     = False
        self._lock       = asyncio.Lock()

    async def _push(self, item: WorkItem) -> None:
        async with self._lock:
            heapq.heappush(self._heap, (item.score, item.enqueued_at, next(self._seq), item))
        logger.debug(
            "Enqueued | file=%s job=%s score=%s retries=%d mode=%s",
            item.file_id, item.job_id, item.score, item.retries, item.mode.value,
        )

    async def dequeue(self) -> WorkItem | None:
        async with self._lock:
            if not self._heap:
                return None
            return heapq.heappop(self._heap)[-1]

    async def peek(self, count: int = 5) -> list[WorkItem]:
        async with self._lock:
            return [entry[-1] for entry in heapq.nsmallest(count, self._heap)]

    async def size(self) -> int:
        return len(self._heap)

    async def contains(self, file_id: str) -> bool:
        file_id = str(file_id)
        return any(entry[-1].file_id == file_id for entry in self._heap)

    async def remove(self, file_id: str) -> int:
        file_id = str(file_id)
        async with self._lock:
            kept    = [e for e in self._heap if e[-1].file_id != file_id]
            removed = len(self._heap) - len(kept)
            if removed:
                heapq.heapify(kept)
                self._heap = kept
            self._in_flight.pop(file_id, None)
        return removed

    async def mark_in_flight(self, file_id: str, claimed_at: int | None = None) -> None:
        self._in_flight[str(file_id)] = claimed_at if claimed_at is not None else now_ms()

    async def clear_in_flight(self, file_id: str) -> bool:
        return self._in_flight.pop(str(file_id), None) is not None

    async def in_flight(self) -> dict[str, int]:
        return dict(self._in_flight)

    async def pause(self) -> None:
        self._paused = True

    async def resume(self) -> None:
        self._paused = False

    async def is_paused(self) -> bool:
        return self._paused

    async def clear(self) -> dict[str, int]:
        async with self._lock:
            removed = {"queued": len(self._heap), "in_flight": len(self._in_flight)}
            self._heap.clear()
            self._in_flight.clear()
        return removed
