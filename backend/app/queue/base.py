"""
Work Queue — Abstract Base

Every concrete queue backend (Redis, in-memory) implements this interface.
The Scheduler and the admin surface only speak this protocol, and each
receives the queue instance it should use explicitly — there is no
process-wide queue singleton.

Two structures per queue:
  - a priority-ordered set of waiting WorkItems (lowest score first,
    equal scores in enqueue order)
  - an in-flight map  file_id → claim timestamp (ms)

Contract (enforced by ALL implementations):
  - dequeue() is an atomic pop-min: two callers never receive the same item.
  - enqueue() does NOT de-duplicate. Callers check contains() / is_in_flight()
    first (see app.services.queue_admin).
  - The in-flight map is best-effort bookkeeping, not a lock. It is written
    after dequeue() returns, so a crash in between loses the marker.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


def now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Work item
# ---------------------------------------------------------------------------

class WorkMode(str, Enum):
    """
    Which pipeline stages a work item runs.

    NORMAL          extract unless already completed, then process
    REPROCESS       reuse stored extraction output, process only
    EXTRACTION_ONLY extract only; processing_status is never touched
    BOTH            extract again, then process
    FORCE_FULL      extract unconditionally, then process
    """
    NORMAL          = "normal"
    REPROCESS       = "reprocess"
    EXTRACTION_ONLY = "extraction-only"
    BOTH            = "both"
    FORCE_FULL      = "force-full"


@dataclass
class WorkItem:
    """
    One queued unit of file-processing work.

    priority is the nominal priority the item was first enqueued with; score
    is what the queue orders by (priority plus any retry backoff offset).
    """
    file_id:     str
    job_id:      str
    priority:    float    = 0
    score:       float    = 0
    enqueued_at: int      = field(default_factory=now_ms)   # ms since epoch
    retries:     int      = 0
    mode:        WorkMode = WorkMode.NORMAL

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["mode"] = self.mode.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkItem":
        return cls(
            file_id=str(data["file_id"]),
            job_id=str(data["job_id"]),
            priority=data.get("priority", 0),
            score=data.get("score", data.get("priority", 0)),
            enqueued_at=now_ms() if data.get("enqueued_at") is None else int(data["enqueued_at"]),
            retries=int(data.get("retries", 0)),
            mode=WorkMode(data.get("mode") or WorkMode.NORMAL.value),
        )


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class QueueHealth:
    score:  int
    status: str      # healthy | warning | critical


def compute_queue_health(
    queue_size:       int,
    processing_count: int,
    avg_wait_time_ms: float,
) -> QueueHealth:
    """
    Score the queue 0–100 for dashboards and the maintenance health log.

        queue_size > 100 → −20      > 50 → −10
        in-flight  > 10  → −15      > 5  → −5
        avg wait   > 5 m → −25      > 1 m → −10
    """
    score = 100

    if queue_size > 100:
        score -= 20
    elif queue_size > 50:
        score -= 10

    if processing_count > 10:
        score -= 15
    elif processing_count > 5:
        score -= 5

    if avg_wait_time_ms > 300_000:
        score -= 25
    elif avg_wait_time_ms > 60_000:
        score -= 10

    if score < 50:
        status = "critical"
    elif score < 75:
        status = "warning"
    else:
        status = "healthy"
    return QueueHealth(score=score, status=status)


@dataclass
class QueueStats:
    """Observability snapshot; never used for correctness decisions."""
    queue_size:         int
    processing_count:   int
    paused:             bool
    next_items:         list[WorkItem]  = field(default_factory=list)
    processing_files:   dict[str, int]  = field(default_factory=dict)   # file_id → age ms
    avg_wait_time_ms:   float           = 0.0
    oldest_item_age_ms: int             = 0
    health:             QueueHealth     = field(default_factory=lambda: QueueHealth(100, "healthy"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "queue_size":         self.queue_size,
            "processing_count":   self.processing_count,
            "paused":             self.paused,
            "next_items":         [i.to_dict() for i in self.next_items],
            "processing_files":   dict(self.processing_files),
            "avg_wait_time_ms":   self.avg_wait_time_ms,
            "oldest_item_age_ms": self.oldest_item_age_ms,
            "health":             {"score": self.health.score, "status": self.health.status},
        }


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------

class WorkQueue(ABC):
    """Priority work queue plus in-flight map."""

    # ------------------------------------------------------------------
    # Backend primitives
    # ------------------------------------------------------------------

    @abstractmethod
    async def _push(self, item: WorkItem) -> None:
        """Insert an item ordered by (item.score, item.enqueued_at)."""

    @abstractmethod
    async def dequeue(self) -> WorkItem | None:
        """Atomically remove and return the lowest-scored item, or None."""

    @abstractmethod
    async def peek(self, count: int = 5) -> list[WorkItem]:
        """Return up to `count` items in dequeue order without removing them."""

    @abstractmethod
    async def size(self) -> int:
        """Number of waiting items."""

    @abstractmethod
    async def contains(self, file_id: str) -> bool:
        """True if a waiting item exists for this file."""

    @abstractmethod
    async def remove(self, file_id: str) -> int:
        """
        Drop every waiting item for the file and its in-flight marker.
        Returns the number of queue entries removed.
        """

    @abstractmethod
    async def mark_in_flight(self, file_id: str, claimed_at: int | None = None) -> None:
        """Record that some worker has claimed the file."""

    @abstractmethod
    async def clear_in_flight(self, file_id: str) -> bool:
        """Remove the file's in-flight marker. Returns True if one existed."""

    @abstractmethod
    async def in_flight(self) -> dict[str, int]:
        """All in-flight markers: file_id → claim timestamp (ms)."""

    @abstractmethod
    async def pause(self) -> None:
        """Stop workers from dequeuing (they sleep instead)."""

    @abstractmethod
    async def resume(self) -> None:
        """Allow dequeuing again."""

    @abstractmethod
    async def is_paused(self) -> bool:
        """Current value of the pause flag."""

    @abstractmethod
    async def clear(self) -> dict[str, int]:
        """
        Drop all waiting items and in-flight markers.
        Returns {"queued": n, "in_flight": m} — what was removed.
        """

    # ------------------------------------------------------------------
    # Shared behaviour
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        file_id:  str,
        job_id:   str,
        priority: float = 0,
        mode:     WorkMode | str = WorkMode.NORMAL,
    ) -> WorkItem:
        item = WorkItem(
            file_id=str(file_id),
            job_id=str(job_id),
            priority=priority,
            score=priority,
            mode=WorkMode(mode),
        )
        await self._push(item)
        return item

    async def requeue(self, item: WorkItem, delay_ms: int) -> WorkItem:
        """
        Retry path: put the item back with its retry count incremented and the
        backoff delay added to its score. The in-flight marker is kept until a
        worker dequeues the retry.

        Backoff shares the priority axis, so a retried item can be overtaken
        by newer work of a numerically higher priority.
        """
        retry = WorkItem(
            file_id=item.file_id,
            job_id=item.job_id,
            priority=item.priority,
            score=item.priority + delay_ms,
            enqueued_at=now_ms() + delay_ms,
            retries=item.retries + 1,
            mode=item.mode,
        )
        await self._push(retry)
        return retry

    async def is_in_flight(self, file_id: str) -> bool:
        return str(file_id) in await self.in_flight()

    async def clear_in_flight_older_than(
        self,
        age_ms: int,
        now:    int | None = None,
    ) -> list[str]:
        """Stuck-item sweep: clear markers claimed more than age_ms ago."""
        now = now if now is not None else now_ms()
        stale = [
            file_id
            for file_id, claimed_at in (await self.in_flight()).items()
            if now - claimed_at > age_ms
        ]
        for file_id in stale:
            await self.clear_in_flight(file_id)
        return stale

    async def clear_in_flight_all(self) -> int:
        markers = await self.in_flight()
        for file_id in markers:
            await self.clear_in_flight(file_id)
        return len(markers)

    async def stats(self, peek: int = 5, now: int | None = None) -> QueueStats:
        now        = now if now is not None else now_ms()
        next_items = await self.peek(peek)
        markers    = await self.in_flight()
        queue_size = await self.size()

        # Retried items carry a future enqueued_at; they have not waited yet.
        waits = [max(0, now - i.enqueued_at) for i in next_items]
        avg_wait = sum(waits) / len(waits) if waits else 0.0
        oldest   = max(waits) if waits else 0

        return QueueStats(
            queue_size=queue_size,
            processing_count=len(markers),
            paused=await self.is_paused(),
            next_items=next_items,
            processing_files={fid: max(0, now - ts) for fid, ts in markers.items()},
            avg_wait_time_ms=avg_wait,
            oldest_item_age_ms=oldest,
            health=compute_queue_health(queue_size, len(markers), avg_wait),
        )
