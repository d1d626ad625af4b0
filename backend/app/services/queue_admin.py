"""
Queue Admin Service — the operator surface over the Work Queue

Every request an operator (or the API service) makes against the queue goes
through here so the same guards apply everywhere:

  enqueue_file / enqueue_job    de-duplicate against queued + in-flight items
  remove_file                   drop a file's waiting items and marker
  pause / resume / clear        queue-wide controls
  clear_stuck_processing        drop in-flight markers (all, or older than N s)
  get_stats                     QueueStats + derived utilisation figures
  plan_reprocess                decide which stages a reprocess request re-runs
  reprocess_files               apply (or preview) reprocess plans
  job_file_stats                per-job file counters

The queue itself performs no de-duplication; callers are expected to check
contains()/is_in_flight() first, and this service is that caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from app.core.exceptions import AlreadyQueuedError, InvalidStateError, NotFoundError
from app.queue.base import WorkItem, WorkMode, WorkQueue
from app.schemas.jobs import FileRecord, StageStatus
from app.store.base import JobStore
from app.workers.aggregation import JobFileStats, job_file_stats
from app.workers.retry import RetryPolicy

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Reprocess planning
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ReprocessPlan:
    file_id:      str
    will_extract: bool
    will_process: bool
    mode:         WorkMode | None      # None → nothing to do
    skip_reason:  str | None = None

    @property
    def is_noop(self) -> bool:
        return self.mode is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "file_id":      self.file_id,
            "will_extract": self.will_extract,
            "will_process": self.will_process,
            "mode":         self.mode.value if self.mode else None,
            "skip_reason":  self.skip_reason,
        }


@dataclass
class ReprocessSummary:
    preview: bool
    plans:   list[ReprocessPlan] = field(default_factory=list)
    queued:  list[str]           = field(default_factory=list)
    skipped: dict[str, str]      = field(default_factory=dict)   # file_id → reason

    def to_dict(self) -> dict[str, Any]:
        return {
            "preview": self.preview,
            "plans":   [p.to_dict() for p in self.plans],
            "queued":  list(self.queued),
            "skipped": dict(self.skipped),
        }


def plan_reprocess(
    file:             FileRecord,
    re_extract:       bool,
    re_process:       bool,
    force_extraction: bool = False,
) -> ReprocessPlan:
    """
    will_extract = re_extract and (force_extraction or extraction not completed)
    will_process = re_process and (stored text/markdown exists or will_extract)
    """
    will_extract = re_extract and (
        force_extraction or file.extraction_status != StageStatus.COMPLETED
    )
    will_process = re_process and (file.has_extracted_content or will_extract)

    if will_extract and will_process:
        mode = WorkMode.FORCE_FULL if force_extraction else WorkMode.BOTH
    elif will_extract:
        mode = WorkMode.EXTRACTION_ONLY
    elif will_process:
        mode = WorkMode.REPROCESS
    else:
        mode = None

    skip_reason = None
    if mode is None:
        if re_extract and not re_process:
            skip_reason = "Extraction already completed (use force_extraction to re-run)"
        elif re_process:
            skip_reason = "No extracted content to reprocess"
        else:
            skip_reason = "Nothing requested"

    return ReprocessPlan(
        file_id=str(file.id),
        will_extract=will_extract,
        will_process=will_process,
        mode=mode,
        skip_reason=skip_reason,
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class QueueAdminService:

    def __init__(
        self,
        queue:        WorkQueue,
        store:        JobStore,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._queue = queue
        self._store = store
        self._retry = retry_policy or RetryPolicy.from_settings()

    # ---- Enqueue ------------------------------------------------------

    async def _is_active(self, file_id: str) -> bool:
        return await self._queue.contains(file_id) or await self._queue.is_in_flight(file_id)

    async def enqueue_file(
        self,
        file_id:  UUID | str,
        priority: float = 0,
        mode:     WorkMode | str = WorkMode.NORMAL,
    ) -> WorkItem:
        file_id = str(file_id)
        mode    = WorkMode(mode)

        file = await self._store.get_file(file_id)
        if file is None:
            raise NotFoundError("file", file_id)
        if await self._is_active(file_id):
            raise AlreadyQueuedError(f"File {file_id} is already queued or processing")
        if mode == WorkMode.NORMAL and file.processing_status == StageStatus.COMPLETED:
            raise InvalidStateError(f"File {file_id} is already processed; use reprocess")

        item = await self._queue.enqueue(file_id, str(file.job_id), priority=priority, mode=mode)
        logger.info("Enqueued | file=%s job=%s priority=%s mode=%s", file_id, file.job_id, priority, mode.value)
        return item

    async def enqueue_job(self, job_id: UUID | str, priority: float = 0) -> list[WorkItem]:
        """Queue every unfinished file of a job; failed stages are reset to pending first."""
        if await self._store.get_job(job_id) is None:
            raise NotFoundError("job", str(job_id))

        queued: list[WorkItem] = []
        for file in await self._store.list_job_files(job_id):
            file_id = str(file.id)
            if file.processing_status == StageStatus.COMPLETED or await self._is_active(file_id):
                continue
            await self._reset_failed_stages(file)
            queued.append(await self._queue.enqueue(file_id, str(job_id), priority=priority))

        logger.info("Enqueued job | job=%s files=%d", job_id, len(queued))
        return queued

    async def _reset_failed_stages(self, file: FileRecord) -> None:
        if file.extraction_status == StageStatus.FAILED:
            await self._store.update_extraction_status(file.id, StageStatus.PENDING)
        if file.processing_status == StageStatus.FAILED:
            await self._store.update_processing_status(file.id, StageStatus.PENDING)

    async def remove_file(self, file_id: UUID | str) -> int:
        removed = await self._queue.remove(str(file_id))
        logger.info("Removed from queue | file=%s entries=%d", file_id, removed)
        return removed

    # ---- Queue-wide controls -----------------------------------------

    async def pause(self) -> None:
        await self._queue.pause()
        logger.warning("Queue paused")

    async def resume(self) -> None:
        await self._queue.resume()
        logger.info("Queue resumed")

    async def clear(self) -> dict[str, int]:
        removed = await self._queue.clear()
        logger.warning("Queue cleared | queued=%d in_flight=%d", removed["queued"], removed["in_flight"])
        return removed

    async def clear_stuck_processing(self, older_than_seconds: float | None = None) -> list[str]:
        """Drop in-flight markers; all of them when no threshold is given."""
        if older_than_seconds is None:
            cleared = list(await self._queue.in_flight())
            await self._queue.clear_in_flight_all()
        else:
            cleared = await self._queue.clear_in_flight_older_than(int(older_than_seconds * 1000))

        if cleared:
            logger.warning(
                "Cleared stuck in-flight markers | count=%d older_than=%ss",
                len(cleared), older_than_seconds,
            )
        return cleared

    async def get_stats(self) -> dict[str, Any]:
        stats    = await self._queue.stats()
        ages     = list(stats.processing_files.values())
        active   = stats.processing_count + stats.queue_size

        data = stats.to_dict()
        data.update(
            max_retries=self._retry.max_retries,
            retry_base_delay_ms=self._retry.base_delay_ms,
            avg_processing_time_ms=sum(ages) / len(ages) if ages else 0.0,
            queue_utilization=(stats.processing_count / active * 100) if active else 0.0,
        )
        return data

    # ---- Reprocess ----------------------------------------------------

    def plan_reprocess(
        self,
        file:             FileRecord,
        re_extract:       bool,
        re_process:       bool,
        force_extraction: bool = False,
    ) -> ReprocessPlan:
        return plan_reprocess(file, re_extract, re_process, force_extraction)

    async def reprocess_files(
        self,
        file_ids:         list[UUID | str],
        re_extract:       bool = False,
        re_process:       bool = True,
        force_extraction: bool = False,
        preview:          bool = False,
        priority:         float = 0,
    ) -> ReprocessSummary:
        summary = ReprocessSummary(preview=preview)

        for raw_id in file_ids:
            file_id = str(raw_id)
            file = await self._store.get_file(file_id)
            if file is None:
                summary.skipped[file_id] = "File not found"
                continue

            plan = plan_reprocess(file, re_extract, re_process, force_extraction)
            summary.plans.append(plan)

            if plan.is_noop:
                summary.skipped[file_id] = plan.skip_reason
                continue
            if preview:
                continue
            if await self._is_active(file_id):
                summary.skipped[file_id] = "Already queued or processing"
                continue

            if plan.will_extract:
                await self._store.update_extraction_status(file.id, StageStatus.PENDING)
            if plan.will_process:
                await self._store.update_processing_status(file.id, StageStatus.PENDING)

            await self._queue.enqueue(file_id, str(file.job_id), priority=priority, mode=plan.mode)
            summary.queued.append(file_id)

        if not preview:
            logger.info(
                "Reprocess | requested=%d queued=%d skipped=%d",
                len(file_ids), len(summary.queued), len(summary.skipped),
            )
        return summary

    # ---- Per-job view -------------------------------------------------

    async def job_file_stats(self, job_id: UUID | str) -> JobFileStats:
        return job_file_stats(await self._store.list_job_files(job_id))
