"""
Scheduler — the worker poll loop.

One Scheduler drives one logical worker. Horizontal scale comes from running
N worker processes against the same WorkQueue; inside a process the loop is
single-threaded and handles exactly one work item end-to-end at a time.

Per iteration:
  1. Queue paused            → sleep worker_interval_ms
  2. dequeue()               → empty: sleep worker_interval_ms
  3. mark_in_flight(file_id)
  4. Load Job + File         → missing: MissingRecordError (permanent)
  5. Dispatch on item.mode   → one handler per WorkMode (_MODE_HANDLERS)
  6. Extraction sub-step     → pending → processing → completed
  7. text_only job           → processing marked completed, no LLM call
  8. Processing sub-step     → pending → processing → completed
  9. Any exception in 4–8    → _handle_failure (retry with backoff or fail)
 10. Success                 → clear_in_flight, recompute job status

Every dequeued item ends in exactly one ItemOutcome:
    completed | retrying (requeued, retries+1) | failed (terminal)

Nothing raised while handling an item escapes run(); the loop logs it and
moves on to the next item.
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from app.core.config import settings
from app.core.exceptions import (
    ExtractionFailedError,
    MissingRecordError,
    NotFoundError,
    PermanentItemError,
    ProcessingFailedError,
)
from app.processing.extraction import ExtractionClient
from app.processing.structured import ProcessingClient
from app.queue.base import WorkItem, WorkMode, WorkQueue
from app.schemas.jobs import (
    FILE_STATUS_EVENT,
    JOB_STATUS_EVENT,
    FileRecord,
    FileStatusEvent,
    JobRecord,
    JobStatus,
    JobStatusEvent,
    Stage,
    StageStatus,
    job_topic,
)
from app.store.base import JobStore
from app.workers.aggregation import aggregate_job_status
from app.workers.retry import RetryPolicy
from app.workers.status import StatusSink

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------

class OutcomeKind(str, Enum):
    COMPLETED = "completed"
    RETRYING  = "retrying"
    FAILED    = "failed"


@dataclass(frozen=True)
class ItemOutcome:
    item:    WorkItem
    kind:    OutcomeKind
    retries: int                # retry count after this attempt
    error:   str | None = None


@dataclass
class _ItemContext:
    """Mutable state for one item's pipeline run."""
    item:  WorkItem
    job:   JobRecord | None  = None
    file:  FileRecord | None = None
    stage: Stage | None      = None   # stage currently in progress


# ---------------------------------------------------------------------------
# Mode dispatch table — one handler per WorkMode
# ---------------------------------------------------------------------------

_MODE_HANDLERS: dict[WorkMode, str] = {
    WorkMode.NORMAL:          "_run_normal",
    WorkMode.REPROCESS:       "_run_reprocess",
    WorkMode.EXTRACTION_ONLY: "_run_extraction_only",
    WorkMode.BOTH:            "_run_both",
    WorkMode.FORCE_FULL:      "_run_force_full",
}

_missing = set(WorkMode) - set(_MODE_HANDLERS)
if _missing:
    raise RuntimeError(f"WorkMode values without a handler: {sorted(m.value for m in _missing)}")


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

class Scheduler:
    """
    Poll-claim-process loop over an injected WorkQueue.

    All dependencies are injected (testable, no hidden globals):
        queue        : shared WorkQueue (Redis in production)
        store        : Job Store
        extractor    : Extraction Collaborator client
        processor    : Processing Collaborator client
        status_sink  : StatusSink for live status push
        retry_policy : MAX_RETRIES + backoff
    """

    def __init__(
        self,
        queue:          WorkQueue,
        store:          JobStore,
        extractor:      ExtractionClient,
        processor:      ProcessingClient,
        status_sink:    StatusSink,
        retry_policy:   RetryPolicy | None = None,
        interval_ms:    int | None = None,
        stats_interval: float | None = None,
        publish_timeout: float = 5.0,
        worker_id:      str | None = None,
    ) -> None:
        self._queue           = queue
        self._store           = store
        self._extractor       = extractor
        self._processor       = processor
        self._sink            = status_sink
        self._retry           = retry_policy or RetryPolicy.from_settings()
        self._interval        = (interval_ms if interval_ms is not None else settings.worker_interval_ms) / 1000
        self._stats_interval  = stats_interval if stats_interval is not None else settings.stats_log_interval_seconds
        self._publish_timeout = publish_timeout
        self.worker_id        = worker_id or f"{socket.gethostname()}:{os.getpid()}"

        self._stop            = asyncio.Event()
        self._processed_count = 0
        self._error_count     = 0
        self._started_at      = time.time()
        self._last_stats_log  = time.monotonic()

        self._handlers: dict[WorkMode, Callable[[_ItemContext], Awaitable[None]]] = {
            mode: getattr(self, name) for mode, name in _MODE_HANDLERS.items()
        }

    # ------------------------------------------------------------------
    # Loop control
    # ------------------------------------------------------------------

    @property
    def processed_count(self) -> int:
        return self._processed_count

    @property
    def error_count(self) -> int:
        return self._error_count

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        """Finish the current item, then leave run()."""
        if not self._stop.is_set():
            logger.info("Worker stopping | worker=%s", self.worker_id)
        self._stop.set()

    def stats(self) -> dict[str, Any]:
        return {
            "worker_id":      self.worker_id,
            "processed":      self._processed_count,
            "errors":         self._error_count,
            "started_at":     self._started_at,
            "uptime_seconds": round(time.time() - self._started_at, 1),
        }

    async def run(self) -> None:
        logger.info(
            "Worker started | worker=%s interval=%.1fs max_retries=%d",
            self.worker_id, self._interval, self._retry.max_retries,
        )
        while not self._stop.is_set():
            try:
                outcome = await self.run_once()
            except Exception as exc:
                # Queue/store outage outside the per-item boundary
                logger.exception("Worker iteration failed | worker=%s error=%s", self.worker_id, exc)
                outcome = None

            if outcome is None:
                await self._sleep()
            await self._maybe_log_stats()

        logger.info(
            "Worker stopped | worker=%s processed=%d errors=%d uptime=%.0fs",
            self.worker_id, self._processed_count, self._error_count,
            time.time() - self._started_at,
        )

    async def run_once(self) -> ItemOutcome | None:
        """One poll. Returns None when nothing was processed (paused or empty)."""
        if await self._queue.is_paused():
            logger.debug("Queue paused — worker idle")
            return None

        item = await self._queue.dequeue()
        if item is None:
            return None

        await self._queue.mark_in_flight(item.file_id)
        return await self.process_item(item)

    async def _sleep(self) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
        except asyncio.TimeoutError:
            pass

    async def _maybe_log_stats(self) -> None:
        if time.monotonic() - self._last_stats_log < self._stats_interval:
            return
        self._last_stats_log = time.monotonic()
        try:
            queue_stats = await self._queue.stats()
        except Exception as exc:
            logger.warning("Worker stats unavailable | worker=%s error=%s", self.worker_id, exc)
            return
        logger.info(
            "Worker stats | worker=%s processed=%d errors=%d uptime=%.0fs "
            "queue=%d in_flight=%d health=%s",
            self.worker_id, self._processed_count, self._error_count,
            time.time() - self._started_at,
            queue_stats.queue_size, queue_stats.processing_count, queue_stats.health.status,
        )

    # ------------------------------------------------------------------
    # Per-item pipeline
    # ------------------------------------------------------------------

    async def process_item(self, item: WorkItem) -> ItemOutcome:
        """Run one claimed item through its mode's pipeline."""
        ctx = _ItemContext(item=item)
        logger.info(
            "Processing | file=%s job=%s mode=%s attempt=%d",
            item.file_id, item.job_id, item.mode.value, item.retries + 1,
        )
        try:
            ctx.job, ctx.file = await self._load(item)
            await self._mark_job_started(ctx)
            await self._handlers[item.mode](ctx)
        except Exception as exc:
            return await self._handle_failure(ctx, exc)

        await self._clear_in_flight(item.file_id)
        self._processed_count += 1
        logger.info("Completed | file=%s job=%s mode=%s", item.file_id, item.job_id, item.mode.value)
        await self._refresh_job_status(ctx)
        return ItemOutcome(item=item, kind=OutcomeKind.COMPLETED, retries=item.retries)

    async def _load(self, item: WorkItem) -> tuple[JobRecord, FileRecord]:
        job = await self._store.get_job(item.job_id)
        if job is None:
            raise MissingRecordError(f"Job not found: {item.job_id}")
        file = await self._store.get_file(item.file_id)
        if file is None:
            raise MissingRecordError(f"File not found: {item.file_id}")
        return job, file

    async def _mark_job_started(self, ctx: _ItemContext) -> None:
        if ctx.job.status != JobStatus.QUEUED:
            return
        ctx.job = await self._store.update_job_status(ctx.job.id, JobStatus.PROCESSING)
        await self._publish_job(ctx.job.id, JobStatus.PROCESSING, "Processing started")

    # ---- Mode handlers ------------------------------------------------

    async def _run_normal(self, ctx: _ItemContext) -> None:
        if ctx.file.extraction_status != StageStatus.COMPLETED:
            await self._extract(ctx)
        await self._process(ctx)

    async def _run_reprocess(self, ctx: _ItemContext) -> None:
        # Stored text/markdown/tables/pages stand in for a fresh extraction.
        await self._process(ctx)

    async def _run_extraction_only(self, ctx: _ItemContext) -> None:
        await self._extract(ctx)

    async def _run_both(self, ctx: _ItemContext) -> None:
        await self._extract(ctx)
        await self._process(ctx)

    async def _run_force_full(self, ctx: _ItemContext) -> None:
        await self._extract(ctx)
        await self._process(ctx)

    # ---- Stages -------------------------------------------------------

    async def _extract(self, ctx: _ItemContext) -> None:
        cfg       = ctx.job.processing_config.extraction
        ctx.stage = Stage.EXTRACTION

        ctx.file = await self._store.update_extraction_status(ctx.file.id, StageStatus.PROCESSING)
        await self._publish_file(ctx, f"Extracting text with {cfg.method.value}")

        result = await self._extractor.extract(ctx.file, cfg.method, dict(cfg.options))
        if not result.success:
            raise ExtractionFailedError(result.error or "Extraction failed")

        ctx.file = await self._store.update_extraction_status(
            ctx.file.id,
            StageStatus.COMPLETED,
            text=result.text,
            tables=result.tables,
            markdown=result.markdown,
            pages=result.pages,
            elapsed_seconds=result.elapsed_seconds,
        )
        ctx.stage = None
        await self._publish_file(ctx, "Text extraction completed")

    async def _process(self, ctx: _ItemContext) -> None:
        job, item = ctx.job, ctx.item

        if item.mode != WorkMode.REPROCESS and ctx.file.extraction_status != StageStatus.COMPLETED:
            raise PermanentItemError(
                f"Extraction is {ctx.file.extraction_status.value}; processing cannot start",
                stage=Stage.PROCESSING.value,
            )

        ctx.stage = Stage.PROCESSING

        if job.is_text_only:
            ctx.file = await self._store.update_processing_status(
                ctx.file.id,
                StageStatus.COMPLETED,
                metadata={
                    "mode":              "text_only",
                    "extraction_method": job.processing_config.extraction.method.value,
                },
            )
            ctx.stage = None
            await self._publish_file(ctx, "Text extraction completed (text only, no AI processing)")
            return

        content = ctx.file.markdown or ctx.file.extracted_text
        if not content:
            raise PermanentItemError("No extracted content to process", stage=Stage.PROCESSING.value)

        cfg = job.processing_config.processing
        ctx.file = await self._store.update_processing_status(ctx.file.id, StageStatus.PROCESSING)
        await self._publish_file(ctx, f"Processing with {cfg.method.value}/{cfg.model}")

        t0 = time.monotonic()
        result = await self._processor.process(
            content, job.extraction_schema, cfg.method, cfg.model, dict(cfg.options),
        )
        if not result.success:
            raise ProcessingFailedError(result.error or "Processing failed")

        ctx.file = await self._store.update_processing_status(
            ctx.file.id,
            StageStatus.COMPLETED,
            result=result.data,
            metadata=result.metadata,
            elapsed_seconds=round(time.monotonic() - t0, 3),
        )
        ctx.stage = None
        await self._publish_file(ctx, "Processing completed", result=result.data)

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    async def _handle_failure(self, ctx: _ItemContext, exc: Exception) -> ItemOutcome:
        item     = ctx.item
        stage    = ctx.stage or Stage(getattr(exc, "stage", Stage.EXTRACTION.value))
        message  = str(exc) or type(exc).__name__
        decision = self._retry.decide(item.retries, exc)

        if decision.retry:
            file = await self._record_stage(item, stage, StageStatus.PENDING, message)
            try:
                await self._queue.requeue(item, decision.delay_ms)
            except Exception as requeue_exc:
                # Not back on the queue: resolve the item as failed instead.
                logger.exception(
                    "Requeue failed | file=%s job=%s error=%s", item.file_id, item.job_id, requeue_exc,
                )
                message = f"{message} (requeue failed: {requeue_exc})"
                return await self._fail(ctx, stage, message, decision.retries, permanent=False)
            logger.warning(
                "Retrying | file=%s job=%s stage=%s retry=%d/%d delay=%dms error=%s",
                item.file_id, item.job_id, stage.value, decision.retries,
                self._retry.max_retries, decision.delay_ms, message,
            )
            await self._publish_file(
                ctx,
                f"Retrying {stage.value} ({decision.retries}/{self._retry.max_retries})",
                file=file,
                error=message,
                retries=decision.retries,
            )
            return ItemOutcome(item=item, kind=OutcomeKind.RETRYING, retries=decision.retries, error=message)

        return await self._fail(
            ctx, stage, message, decision.retries,
            permanent=isinstance(exc, (PermanentItemError, NotFoundError)),
        )

    async def _fail(
        self,
        ctx:       _ItemContext,
        stage:     Stage,
        message:   str,
        retries:   int,
        permanent: bool,
    ) -> ItemOutcome:
        """Terminal failure: stage failed, in-flight cleared, job re-aggregated."""
        item = ctx.item
        file = await self._record_stage(item, stage, StageStatus.FAILED, message)
        await self._clear_in_flight(item.file_id)
        self._error_count += 1
        logger.error(
            "Failed | file=%s job=%s stage=%s retries=%d permanent=%s error=%s",
            item.file_id, item.job_id, stage.value, retries, permanent, message,
        )
        await self._publish_file(
            ctx,
            f"{stage.value.capitalize()} failed",
            file=file,
            error=message,
            retries=retries,
        )
        await self._refresh_job_status(ctx)
        return ItemOutcome(item=item, kind=OutcomeKind.FAILED, retries=retries, error=message)

    async def _clear_in_flight(self, file_id: str) -> None:
        try:
            await self._queue.clear_in_flight(file_id)
        except Exception as exc:
            # Left for the stuck sweep.
            logger.warning("Cannot clear in-flight marker | file=%s error=%s", file_id, exc)

    async def _record_stage(
        self,
        item:   WorkItem,
        stage:  Stage,
        status: StageStatus,
        error:  str,
    ) -> FileRecord | None:
        """Persist a failure on the stage. The outcome stands even if this write fails."""
        update = (
            self._store.update_extraction_status
            if stage == Stage.EXTRACTION
            else self._store.update_processing_status
        )
        try:
            return await update(item.file_id, status, error=error)
        except NotFoundError:
            logger.warning("Cannot record %s failure, file gone | file=%s", stage.value, item.file_id)
        except Exception:
            logger.exception("Cannot record %s failure | file=%s", stage.value, item.file_id)
        return None

    # ------------------------------------------------------------------
    # Job aggregation
    # ------------------------------------------------------------------

    async def _refresh_job_status(self, ctx: _ItemContext) -> None:
        job_id = ctx.job.id if ctx.job else ctx.item.job_id
        try:
            files = await self._store.list_job_files(job_id)
            if not files:
                return
            status = aggregate_job_status(files)
            if ctx.job is not None and ctx.job.status == status:
                return
            ctx.job = await self._store.update_job_status(job_id, status)
        except (NotFoundError, PermanentItemError) as exc:
            logger.warning("Job status not updated | job=%s error=%s", job_id, exc)
            return
        except Exception:
            # Recomputed on the next item of this job.
            logger.exception("Job status refresh failed | job=%s", job_id)
            return

        logger.info("Job status | job=%s status=%s", job_id, status.value)
        await self._publish_job(job_id, status, f"Job {status.value}")

    # ------------------------------------------------------------------
    # Status push (fire-and-forget)
    # ------------------------------------------------------------------

    async def _publish(self, topic: str, event: str, payload: dict[str, Any]) -> None:
        try:
            await asyncio.wait_for(self._sink.publish(topic, event, payload), timeout=self._publish_timeout)
        except asyncio.TimeoutError:
            logger.warning("Status publish timed out | topic=%s event=%s", topic, event)
        except Exception as exc:
            logger.warning("Status publish failed | topic=%s event=%s error=%s", topic, event, exc)

    async def _publish_file(
        self,
        ctx:     _ItemContext,
        message: str,
        *,
        file:    FileRecord | None = None,
        error:   str | None = None,
        retries: int | None = None,
        result:  dict[str, Any] | None = None,
    ) -> None:
        file = file or ctx.file
        event = FileStatusEvent(
            job_id=str(ctx.item.job_id),
            file_id=str(ctx.item.file_id),
            filename=file.filename if file else None,
            extraction_status=file.extraction_status if file else None,
            processing_status=file.processing_status if file else None,
            message=message,
            error=error,
            retries=ctx.item.retries if retries is None else retries,
            result=result,
        )
        await self._publish(job_topic(ctx.item.job_id), FILE_STATUS_EVENT, event.model_dump(mode="json"))

    async def _publish_job(self, job_id: Any, status: JobStatus, message: str) -> None:
        event = JobStatusEvent(job_id=str(job_id), status=status, message=message)
        await self._publish(job_topic(job_id), JOB_STATUS_EVENT, event.model_dump(mode="json"))
