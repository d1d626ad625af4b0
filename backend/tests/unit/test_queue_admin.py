"""
Unit Tests — QueueAdminService
══════════════════════════════
Operator surface over the in-memory queue and FakeJobStore.

Coverage targets:
  ✅ enqueue_file: queued, already-queued, in-flight, missing, completed file
  ✅ enqueue_job: skips completed / active files, resets failed stages
  ✅ remove_file / pause / resume / clear
  ✅ clear_stuck_processing with and without threshold
  ✅ get_stats: retry settings, utilisation, avg processing time
  ✅ plan_reprocess decision table
  ✅ reprocess_files: preview has no side effects, resets stages, skips active
  ✅ job_file_stats
"""

from __future__ import annotations

import uuid

import pytest

from app.core.exceptions import AlreadyQueuedError, InvalidStateError, NotFoundError
from app.queue.base import WorkMode, now_ms
from app.schemas.jobs import StageStatus
from app.services.queue_admin import QueueAdminService, plan_reprocess
from app.workers.retry import RetryPolicy
from tests.conftest import make_file, make_job


@pytest.fixture
def admin(memory_queue, job_store) -> QueueAdminService:
    return QueueAdminService(memory_queue, job_store, RetryPolicy(max_retries=3, base_delay_ms=5000))


# ─────────────────────────────────────────────────────────────────────────────
# Enqueue
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.admin
class TestEnqueue:

    async def test_enqueue_file(self, admin, seed_job, memory_queue):
        job, (file,) = seed_job()

        item = await admin.enqueue_file(file.id, priority=3)

        assert item.file_id == str(file.id)
        assert item.job_id == str(job.id)
        assert item.score == 3
        assert await memory_queue.contains(str(file.id))

    async def test_enqueue_file_twice_rejected(self, admin, seed_job):
        _, (file,) = seed_job()
        await admin.enqueue_file(file.id)

        with pytest.raises(AlreadyQueuedError):
            await admin.enqueue_file(file.id)

    async def test_enqueue_in_flight_file_rejected(self, admin, seed_job, memory_queue):
        _, (file,) = seed_job()
        await memory_queue.mark_in_flight(str(file.id))

        with pytest.raises(AlreadyQueuedError):
            await admin.enqueue_file(file.id)

    async def test_enqueue_missing_file(self, admin):
        with pytest.raises(NotFoundError):
            await admin.enqueue_file(uuid.uuid4())

    async def test_completed_file_requires_reprocess(self, admin, seed_job):
        _, (file,) = seed_job(
            extraction_status=StageStatus.COMPLETED,
            processing_status=StageStatus.COMPLETED,
            markdown="done",
        )

        with pytest.raises(InvalidStateError):
            await admin.enqueue_file(file.id)

        item = await admin.enqueue_file(file.id, mode=WorkMode.REPROCESS)
        assert item.mode == WorkMode.REPROCESS

    async def test_enqueue_job(self, admin, job_store, memory_queue):
        job = job_store.add_job(make_job())
        fresh  = job_store.add_file(make_file(job, "a.pdf"))
        failed = job_store.add_file(make_file(job, "b.pdf", extraction_status=StageStatus.FAILED,
                                              extraction_error="boom"))
        job_store.add_file(make_file(job, "c.pdf", extraction_status=StageStatus.COMPLETED,
                                     processing_status=StageStatus.COMPLETED))
        active = job_store.add_file(make_file(job, "d.pdf"))
        await memory_queue.mark_in_flight(str(active.id))

        items = await admin.enqueue_job(job.id)

        assert {i.file_id for i in items} == {str(fresh.id), str(failed.id)}
        reset = job_store.files[str(failed.id)]
        assert reset.extraction_status == StageStatus.PENDING
        assert reset.extraction_error is None

    async def test_enqueue_missing_job(self, admin):
        with pytest.raises(NotFoundError):
            await admin.enqueue_job(uuid.uuid4())


# ─────────────────────────────────────────────────────────────────────────────
# Queue-wide controls
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.admin
class TestControls:

    async def test_remove_pause_resume_clear(self, admin, seed_job, memory_queue):
        _, files = seed_job(n_files=3)
        for f in files:
            await admin.enqueue_file(f.id)

        assert await admin.remove_file(files[0].id) == 1

        await admin.pause()
        assert await memory_queue.is_paused()
        await admin.resume()
        assert not await memory_queue.is_paused()

        assert await admin.clear() == {"queued": 2, "in_flight": 0}

    async def test_clear_stuck_processing_all(self, admin, memory_queue):
        await memory_queue.mark_in_flight("a")
        await memory_queue.mark_in_flight("b")

        cleared = await admin.clear_stuck_processing()

        assert sorted(cleared) == ["a", "b"]
        assert await memory_queue.in_flight() == {}

    async def test_clear_stuck_processing_threshold(self, admin, memory_queue):
        await memory_queue.mark_in_flight("old", claimed_at=now_ms() - 7_200_000)
        await memory_queue.mark_in_flight("new")

        cleared = await admin.clear_stuck_processing(older_than_seconds=3600)

        assert cleared == ["old"]
        assert list(await memory_queue.in_flight()) == ["new"]

    async def test_get_stats(self, admin, memory_queue):
        await memory_queue.enqueue("q-1", "j")
        await memory_queue.enqueue("q-2", "j")
        await memory_queue.enqueue("q-3", "j")
        await memory_queue.mark_in_flight("p-1", claimed_at=now_ms() - 1000)

        stats = await admin.get_stats()

        assert stats["queue_size"] == 3
        assert stats["processing_count"] == 1
        assert stats["max_retries"] == 3
        assert stats["retry_base_delay_ms"] == 5000
        assert stats["queue_utilization"] == 25.0
        assert stats["avg_processing_time_ms"] >= 1000
        assert stats["health"]["status"] == "healthy"
        assert len(stats["next_items"]) == 3

    async def test_get_stats_empty_queue(self, admin):
        stats = await admin.get_stats()

        assert stats["queue_utilization"] == 0.0
        assert stats["avg_processing_time_ms"] == 0.0


# ─────────────────────────────────────────────────────────────────────────────
# Reprocess
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.admin
class TestReprocessPlanning:

    @pytest.fixture
    def job(self):
        return make_job()

    @pytest.mark.parametrize("extraction,has_text,re_extract,re_process,force,mode", [
        (StageStatus.COMPLETED, True,  False, True,  False, WorkMode.REPROCESS),
        (StageStatus.COMPLETED, True,  True,  True,  False, WorkMode.REPROCESS),
        (StageStatus.COMPLETED, True,  True,  True,  True,  WorkMode.FORCE_FULL),
        (StageStatus.FAILED,    False, True,  True,  False, WorkMode.BOTH),
        (StageStatus.FAILED,    False, True,  False, False, WorkMode.EXTRACTION_ONLY),
        (StageStatus.COMPLETED, True,  True,  False, True,  WorkMode.EXTRACTION_ONLY),
        (StageStatus.COMPLETED, True,  True,  False, False, None),
        (StageStatus.FAILED,    False, False, True,  False, None),
        (StageStatus.COMPLETED, True,  False, False, False, None),
    ])
    def test_plan(self, job, extraction, has_text, re_extract, re_process, force, mode):
        file = make_file(job, extraction_status=extraction,
                         extracted_text="text" if has_text else None)

        plan = plan_reprocess(file, re_extract, re_process, force)

        assert plan.mode == mode
        assert plan.is_noop == (mode is None)
        if mode is None:
            assert plan.skip_reason

    def test_plan_flags(self, job):
        file = make_file(job, extraction_status=StageStatus.FAILED)

        plan = plan_reprocess(file, re_extract=True, re_process=True)

        assert plan.will_extract and plan.will_process
        assert plan.to_dict()["mode"] == "both"


@pytest.mark.unit
@pytest.mark.admin
class TestReprocessFiles:

    async def test_preview_has_no_side_effects(self, admin, seed_job, memory_queue, job_store):
        _, (file,) = seed_job(
            extraction_status=StageStatus.COMPLETED,
            processing_status=StageStatus.COMPLETED,
            extracted_text="text",
        )

        summary = await admin.reprocess_files([file.id], preview=True)

        assert summary.preview
        assert summary.plans[0].mode == WorkMode.REPROCESS
        assert summary.queued == []
        assert await memory_queue.size() == 0
        assert job_store.files[str(file.id)].processing_status == StageStatus.COMPLETED

    async def test_reprocess_resets_and_enqueues(self, admin, seed_job, memory_queue, job_store):
        _, (file,) = seed_job(
            extraction_status=StageStatus.COMPLETED,
            processing_status=StageStatus.FAILED,
            processing_error="old error",
            extracted_text="text",
        )

        summary = await admin.reprocess_files([file.id], re_extract=True, force_extraction=True)

        assert summary.queued == [str(file.id)]
        stored = job_store.files[str(file.id)]
        assert stored.extraction_status == StageStatus.PENDING
        assert stored.processing_status == StageStatus.PENDING
        assert stored.processing_error is None
        (item,) = await memory_queue.peek()
        assert item.mode == WorkMode.FORCE_FULL

    async def test_reprocess_skips_active_missing_and_noop(self, admin, seed_job, memory_queue):
        _, (active, empty) = seed_job(n_files=2)
        await memory_queue.mark_in_flight(str(active.id))
        missing = str(uuid.uuid4())

        summary = await admin.reprocess_files(
            [active.id, empty.id, missing], re_extract=False, re_process=True,
        )

        assert summary.queued == []
        assert set(summary.skipped) == {str(active.id), str(empty.id), missing}
        assert summary.skipped[missing] == "File not found"

    async def test_reprocess_skips_in_flight_file(self, admin, seed_job, memory_queue):
        _, (file,) = seed_job(extraction_status=StageStatus.COMPLETED, extracted_text="text")
        await memory_queue.mark_in_flight(str(file.id))

        summary = await admin.reprocess_files([file.id])

        assert summary.skipped[str(file.id)] == "Already queued or processing"
        assert summary.to_dict()["queued"] == []

    async def test_job_file_stats(self, admin, seed_job):
        job, _ = seed_job(n_files=3)

        stats = await admin.job_file_stats(job.id)

        assert stats.total == 3
        assert stats.pending == 3
