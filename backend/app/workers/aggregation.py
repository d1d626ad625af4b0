"""
Job status aggregation.

A job's status is a pure function of its files' stage statuses:

    completed   every file's processing_status is completed
    partial     at least one completed, but not all
    failed      none completed and at least one file has a failed stage
    processing  otherwise (work still outstanding)

Recomputed after each file reaches a terminal state. The write is advisory:
two workers finishing the last two files at once both compute the same
answer, so no locking is needed.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from app.schemas.jobs import FileRecord, JobStatus, StageStatus


def _file_failed(f: FileRecord) -> bool:
    return StageStatus.FAILED in (f.extraction_status, f.processing_status)


def aggregate_job_status(files: Iterable[FileRecord]) -> JobStatus:
    files = list(files)
    completed = sum(1 for f in files if f.processing_status == StageStatus.COMPLETED)

    if files and completed == len(files):
        return JobStatus.COMPLETED
    if completed > 0:
        return JobStatus.PARTIAL
    if any(_file_failed(f) for f in files):
        return JobStatus.FAILED
    return JobStatus.PROCESSING


@dataclass(frozen=True)
class JobFileStats:
    total:      int
    processed:  int     # processing completed
    processing: int     # either stage in progress
    pending:    int     # nothing started yet
    failed:     int     # either stage failed

    def to_dict(self) -> dict[str, int]:
        return {
            "total":      self.total,
            "processed":  self.processed,
            "processing": self.processing,
            "pending":    self.pending,
            "failed":     self.failed,
        }


def job_file_stats(files: Iterable[FileRecord]) -> JobFileStats:
    files = list(files)
    return JobFileStats(
        total=len(files),
        processed=sum(1 for f in files if f.processing_status == StageStatus.COMPLETED),
        processing=sum(
            1 for f in files
            if StageStatus.PROCESSING in (f.extraction_status, f.processing_status)
        ),
        pending=sum(
            1 for f in files
            if f.extraction_status == StageStatus.PENDING
            and f.processing_status == StageStatus.PENDING
        ),
        failed=sum(1 for f in files if _file_failed(f)),
    )
