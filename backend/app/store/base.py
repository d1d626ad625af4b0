"""
Job Store — Abstract Base

The narrow read/write contract the worker needs from the durable store of
jobs and files. Records come back already typed (JobRecord / FileRecord);
config parsing happens inside the implementation, once per read.

Semantics shared by every implementation:
  - get_* return None for a missing id.
  - update_* raise NotFoundError for a missing id.
  - Updates are idempotent keyed upserts: applying the same update twice
    leaves the row exactly as the first call left it.
  - Artifact arguments left as None are not written; error arguments are
    always written (None clears a previous error).
  - processed_at is stamped when a stage transitions into completed/failed.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any
from uuid import UUID

from app.schemas.jobs import FileRecord, JobRecord, JobStatus, StageStatus


class JobStore(ABC):

    @abstractmethod
    async def get_job(self, job_id: UUID | str) -> JobRecord | None:
        """Load a job with its processing config and schema parsed."""

    @abstractmethod
    async def get_file(self, file_id: UUID | str) -> FileRecord | None:
        """Load one file."""

    @abstractmethod
    async def list_job_files(self, job_id: UUID | str) -> list[FileRecord]:
        """All files of a job, oldest first."""

    @abstractmethod
    async def update_extraction_status(
        self,
        file_id:         UUID | str,
        status:          StageStatus,
        *,
        text:            str | None = None,
        tables:          list[Any] | None = None,
        markdown:        str | None = None,
        pages:           list[Any] | None = None,
        error:           str | None = None,
        elapsed_seconds: float | None = None,
    ) -> FileRecord:
        """Move the extraction state machine and persist its artifacts."""

    @abstractmethod
    async def update_processing_status(
        self,
        file_id:         UUID | str,
        status:          StageStatus,
        *,
        result:          dict[str, Any] | None = None,
        error:           str | None = None,
        metadata:        dict[str, Any] | None = None,
        elapsed_seconds: float | None = None,
    ) -> FileRecord:
        """Move the processing state machine and persist its artifacts."""

    @abstractmethod
    async def update_job_status(self, job_id: UUID | str, status: JobStatus) -> JobRecord:
        """Overwrite the job's denormalised status."""
