"""
SQLAlchemy Job Store

Each call opens its own short transaction (get_db_session) so the worker
never holds a connection across a slow extraction or LLM call.

Idempotency:
  Updates compare every target column with the stored value and only touch
  the ones that differ. A repeated identical update therefore issues no
  UPDATE at all, leaving updated_at / processed_at exactly as they were.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import InvalidJobConfigError, NotFoundError
from app.db.session import AsyncSessionLocal, get_db_session
from app.models.jobs import Job, JobFile
from app.schemas.jobs import FileRecord, JobRecord, JobStatus, StageStatus
from app.store.base import JobStore

logger = logging.getLogger(__name__)

_TERMINAL = {StageStatus.COMPLETED.value, StageStatus.FAILED.value}


def _as_uuid(value: UUID | str) -> UUID | None:
    if isinstance(value, UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _apply(row: Any, changes: dict[str, Any]) -> list[str]:
    """Set only the attributes whose value differs; return their names."""
    changed = []
    for attr, value in changes.items():
        if getattr(row, attr) != value:
            setattr(row, attr, value)
            changed.append(attr)
    return changed


class SqlJobStore(JobStore):

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or AsyncSessionLocal

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    def _to_job_record(row: Job) -> JobRecord:
        try:
            return JobRecord.model_validate(row)
        except ValidationError as exc:
            raise InvalidJobConfigError(
                f"Job {row.id} has an invalid schema or processing config: {exc}"
            ) from exc

    async def get_job(self, job_id: UUID | str) -> JobRecord | None:
        uid = _as_uuid(job_id)
        if uid is None:
            return None
        async with get_db_session(self._session_factory) as session:
            row = await session.get(Job, uid)
            return self._to_job_record(row) if row is not None else None

    async def get_file(self, file_id: UUID | str) -> FileRecord | None:
        uid = _as_uuid(file_id)
        if uid is None:
            return None
        async with get_db_session(self._session_factory) as session:
            row = await session.get(JobFile, uid)
            return FileRecord.model_validate(row) if row is not None else None

    async def list_job_files(self, job_id: UUID | str) -> list[FileRecord]:
        uid = _as_uuid(job_id)
        if uid is None:
            return []
        async with get_db_session(self._session_factory) as session:
            rows = (
                await session.execute(
                    select(JobFile)
                    .where(JobFile.job_id == uid)
                    .order_by(JobFile.created_at, JobFile.id)
                )
            ).scalars().all()
            return [FileRecord.model_validate(r) for r in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def _update_file(
        self,
        file_id:    UUID | str,
        status_col: str,
        status:     StageStatus,
        changes:    dict[str, Any],
    ) -> FileRecord:
        uid = _as_uuid(file_id)
        if uid is None:
            raise NotFoundError("file", str(file_id))

        async with get_db_session(self._session_factory) as session:
            row = await session.get(JobFile, uid)
            if row is None:
                raise NotFoundError("file", str(file_id))

            previous = getattr(row, status_col)
            changed  = _apply(row, {status_col: status.value, **changes})

            if previous != status.value and status.value in _TERMINAL:
                row.processed_at = datetime.now(timezone.utc)

            if changed:
                await session.flush()
                await session.refresh(row)
                logger.debug(
                    "File updated | file=%s %s=%s fields=%s",
                    file_id, status_col, status.value, ",".join(changed),
                )
            return FileRecord.model_validate(row)

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
        changes: dict[str, Any] = {"extraction_error": error}
        artifacts = {
            "extracted_text":          text,
            "extracted_tables":        tables,
            "markdown":                markdown,
            "pages":                   pages,
            "extraction_time_seconds": elapsed_seconds,
        }
        changes.update({k: v for k, v in artifacts.items() if v is not None})
        return await self._update_file(file_id, "extraction_status", StageStatus(status), changes)

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
        changes: dict[str, Any] = {"processing_error": error}
        artifacts = {
            "result":                  result,
            "processing_metadata":     metadata,
            "processing_time_seconds": elapsed_seconds,
        }
        changes.update({k: v for k, v in artifacts.items() if v is not None})
        return await self._update_file(file_id, "processing_status", StageStatus(status), changes)

    async def update_job_status(self, job_id: UUID | str, status: JobStatus) -> JobRecord:
        uid = _as_uuid(job_id)
        if uid is None:
            raise NotFoundError("job", str(job_id))

        async with get_db_session(self._session_factory) as session:
            row = await session.get(Job, uid)
            if row is None:
                raise NotFoundError("job", str(job_id))
            if _apply(row, {"status": JobStatus(status).value}):
                await session.flush()
                await session.refresh(row)
                logger.info("Job status | job=%s status=%s", job_id, row.status)
            return self._to_job_record(row)
