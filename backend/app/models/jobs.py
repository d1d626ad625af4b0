"""
SQLAlchemy ORM Models — Jobs & Job Files

These models back the Job Store the worker reads and writes.
Using SQLAlchemy 2.x mapped classes for full async support.

JSON columns are JSONB on PostgreSQL and plain JSON elsewhere, so the same
models run on the sqlite database used by the integration tests.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

JSONType = JSON().with_variant(JSONB(), "postgresql")


# ---------------------------------------------------------------------------
# Declarative base — shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Job model — jobs
# ---------------------------------------------------------------------------

class Job(Base):
    """
    One user-submitted batch of files sharing a schema and processing config.

    State machine (status column):
        queued     — files stored, no worker has claimed any of them yet
        processing — at least one file claimed, outcome still open
        partial    — some but not all files completed processing
        completed  — every file completed processing
        failed     — no file completed and at least one failed

    Status is derived from the files; see app.workers.aggregation.
    """

    __tablename__ = "jobs"
    __table_args__ = (
        CheckConstraint(
            "status IN ('queued', 'processing', 'partial', 'completed', 'failed')",
            name="jobs_status_check",
        ),
        CheckConstraint(
            "extraction_mode IN ('full_extraction', 'text_only')",
            name="jobs_extraction_mode_check",
        ),
        Index("idx_jobs_status",     "status"),
        Index("idx_jobs_created_at", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    name: Mapped[str]   = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="queued",
        server_default="queued",
    )

    # JSON Schema (optionally wrapped as {"name": ..., "schema": ...})
    schema_data: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)

    extraction_mode: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="full_extraction",
        server_default="full_extraction",
    )
    processing_config: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONType,
        nullable=True,
        comment="{extraction: {method, options}, processing: {method, model, options}}",
    )
    summary: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    # Ownership — rows live in tables owned by the API service
    organization_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    user_id: Mapped[Optional[uuid.UUID]]         = mapped_column(Uuid, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    files: Mapped[list["JobFile"]] = relationship(
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="JobFile.created_at",
    )

    def __repr__(self) -> str:
        return f"<Job id={self.id} status={self.status} name={self.name!r}>"


# ---------------------------------------------------------------------------
# JobFile model — job_files
# ---------------------------------------------------------------------------

_STAGE_VALUES = "('pending', 'processing', 'completed', 'failed')"


class JobFile(Base):
    """
    One uploaded document inside a Job.

    Two independent state machines, one per pipeline stage:
        extraction_status  — OCR / layout extraction into text + markdown
        processing_status  — schema-guided structured extraction via LLM

    Each runs pending → processing → completed | failed. processed_at is
    stamped whenever either stage lands in a terminal state.
    """

    __tablename__ = "job_files"
    __table_args__ = (
        CheckConstraint(
            f"extraction_status IN {_STAGE_VALUES}",
            name="job_files_extraction_status_check",
        ),
        CheckConstraint(
            f"processing_status IN {_STAGE_VALUES}",
            name="job_files_processing_status_check",
        ),
        Index("idx_job_files_job_id",            "job_id"),
        Index("idx_job_files_extraction_status", "extraction_status"),
        Index("idx_job_files_processing_status", "processing_status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("jobs.id", ondelete="CASCADE"),
        nullable=False,
    )

    filename: Mapped[str]            = mapped_column(String(255), nullable=False)
    size: Mapped[int]                = mapped_column(BigInteger, nullable=False, default=0)
    s3_key: Mapped[Optional[str]]    = mapped_column(String(500), nullable=True)
    file_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Stage state machines
    extraction_status: Mapped[str] = mapped_column(
        String(50), nullable=False, default="pending", server_default="pending",
    )
    processing_status: Mapped[str] = mapped_column(
        String(50), nullable=False, default="pending", server_default="pending",
    )

    # Extraction artifacts
    extracted_text: Mapped[Optional[str]]         = mapped_column(Text, nullable=True)
    extracted_tables: Mapped[Optional[list[Any]]] = mapped_column(JSONType, nullable=True)
    markdown: Mapped[Optional[str]]               = mapped_column(Text, nullable=True)
    pages: Mapped[Optional[list[Any]]]            = mapped_column(JSONType, nullable=True)

    # Processing artifacts
    result: Mapped[Optional[dict[str, Any]]]              = mapped_column(JSONType, nullable=True)
    processing_metadata: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    extraction_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    processing_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    extraction_time_seconds: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    processing_time_seconds: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    job: Mapped[Job] = relationship(back_populates="files")

    def __repr__(self) -> str:
        return (
            f"<JobFile id={self.id} job={self.job_id} file={self.filename!r} "
            f"extraction={self.extraction_status} processing={self.processing_status}>"
        )
