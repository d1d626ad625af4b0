"""
Job Store boundary schemas — typed records handed to the worker.

Everything the worker reads from the database passes through these models
exactly once, at the Job Store read boundary:
  - processing_config JSON (possibly a JSON string) → ProcessingConfig
  - schema_data JSON (bare schema, wrapped schema or string) → ExtractionSchema
  - job / file rows → JobRecord / FileRecord

A row that fails validation surfaces as InvalidJobConfigError in the store,
which the Scheduler treats as a permanent (non-retried) failure.

Status event payloads published on the StatusSink live here as well so the
wire shape is defined in one place.
"""

from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# State machines
# ---------------------------------------------------------------------------

class StageStatus(str, Enum):
    """
    Per-file, per-stage status (extraction_status / processing_status).
    Transitions: pending → processing → completed | failed
                 processing → pending (retry with backoff)
    """
    PENDING     = "pending"
    PROCESSING  = "processing"
    COMPLETED   = "completed"
    FAILED      = "failed"


class JobStatus(str, Enum):
    """Maps to jobs.status — derived from the job's files."""
    QUEUED      = "queued"
    PROCESSING  = "processing"
    PARTIAL     = "partial"
    COMPLETED   = "completed"
    FAILED      = "failed"


class ExtractionMode(str, Enum):
    FULL_EXTRACTION = "full_extraction"
    TEXT_ONLY       = "text_only"      # skip the LLM processing stage


class Stage(str, Enum):
    EXTRACTION = "extraction"
    PROCESSING = "processing"


class ExtractionMethod(str, Enum):
    MINERU     = "mineru"
    DOCUMENTAI = "documentai"
    PADDLEOCR  = "paddleocr"


class ProcessingMethod(str, Enum):
    OPENAI = "openai"
    QWEN   = "qwen"


# ---------------------------------------------------------------------------
# Processing configuration (tagged, parsed once)
# ---------------------------------------------------------------------------

def _decode_json(value: Any) -> Any:
    """Stored JSON columns occasionally arrive double-encoded as strings."""
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


class ExtractionConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    method:  ExtractionMethod = ExtractionMethod.MINERU
    options: dict[str, Any]   = Field(default_factory=dict)


class ProcessingMethodConfig(BaseModel):
    model_config = ConfigDict(frozen=True, protected_namespaces=())

    method:  ProcessingMethod = ProcessingMethod.OPENAI
    model:   str              = "gpt-4o"
    options: dict[str, Any]   = Field(default_factory=dict)


class ProcessingConfig(BaseModel):
    """
    Which extraction service and which LLM a job uses.

    A job row with processing_config = NULL gets the defaults:
        extraction → mineru, {}
        processing → openai / gpt-4o, {}
    """
    model_config = ConfigDict(frozen=True)

    extraction: ExtractionConfig       = Field(default_factory=ExtractionConfig)
    processing: ProcessingMethodConfig = Field(default_factory=ProcessingMethodConfig)

    @field_validator("extraction", "processing", mode="before")
    @classmethod
    def _none_is_default(cls, v: Any) -> Any:
        return {} if v is None else v


class ExtractionSchema(BaseModel):
    """
    JSON Schema the processing stage fills in.

    Accepted stored shapes:
        {"type": "object", "properties": {...}}            bare schema
        {"name": "invoice", "schema": {"type": ...}}       wrapped schema
        either of the above as a JSON string
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name:        str            = "data_extraction"
    json_schema: dict[str, Any] = Field(..., alias="schema")

    @classmethod
    def from_stored(cls, value: Any) -> "ExtractionSchema":
        value = _decode_json(value)
        if not isinstance(value, dict) or not value:
            raise ValueError("extraction schema must be a non-empty JSON object")
        if isinstance(value.get("schema"), dict):
            return cls(name=value.get("name") or "data_extraction", schema=value["schema"])
        return cls(schema=value)


# ---------------------------------------------------------------------------
# Job Store records
# ---------------------------------------------------------------------------

class JobRecord(BaseModel):
    """Read-only view of a jobs row, with config already typed."""
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id:                UUID
    name:              str
    status:            JobStatus
    extraction_mode:   ExtractionMode   = ExtractionMode.FULL_EXTRACTION
    extraction_schema: ExtractionSchema = Field(..., validation_alias="schema_data")
    processing_config: ProcessingConfig = Field(default_factory=ProcessingConfig)
    organization_id:   UUID | None      = None
    user_id:           UUID | None      = None
    summary:           dict[str, Any] | None = None
    created_at:        datetime | None  = None
    updated_at:        datetime | None  = None

    @field_validator("extraction_schema", mode="before")
    @classmethod
    def _parse_schema(cls, v: Any) -> Any:
        if isinstance(v, ExtractionSchema):
            return v
        return ExtractionSchema.from_stored(v)

    @field_validator("processing_config", mode="before")
    @classmethod
    def _parse_config(cls, v: Any) -> Any:
        v = _decode_json(v)
        return {} if v is None else v

    @property
    def is_text_only(self) -> bool:
        return self.extraction_mode == ExtractionMode.TEXT_ONLY


class FileRecord(BaseModel):
    """Read-only view of a job_files row."""
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id:                UUID
    job_id:            UUID
    filename:          str
    size:              int            = 0
    s3_key:            str | None     = None
    file_hash:         str | None     = None
    extraction_status: StageStatus    = StageStatus.PENDING
    processing_status: StageStatus    = StageStatus.PENDING
    extracted_text:    str | None     = None
    extracted_tables:  list[Any] | None = None
    markdown:          str | None     = None
    pages:             list[Any] | None = None
    result:            dict[str, Any] | None = None
    processing_metadata: dict[str, Any] | None = None
    extraction_error:  str | None     = None
    processing_error:  str | None     = None
    extraction_time_seconds: float | None = None
    processing_time_seconds: float | None = None
    created_at:        datetime | None = None
    updated_at:        datetime | None = None
    processed_at:      datetime | None = None

    @property
    def has_extracted_content(self) -> bool:
        return bool(self.extracted_text or self.markdown)


# ---------------------------------------------------------------------------
# Status events — published on topic "job-<job_id>"
# ---------------------------------------------------------------------------

FILE_STATUS_EVENT = "file-status-update"
JOB_STATUS_EVENT  = "job-status-update"


def job_topic(job_id: UUID | str) -> str:
    return f"job-{job_id}"


class FileStatusEvent(BaseModel):
    """Payload of a file-status-update event."""
    job_id:            str
    file_id:           str
    filename:          str | None  = None
    extraction_status: StageStatus | None = None
    processing_status: StageStatus | None = None
    message:           str         = ""
    error:             str | None  = None
    retries:           int         = 0
    result:            dict[str, Any] | None = None


class JobStatusEvent(BaseModel):
    """Payload of a job-status-update event."""
    job_id:  str
    status:  JobStatus
    message: str = ""
