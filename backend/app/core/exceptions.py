"""
Error taxonomy for the job pipeline.

  PipelineError
    TransientItemError        retried with backoff until MAX_RETRIES
      ExtractionFailedError
      ProcessingFailedError
    PermanentItemError        never retried; the file is failed at once
      MissingRecordError
      InvalidJobConfigError

  NotFoundError              Job Store update against a missing id
  QueueAdminError            operator request rejected by the admin surface
    AlreadyQueuedError
    InvalidStateError

Anything else raised by a collaborator (httpx errors, provider SDK errors,
timeouts) is treated as transient by the Scheduler.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base error for a single work item's pipeline run."""

    #: "extraction" | "processing" — the stage whose status records the error
    stage: str = "extraction"

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        super().__init__(message)
        if stage is not None:
            self.stage = stage


class TransientItemError(PipelineError):
    """Failure that may succeed on a later attempt."""


class ExtractionFailedError(TransientItemError):
    """Extraction collaborator returned success=False."""
    stage = "extraction"


class ProcessingFailedError(TransientItemError):
    """Processing collaborator returned success=False."""
    stage = "processing"


class PermanentItemError(PipelineError):
    """Failure that will repeat identically on every attempt."""


class MissingRecordError(PermanentItemError):
    """The job or file vanished from the store while the item was queued."""


class InvalidJobConfigError(PermanentItemError):
    """Stored processing config or extraction schema cannot be parsed."""


class NotFoundError(LookupError):
    """Raised by the Job Store when an update targets a missing id."""

    def __init__(self, kind: str, record_id: str) -> None:
        super().__init__(f"{kind} not found: {record_id}")
        self.kind      = kind
        self.record_id = record_id


class QueueAdminError(Exception):
    """Operator request rejected by the queue admin surface."""


class AlreadyQueuedError(QueueAdminError):
    """File is already waiting in the queue or claimed by a worker."""


class InvalidStateError(QueueAdminError):
    """File is not in a state from which the request is accepted."""
