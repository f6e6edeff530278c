"""
Job-related type definitions for internal use.
"""

import json
import traceback
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from jobqueue.clock import utcnow
from jobqueue.constants import DEFAULT_QUEUE, ErrorKind, JobState


class ErrorDetail(BaseModel):
    """
    Structured description of a failed execution.
    Persisted as the job's last_error.
    """

    kind: ErrorKind
    message: str
    error_class: str | None = None
    traceback: str | None = None
    occurred_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_exception(cls, exc: BaseException, kind: ErrorKind) -> "ErrorDetail":
        """Build an error detail from a caught exception."""
        return cls(
            kind=kind,
            message=str(exc) or exc.__class__.__name__,
            error_class=f"{exc.__class__.__module__}.{exc.__class__.__qualname__}",
            traceback="".join(
                traceback.format_exception(type(exc), exc, exc.__traceback__)
            ),
        )


class JobSpec(BaseModel):
    """
    Producer-side description of a job to enqueue.
    """

    queue_name: str = DEFAULT_QUEUE
    job_type: str
    arguments: list[Any] = Field(default_factory=list)
    delay_seconds: float = Field(default=0.0, ge=0)
    run_at: datetime | None = None
    max_retries: int | None = Field(default=None, ge=0)
    timeout_seconds: float | None = Field(default=None, gt=0)

    @field_validator("queue_name", "job_type")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value

    @field_validator("arguments")
    @classmethod
    def _json_serializable(cls, value: list[Any]) -> list[Any]:
        try:
            json.dumps(value)
        except (TypeError, ValueError) as e:
            raise ValueError(f"arguments must be JSON serializable: {e}") from e
        return value


class JobRecord(BaseModel):
    """
    Snapshot of a persisted job.
    Returned by the store; detached from any database session.
    """

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: UUID
    queue_name: str
    job_type: str
    arguments: list[Any]
    state: JobState
    attempt_count: int
    next_run_at: datetime
    created_at: datetime
    last_error: ErrorDetail | None = None
    worker_token: str | None = None
    claimed_at: datetime | None = None
    max_retries: int | None = None
    timeout_seconds: float | None = None
    completed_at: datetime | None = None
    result: Any = None


class JobResult(BaseModel):
    """
    Result of job execution.
    Returned by job handlers after processing.
    """

    success: bool
    output: Any = None
    error: ErrorDetail | None = None
    duration_ms: float | None = None

    @field_validator("error", mode="before")
    @classmethod
    def _coerce_message(cls, value: Any) -> Any:
        if isinstance(value, str):
            return ErrorDetail(kind=ErrorKind.HANDLER_ERROR, message=value)
        return value

    @classmethod
    def ok(cls, output: Any = None) -> "JobResult":
        return cls(success=True, output=output)

    @classmethod
    def failure(cls, message: str, kind: ErrorKind = ErrorKind.HANDLER_ERROR) -> "JobResult":
        return cls(success=False, error=ErrorDetail(kind=kind, message=message))


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.
    Contains job metadata and the arguments for the handler.
    """

    job_id: UUID
    queue_name: str
    job_type: str
    arguments: list[Any]
    attempt: int
    worker_token: str
    enqueued_at: datetime

    @property
    def is_retry(self) -> bool:
        """Check if an earlier attempt already ran."""
        return self.attempt > 1

    @classmethod
    def from_record(cls, record: JobRecord, worker_token: str) -> "JobContext":
        return cls(
            job_id=record.id,
            queue_name=record.queue_name,
            job_type=record.job_type,
            arguments=list(record.arguments),
            attempt=record.attempt_count,
            worker_token=worker_token,
            enqueued_at=record.created_at,
        )


@dataclass(frozen=True)
class FailureOutcome:
    """
    Persisted result of mark_failed.
    """

    job_id: UUID
    state: JobState
    attempt_count: int
    next_run_at: datetime | None = None

    @property
    def will_retry(self) -> bool:
        return self.state == JobState.RETRY_SCHEDULED


@dataclass(frozen=True)
class SweepResult:
    """Counts from one maintenance pass over the store."""

    promoted: int = 0
    requeued: int = 0
