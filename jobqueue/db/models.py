"""
SQLAlchemy database models.
Defines the jobs table backing the durable queue store.
"""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, DateTime, Enum, Float, Index, Integer, String, TypeDecorator, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from jobqueue.clock import as_utc, utcnow
from jobqueue.constants import JobState


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime column.

    SQLite drops tzinfo on storage; values are normalized to UTC on the way in
    and tagged as UTC on the way out so both backends compare consistently.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        return as_utc(value)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        return as_utc(value)


JSONType = JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Job(Base):
    """
    Job model representing a unit of work in the queue.

    This is the authoritative source of truth for job state.
    All lifecycle transitions are conditional updates keyed on the current
    state (and claim token), which keeps at most one active claim per job.
    """

    __tablename__ = "jobs"

    # Primary key
    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
    )

    # Immutable description of the work
    queue_name: Mapped[str] = mapped_column(String(255), nullable=False)
    job_type: Mapped[str] = mapped_column(String(255), nullable=False)
    arguments: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    # Execution state
    state: Mapped[JobState] = mapped_column(
        Enum(JobState, name="job_state", create_constraint=True, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=JobState.PENDING,
    )
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_run_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    # Claim ownership
    worker_token: Mapped[str | None] = mapped_column(String(255), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Per-job overrides
    max_retries: Mapped[int | None] = mapped_column(Integer, nullable=True)
    timeout_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)

    # Outcome
    last_error: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    result: Mapped[Any] = mapped_column(JSONType, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        # Claim path: eligible pending jobs of a queue in FIFO order
        Index("ix_jobs_claim", "queue_name", "state", "next_run_at", "created_at"),
        # Stale in-flight recovery
        Index("ix_jobs_state_claimed_at", "state", "claimed_at"),
    )

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, queue={self.queue_name}, type={self.job_type}, "
            f"state={self.state}, attempts={self.attempt_count})"
        )
