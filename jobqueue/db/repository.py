"""
Durable queue store.
Implements the claim/complete/fail protocol over the jobs table.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, Sequence
from uuid import UUID, uuid4

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.orm import aliased

from jobqueue.clock import Clock, utcnow
from jobqueue.constants import MAX_CLAIM_CONFLICT_RETRIES, SPAN_CLAIM_JOB, SPAN_ENQUEUE_JOB, JobState
from jobqueue.db.connection import create_session_factory, session_scope
from jobqueue.db.models import Job
from jobqueue.errors import ClaimConflict, EnqueueFailure, InvalidState, NotFound
from jobqueue.observability.tracing import get_tracer
from jobqueue.retry.policy import RetryPolicy
from jobqueue.types.job import ErrorDetail, FailureOutcome, JobRecord, JobSpec

logger = logging.getLogger(__name__)


def _as_timedelta(value: timedelta | float) -> timedelta:
    if isinstance(value, timedelta):
        return value
    return timedelta(seconds=value)


class JobStore:
    """
    Durable queue store backed by SQLAlchemy.

    Every operation runs in its own short transaction and touches records
    through conditional updates keyed on the current state:
    - enqueue inserts a pending record
    - claim_next moves one eligible pending record to in_flight
    - mark_done / mark_failed end a claim (failures consult the retry policy)
    - requeue_stale_inflight and promote_scheduled return records to pending

    On PostgreSQL candidate selection uses FOR UPDATE SKIP LOCKED and a lost
    race (conditional update matching no row) makes the claim re-select. Other
    backends select and transition in a single UPDATE statement.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        retry_policy: RetryPolicy | None = None,
        clock: Clock = utcnow,
    ):
        """
        Initialize the store.

        Args:
            engine: The async engine of the backing database.
            retry_policy: Policy consulted by mark_failed.
            clock: Source of the current UTC time.
        """
        self._engine = engine
        self._session_factory = create_session_factory(engine)
        self._skip_locked = engine.dialect.name == "postgresql"
        self.retry_policy = retry_policy or RetryPolicy()
        self._clock = clock

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession]:
        async with session_scope(self._session_factory) as session:
            yield session

    def now(self) -> datetime:
        return self._clock()

    async def enqueue(self, spec: JobSpec) -> UUID:
        """
        Durably persist a new pending job.

        next_run_at is spec.run_at when given, otherwise now + delay.

        Args:
            spec: The job specification.

        Returns:
            The new job id.

        Raises:
            EnqueueFailure: The store could not persist the job.
        """
        now = self.now()
        next_run_at = spec.run_at or now + timedelta(seconds=spec.delay_seconds)
        job = Job(
            id=uuid4(),
            queue_name=spec.queue_name,
            job_type=spec.job_type,
            arguments=list(spec.arguments),
            state=JobState.PENDING,
            attempt_count=0,
            next_run_at=next_run_at,
            max_retries=spec.max_retries,
            timeout_seconds=spec.timeout_seconds,
            created_at=now,
            updated_at=now,
        )

        with get_tracer().start_as_current_span(SPAN_ENQUEUE_JOB) as span:
            span.set_attribute("queue", spec.queue_name)
            span.set_attribute("job_type", spec.job_type)
            try:
                async with self._session() as session:
                    session.add(job)
            except (SQLAlchemyError, OSError) as e:
                logger.error(
                    "Failed to enqueue job",
                    extra={"queue": spec.queue_name, "job_type": spec.job_type, "error": str(e)},
                )
                raise EnqueueFailure(f"Could not enqueue {spec.job_type}: {e}") from e

        logger.info(
            "Enqueued job",
            extra={
                "job_id": str(job.id),
                "queue": spec.queue_name,
                "job_type": spec.job_type,
                "next_run_at": next_run_at.isoformat(),
            },
        )
        return job.id

    async def get_job(self, job_id: UUID) -> JobRecord | None:
        """
        Get a job by ID.

        Returns:
            The JobRecord or None if not found.
        """
        async with self._session() as session:
            job = await session.get(Job, job_id)
            return JobRecord.model_validate(job) if job is not None else None

    async def claim_next(self, queue_name: str, worker_token: str) -> JobRecord | None:
        """
        Atomically claim the oldest eligible pending job of a queue.

        Eligible means state pending and next_run_at <= now. Order is
        created_at, then id. The claimed record moves to in_flight, carries
        worker_token and claimed_at, and has attempt_count incremented.

        Args:
            queue_name: The queue to claim from.
            worker_token: Identifier of the claiming worker slot.

        Returns:
            The claimed JobRecord, or None when nothing is eligible.
        """
        with get_tracer().start_as_current_span(SPAN_CLAIM_JOB) as span:
            span.set_attribute("queue", queue_name)
            span.set_attribute("worker_token", worker_token)

            for _ in range(MAX_CLAIM_CONFLICT_RETRIES):
                try:
                    record = await self._try_claim(queue_name, worker_token)
                except ClaimConflict as e:
                    logger.debug(
                        "Claim conflict, retrying",
                        extra={"job_id": str(e.job_id), "worker_token": worker_token},
                    )
                    continue

                if record is not None:
                    span.set_attribute("job_id", str(record.id))
                    logger.info(
                        "Claimed job",
                        extra={
                            "job_id": str(record.id),
                            "queue": queue_name,
                            "worker_token": worker_token,
                            "attempt": record.attempt_count,
                        },
                    )
                return record

        # Every candidate was taken by someone else; the caller polls again.
        return None

    async def _try_claim(self, queue_name: str, worker_token: str) -> JobRecord | None:
        async with self._session() as session:
            now = self.now()
            eligible = aliased(Job)
            candidate = (
                select(eligible.id)
                .where(
                    eligible.queue_name == queue_name,
                    eligible.state == JobState.PENDING,
                    eligible.next_run_at <= now,
                )
                .order_by(eligible.created_at.asc(), eligible.id.asc())
                .limit(1)
            )

            if self._skip_locked:
                candidate = candidate.with_for_update(skip_locked=True)
                job_id = (await session.execute(candidate)).scalar_one_or_none()
                if job_id is None:
                    return None
                target = Job.id == job_id
            else:
                # Selection and transition in one statement: it runs under the
                # database write lock, so it always sees the latest claims.
                job_id = None
                target = Job.id == candidate.scalar_subquery()

            stmt = (
                update(Job)
                .where(target, Job.state == JobState.PENDING)
                .values(
                    state=JobState.IN_FLIGHT,
                    worker_token=worker_token,
                    claimed_at=now,
                    attempt_count=Job.attempt_count + 1,
                    updated_at=now,
                )
                .returning(Job)
                .execution_options(synchronize_session=False)
            )
            job = (await session.execute(stmt)).scalar_one_or_none()
            if job is None:
                if job_id is not None:
                    raise ClaimConflict(job_id)
                return None
            return JobRecord.model_validate(job)

    async def mark_done(
        self,
        job_id: UUID,
        worker_token: str | None = None,
        result: Any = None,
    ) -> JobRecord:
        """
        Transition an in-flight job to done.

        Args:
            job_id: The job UUID.
            worker_token: When given, the claim must belong to this token.
            result: Optional JSON-serializable handler output.

        Returns:
            The updated JobRecord.

        Raises:
            NotFound: The job does not exist.
            InvalidState: The job is not in flight (or claimed by another token).
        """
        async with self._session() as session:
            now = self.now()
            stmt = (
                update(Job)
                .where(*self._claim_filter(job_id, worker_token))
                .values(
                    state=JobState.DONE,
                    worker_token=None,
                    claimed_at=None,
                    completed_at=now,
                    updated_at=now,
                    result=result,
                )
                .returning(Job)
                .execution_options(synchronize_session=False)
            )
            job = (await session.execute(stmt)).scalar_one_or_none()
            if job is None:
                await self._raise_transition_error(session, job_id, "mark_done")

            logger.info(
                "Job completed successfully",
                extra={"job_id": str(job_id), "attempt": job.attempt_count},
            )
            return JobRecord.model_validate(job)

    async def mark_failed(
        self,
        job_id: UUID,
        error: ErrorDetail,
        worker_token: str | None = None,
    ) -> FailureOutcome:
        """
        Record a failed execution. Either schedule a retry or move to dead.

        The retry policy sees the job's attempt_count and per-job max_retries;
        its decision is persisted in the same transaction, conditional on the
        job still being in flight with the attempt count that was read.

        Args:
            job_id: The job UUID.
            error: Structured failure detail, stored as last_error.
            worker_token: When given, the claim must belong to this token.

        Returns:
            FailureOutcome with the new state and next_run_at.

        Raises:
            NotFound: The job does not exist.
            InvalidState: The job is not in flight (or claimed by another token).
        """
        async with self._session() as session:
            current = select(Job).where(Job.id == job_id)
            if self._skip_locked:
                current = current.with_for_update()
            job = (await session.execute(current)).scalar_one_or_none()
            if job is None:
                raise NotFound(job_id)
            if job.state != JobState.IN_FLIGHT or (
                worker_token is not None and job.worker_token != worker_token
            ):
                raise InvalidState(job_id, job.state, "mark_failed")

            now = self.now()
            attempt_count = job.attempt_count
            decision = self.retry_policy.decide(
                attempt_count,
                error,
                max_retries=job.max_retries,
                now=now,
            )

            values: dict[str, Any] = {
                "state": decision.state,
                "last_error": error.model_dump(mode="json"),
                "worker_token": None,
                "claimed_at": None,
                "updated_at": now,
            }
            if decision.will_retry:
                values["next_run_at"] = decision.next_run_at
            else:
                values["completed_at"] = now

            stmt = (
                update(Job)
                .where(
                    *self._claim_filter(job_id, worker_token),
                    Job.attempt_count == attempt_count,
                )
                .values(**values)
                .returning(Job.id)
                .execution_options(synchronize_session=False)
            )
            if (await session.execute(stmt)).scalar_one_or_none() is None:
                await self._raise_transition_error(session, job_id, "mark_failed")

        if decision.will_retry:
            logger.info(
                "Job scheduled for retry",
                extra={
                    "job_id": str(job_id),
                    "attempt": attempt_count,
                    "next_run_at": decision.next_run_at.isoformat(),
                    "error_kind": error.kind,
                },
            )
        else:
            logger.warning(
                f"Job moved to dead set after {attempt_count} attempts",
                extra={"job_id": str(job_id), "error_kind": error.kind, "error": error.message},
            )

        return FailureOutcome(
            job_id=job_id,
            state=decision.state,
            attempt_count=attempt_count,
            next_run_at=decision.next_run_at,
        )

    async def requeue_stale_inflight(self, max_age: timedelta | float) -> int:
        """
        Return in-flight jobs whose claim is older than max_age to pending.

        The worker holding such a claim is presumed crashed. attempt_count is
        left as is; the claim that counted the attempt already happened. The
        update is conditional on in_flight, so one crash resets a job once.

        Args:
            max_age: Claim age threshold (timedelta or seconds).

        Returns:
            Number of recovered jobs.
        """
        now = self.now()
        cutoff = now - _as_timedelta(max_age)

        async with self._session() as session:
            stmt = (
                update(Job)
                .where(
                    Job.state == JobState.IN_FLIGHT,
                    Job.claimed_at < cutoff,
                )
                .values(
                    state=JobState.PENDING,
                    worker_token=None,
                    claimed_at=None,
                    updated_at=now,
                )
                .returning(Job.id)
                .execution_options(synchronize_session=False)
            )
            recovered = (await session.execute(stmt)).scalars().all()

        if recovered:
            logger.warning(
                f"Requeued {len(recovered)} stale in-flight jobs",
                extra={"job_ids": [str(job_id) for job_id in recovered]},
            )
        return len(recovered)

    async def promote_scheduled(self) -> int:
        """
        Move retry-scheduled jobs whose next_run_at has elapsed to pending.

        Returns:
            Number of promoted jobs.
        """
        now = self.now()
        async with self._session() as session:
            stmt = (
                update(Job)
                .where(
                    Job.state == JobState.RETRY_SCHEDULED,
                    Job.next_run_at <= now,
                )
                .values(state=JobState.PENDING, updated_at=now)
                .returning(Job.id)
                .execution_options(synchronize_session=False)
            )
            promoted = (await session.execute(stmt)).scalars().all()

        if promoted:
            logger.debug(f"Promoted {len(promoted)} scheduled retries")
        return len(promoted)

    async def retry_dead(self, job_id: UUID) -> JobRecord:
        """
        Revive a job from the dead set.

        The job becomes pending and immediately eligible. attempt_count is
        kept, so a further failure sends it straight back to dead unless its
        limit allows more attempts.

        Raises:
            NotFound: The job does not exist.
            InvalidState: The job is not dead.
        """
        async with self._session() as session:
            now = self.now()
            stmt = (
                update(Job)
                .where(Job.id == job_id, Job.state == JobState.DEAD)
                .values(
                    state=JobState.PENDING,
                    next_run_at=now,
                    completed_at=None,
                    updated_at=now,
                )
                .returning(Job)
                .execution_options(synchronize_session=False)
            )
            job = (await session.execute(stmt)).scalar_one_or_none()
            if job is None:
                await self._raise_transition_error(session, job_id, "retry_dead")

            logger.info("Job retried from dead set", extra={"job_id": str(job_id)})
            return JobRecord.model_validate(job)

    async def purge_finished(self, older_than: timedelta | float) -> int:
        """
        Delete done jobs completed before now - older_than.
        Dead jobs are kept for inspection.

        Returns:
            Number of deleted jobs.
        """
        cutoff = self.now() - _as_timedelta(older_than)
        async with self._session() as session:
            stmt = (
                delete(Job)
                .where(Job.state == JobState.DONE, Job.completed_at < cutoff)
                .returning(Job.id)
                .execution_options(synchronize_session=False)
            )
            purged = (await session.execute(stmt)).scalars().all()

        if purged:
            logger.info(f"Purged {len(purged)} finished jobs")
        return len(purged)

    async def list_jobs(
        self,
        queue_name: str | None = None,
        state: JobState | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Sequence[JobRecord]:
        """
        List jobs in FIFO order with optional filtering.

        Args:
            queue_name: Optional queue filter.
            state: Optional state filter.
            limit: Maximum number of jobs to return.
            offset: Offset for pagination.
        """
        filters = []
        if queue_name is not None:
            filters.append(Job.queue_name == queue_name)
        if state is not None:
            filters.append(Job.state == state)

        stmt = (
            select(Job)
            .where(*filters)
            .order_by(Job.created_at.asc(), Job.id.asc())
            .limit(limit)
            .offset(offset)
        )
        async with self._session() as session:
            jobs = (await session.execute(stmt)).scalars().all()
            return [JobRecord.model_validate(job) for job in jobs]

    async def count_by_state(self, queue_name: str | None = None) -> dict[str, int]:
        """
        Get job counts by state.

        Returns:
            Dictionary of state -> count, zero for absent states.
        """
        stmt = select(Job.state, func.count()).group_by(Job.state)
        if queue_name is not None:
            stmt = stmt.where(Job.queue_name == queue_name)

        async with self._session() as session:
            rows = (await session.execute(stmt)).all()

        counts = {state.value: 0 for state in JobState}
        counts.update({state.value: count for state, count in rows})
        return counts

    async def queue_depth(self, queue_name: str) -> int:
        """Number of pending jobs in a queue, eligible or delayed."""
        stmt = (
            select(func.count())
            .select_from(Job)
            .where(Job.queue_name == queue_name, Job.state == JobState.PENDING)
        )
        async with self._session() as session:
            return (await session.execute(stmt)).scalar() or 0

    @staticmethod
    def _claim_filter(job_id: UUID, worker_token: str | None) -> list[Any]:
        filters = [Job.id == job_id, Job.state == JobState.IN_FLIGHT]
        if worker_token is not None:
            filters.append(Job.worker_token == worker_token)
        return filters

    @staticmethod
    async def _raise_transition_error(session: AsyncSession, job_id: UUID, operation: str) -> None:
        job = await session.get(Job, job_id)
        if job is None:
            raise NotFound(job_id)
        raise InvalidState(job_id, job.state, operation)
