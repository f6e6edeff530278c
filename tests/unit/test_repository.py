"""
Unit tests for the durable queue store.
"""

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncEngine

from jobqueue.config import Settings
from jobqueue.constants import MAX_BACKOFF_SECONDS, ErrorKind, JobState
from jobqueue.db import Job, JobStore, close_db, get_engine
from jobqueue.errors import EnqueueFailure, InvalidState, NotFound
from jobqueue.retry.policy import RetryPolicy
from jobqueue.types.job import ErrorDetail, JobSpec


def _error(message: str = "boom") -> ErrorDetail:
    return ErrorDetail(kind=ErrorKind.HANDLER_ERROR, message=message)


class TestEnqueue:
    """Tests for JobStore.enqueue."""

    async def test_enqueue_creates_pending_job(self, store: JobStore):
        """Test a new job starts pending with no attempts."""
        job_id = await store.enqueue(
            JobSpec(queue_name="default", job_type="echo", arguments=["x", 1])
        )

        job = await store.get_job(job_id)

        assert job is not None
        assert job.state == JobState.PENDING
        assert job.attempt_count == 0
        assert job.queue_name == "default"
        assert job.job_type == "echo"
        assert job.arguments == ["x", 1]
        assert job.next_run_at <= store.now()
        assert job.last_error is None
        assert job.worker_token is None

    async def test_enqueue_with_delay(self, store: JobStore):
        """Test delayed jobs get a future next_run_at."""
        job_id = await store.enqueue(
            JobSpec(job_type="echo", delay_seconds=30)
        )

        job = await store.get_job(job_id)

        assert job.next_run_at > store.now() + timedelta(seconds=29)

    async def test_get_job_not_found(self, store: JobStore):
        """Test getting a non-existent job."""
        assert await store.get_job(uuid4()) is None

    async def test_enqueue_store_unreachable(self, test_settings: Settings):
        """Test store errors surface as EnqueueFailure."""
        settings = test_settings.model_copy(
            update={"database_url": "sqlite+aiosqlite:////nonexistent-dir/jobs.db"}
        )
        engine = get_engine(settings)
        try:
            store = JobStore(engine)
            with pytest.raises(EnqueueFailure):
                await store.enqueue(JobSpec(job_type="echo"))
        finally:
            await close_db(engine)


class TestClaim:
    """Tests for JobStore.claim_next."""

    async def test_claim_next_success(self, store: JobStore):
        """Test claiming stamps the token and counts the attempt."""
        job_id = await store.enqueue(JobSpec(job_type="echo"))

        record = await store.claim_next("default", "worker-1:0")

        assert record is not None
        assert record.id == job_id
        assert record.state == JobState.IN_FLIGHT
        assert record.worker_token == "worker-1:0"
        assert record.attempt_count == 1
        assert record.claimed_at is not None

    async def test_claim_next_empty_queue(self, store: JobStore):
        """Test an empty queue returns None rather than raising."""
        assert await store.claim_next("default", "worker-1:0") is None

    async def test_claim_next_other_queue_ignored(self, store: JobStore):
        """Test claims only see their own queue."""
        await store.enqueue(JobSpec(queue_name="mailers", job_type="echo"))

        assert await store.claim_next("default", "worker-1:0") is None
        assert await store.claim_next("mailers", "worker-1:0") is not None

    async def test_claim_fifo_order(self, store: JobStore):
        """Test jobs are claimed in creation order."""
        ids = [await store.enqueue(JobSpec(job_type="echo", arguments=[i])) for i in range(3)]

        claimed = [(await store.claim_next("default", "w:0")).id for _ in range(3)]

        assert claimed == ids

    async def test_delayed_job_not_claimable_early(self, store: JobStore, clock):
        """Test a job enqueued with delay D is not claimed before now + D."""
        job_id = await store.enqueue(JobSpec(job_type="echo", delay_seconds=60))

        assert await store.claim_next("default", "w:0") is None

        clock.advance(59)
        assert await store.claim_next("default", "w:0") is None

        clock.advance(2)
        record = await store.claim_next("default", "w:0")
        assert record is not None
        assert record.id == job_id

    async def test_concurrent_claims_are_unique(self, store: JobStore):
        """Test no two concurrent claims return the same job."""
        for i in range(10):
            await store.enqueue(JobSpec(job_type="echo", arguments=[i]))

        results = await asyncio.gather(
            *(store.claim_next("default", f"worker:{i}") for i in range(20))
        )

        claimed = [r.id for r in results if r is not None]
        assert len(claimed) == 10
        assert len(set(claimed)) == 10

    async def test_in_flight_job_not_claimed_twice(self, store: JobStore):
        """Test a claimed job is invisible to other claimers."""
        await store.enqueue(JobSpec(job_type="echo"))

        first = await store.claim_next("default", "w:0")
        second = await store.claim_next("default", "w:1")

        assert first is not None
        assert second is None


class TestMarkDone:
    """Tests for JobStore.mark_done."""

    async def test_mark_done_success(self, store: JobStore):
        """Test successful completion."""
        job_id = await store.enqueue(JobSpec(job_type="echo"))
        await store.claim_next("default", "w:0")

        done = await store.mark_done(job_id, worker_token="w:0", result={"output": "ok"})

        assert done.state == JobState.DONE
        assert done.result == {"output": "ok"}
        assert done.completed_at is not None
        assert done.worker_token is None

    async def test_mark_done_not_found(self, store: JobStore):
        """Test completing an unknown job."""
        with pytest.raises(NotFound):
            await store.mark_done(uuid4())

    async def test_mark_done_requires_in_flight(self, store: JobStore):
        """Test completing a pending job is a contract violation."""
        job_id = await store.enqueue(JobSpec(job_type="echo"))

        with pytest.raises(InvalidState) as exc_info:
            await store.mark_done(job_id)

        assert exc_info.value.state == JobState.PENDING

    async def test_mark_done_wrong_token(self, store: JobStore):
        """Test a slot cannot complete a claim it does not hold."""
        job_id = await store.enqueue(JobSpec(job_type="echo"))
        await store.claim_next("default", "w:0")

        with pytest.raises(InvalidState):
            await store.mark_done(job_id, worker_token="w:1")

        job = await store.get_job(job_id)
        assert job.state == JobState.IN_FLIGHT

    async def test_done_is_terminal(self, store: JobStore):
        """Test a done job is never claimed again."""
        job_id = await store.enqueue(JobSpec(job_type="echo"))
        await store.claim_next("default", "w:0")
        await store.mark_done(job_id)

        assert await store.claim_next("default", "w:0") is None
        with pytest.raises(InvalidState):
            await store.mark_done(job_id)


class TestMarkFailed:
    """Tests for JobStore.mark_failed."""

    async def test_fail_job_with_retry(self, store: JobStore):
        """Test failure with retries left schedules a retry."""
        job_id = await store.enqueue(JobSpec(job_type="echo"))
        await store.claim_next("default", "w:0")

        outcome = await store.mark_failed(job_id, _error("Test error"), worker_token="w:0")

        assert outcome.state == JobState.RETRY_SCHEDULED
        assert outcome.will_retry is True
        assert outcome.attempt_count == 1
        assert outcome.next_run_at is not None

        job = await store.get_job(job_id)
        assert job.state == JobState.RETRY_SCHEDULED
        assert job.last_error.message == "Test error"
        assert job.last_error.kind == ErrorKind.HANDLER_ERROR
        assert job.worker_token is None

    async def test_fail_job_to_dead(self, store: JobStore):
        """Test max_retries=1 sends the second failure to the dead set."""
        job_id = await store.enqueue(JobSpec(job_type="echo"))

        await store.claim_next("default", "w:0")
        await store.mark_failed(job_id, _error("first"))
        await store.promote_scheduled()

        await store.claim_next("default", "w:0")
        outcome = await store.mark_failed(job_id, _error("second"))

        assert outcome.state == JobState.DEAD
        assert outcome.attempt_count == 2

        job = await store.get_job(job_id)
        assert job.state == JobState.DEAD
        assert job.last_error.message == "second"
        assert job.completed_at is not None

    async def test_high_attempt_count_still_schedules_retry(self, engine: AsyncEngine, clock):
        """Test a long-retrying job gets a clamped retry time, not an error."""
        store = JobStore(engine, RetryPolicy(max_retries=50), clock=clock)
        job_id = await store.enqueue(JobSpec(job_type="echo"))
        await store.claim_next("default", "w:0")
        async with engine.begin() as conn:
            await conn.execute(update(Job).where(Job.id == job_id).values(attempt_count=40))

        before = clock.current
        outcome = await store.mark_failed(job_id, _error(), worker_token="w:0")

        assert outcome.state == JobState.RETRY_SCHEDULED
        job = await store.get_job(job_id)
        assert job.state == JobState.RETRY_SCHEDULED
        assert job.attempt_count == 40
        delay = job.next_run_at - before
        assert timedelta(seconds=MAX_BACKOFF_SECONDS) < delay < timedelta(seconds=MAX_BACKOFF_SECONDS + 1)

    async def test_per_job_max_retries_override(self, store: JobStore):
        """Test max_retries=0 on the job makes the first failure final."""
        job_id = await store.enqueue(JobSpec(job_type="echo", max_retries=0))
        await store.claim_next("default", "w:0")

        outcome = await store.mark_failed(job_id, _error())

        assert outcome.state == JobState.DEAD

    async def test_attempt_count_tracks_failures(self, engine: AsyncEngine, clock):
        """Test attempt_count equals the number of failed executions."""
        store = JobStore(engine, RetryPolicy(max_retries=10, base_delay=0), clock=clock)
        job_id = await store.enqueue(JobSpec(job_type="echo"))

        for _ in range(4):
            await store.promote_scheduled()
            record = await store.claim_next("default", "w:0")
            await store.mark_failed(record.id, _error())

        job = await store.get_job(job_id)
        assert job.attempt_count == 4
        assert job.state == JobState.RETRY_SCHEDULED

    async def test_mark_failed_not_found(self, store: JobStore):
        with pytest.raises(NotFound):
            await store.mark_failed(uuid4(), _error())

    async def test_mark_failed_requires_in_flight(self, store: JobStore):
        job_id = await store.enqueue(JobSpec(job_type="echo"))

        with pytest.raises(InvalidState):
            await store.mark_failed(job_id, _error())

    async def test_dead_is_terminal(self, store: JobStore):
        """Test a dead job is kept for inspection and never claimed."""
        job_id = await store.enqueue(JobSpec(job_type="echo", max_retries=0))
        await store.claim_next("default", "w:0")
        await store.mark_failed(job_id, _error())

        await store.promote_scheduled()
        assert await store.claim_next("default", "w:0") is None

        dead = await store.list_jobs(state=JobState.DEAD)
        assert [j.id for j in dead] == [job_id]


class TestRecovery:
    """Tests for stale claim recovery and retry promotion."""

    async def test_requeue_stale_inflight(self, store: JobStore, clock):
        """Test a stale claim is reset to pending exactly once."""
        job_id = await store.enqueue(JobSpec(job_type="echo"))
        await store.claim_next("default", "crashed:0")

        clock.advance(120)
        assert await store.requeue_stale_inflight(timedelta(seconds=60)) == 1
        assert await store.requeue_stale_inflight(timedelta(seconds=60)) == 0

        job = await store.get_job(job_id)
        assert job.state == JobState.PENDING
        assert job.attempt_count == 1
        assert job.worker_token is None
        assert job.claimed_at is None

    async def test_requeue_ignores_fresh_claims(self, store: JobStore, clock):
        """Test claims younger than the threshold are left alone."""
        await store.enqueue(JobSpec(job_type="echo"))
        await store.claim_next("default", "w:0")

        clock.advance(30)
        assert await store.requeue_stale_inflight(60) == 0

    async def test_requeued_job_is_claimable_again(self, store: JobStore, clock):
        """Test recovery gives at-least-once delivery."""
        job_id = await store.enqueue(JobSpec(job_type="echo"))
        await store.claim_next("default", "crashed:0")

        clock.advance(120)
        await store.requeue_stale_inflight(60)
        record = await store.claim_next("default", "w:1")

        assert record.id == job_id
        assert record.attempt_count == 2

        # The crashed slot's claim is gone
        with pytest.raises(InvalidState):
            await store.mark_done(job_id, worker_token="crashed:0")

    async def test_promote_scheduled_waits_for_backoff(self, engine: AsyncEngine, clock):
        """Test retry-scheduled jobs return to pending after next_run_at."""
        store = JobStore(engine, RetryPolicy(max_retries=3, backoff="constant", base_delay=10), clock=clock)
        job_id = await store.enqueue(JobSpec(job_type="echo"))
        await store.claim_next("default", "w:0")
        await store.mark_failed(job_id, _error())

        assert await store.promote_scheduled() == 0
        assert await store.claim_next("default", "w:0") is None

        clock.advance(11)
        assert await store.promote_scheduled() == 1

        job = await store.get_job(job_id)
        assert job.state == JobState.PENDING
        assert await store.claim_next("default", "w:0") is not None


class TestDeadSetAndInspection:
    """Tests for dead set management and inspection helpers."""

    async def test_retry_dead(self, store: JobStore):
        """Test reviving a dead job keeps its attempt count."""
        job_id = await store.enqueue(JobSpec(job_type="echo", max_retries=0))
        await store.claim_next("default", "w:0")
        await store.mark_failed(job_id, _error())

        revived = await store.retry_dead(job_id)

        assert revived.state == JobState.PENDING
        assert revived.attempt_count == 1
        assert revived.completed_at is None
        record = await store.claim_next("default", "w:0")
        assert record.attempt_count == 2

    async def test_retry_dead_requires_dead(self, store: JobStore):
        job_id = await store.enqueue(JobSpec(job_type="echo"))

        with pytest.raises(InvalidState):
            await store.retry_dead(job_id)
        with pytest.raises(NotFound):
            await store.retry_dead(uuid4())

    async def test_purge_finished(self, store: JobStore, clock):
        """Test only done jobs past the retention window are deleted."""
        done_id = await store.enqueue(JobSpec(job_type="echo"))
        await store.claim_next("default", "w:0")
        await store.mark_done(done_id)

        dead_id = await store.enqueue(JobSpec(job_type="echo", max_retries=0))
        await store.claim_next("default", "w:0")
        await store.mark_failed(dead_id, _error())

        assert await store.purge_finished(timedelta(hours=1)) == 0

        clock.advance(7200)
        assert await store.purge_finished(timedelta(hours=1)) == 1

        assert await store.get_job(done_id) is None
        assert (await store.get_job(dead_id)).state == JobState.DEAD

    async def test_count_by_state_and_depth(self, store: JobStore):
        """Test job statistics by state."""
        for _ in range(3):
            await store.enqueue(JobSpec(job_type="echo"))
        await store.enqueue(JobSpec(queue_name="other", job_type="echo"))
        await store.claim_next("default", "w:0")

        counts = await store.count_by_state("default")

        assert counts[JobState.PENDING.value] == 2
        assert counts[JobState.IN_FLIGHT.value] == 1
        assert counts[JobState.DEAD.value] == 0
        assert await store.queue_depth("default") == 2
        assert await store.queue_depth("other") == 1

    async def test_list_jobs_filters(self, store: JobStore):
        first = await store.enqueue(JobSpec(job_type="echo"))
        await store.enqueue(JobSpec(queue_name="other", job_type="echo"))
        third = await store.enqueue(JobSpec(job_type="echo"))

        jobs = await store.list_jobs(queue_name="default")
        assert [j.id for j in jobs] == [first, third]

        page = await store.list_jobs(limit=1, offset=1)
        assert len(page) == 1
