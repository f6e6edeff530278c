"""
Unit tests for the producer-side enqueuer.
"""

import pytest
from pydantic import ValidationError

from jobqueue.client import Enqueuer
from jobqueue.config import Settings
from jobqueue.constants import JobState
from jobqueue.db.repository import JobStore
from jobqueue.observability.metrics import MetricsCollector


@pytest.fixture
def enqueuer(store: JobStore, test_settings: Settings, metrics: MetricsCollector) -> Enqueuer:
    return Enqueuer(store, test_settings, metrics=metrics)


class TestEnqueuer:
    """Tests for Enqueuer.enqueue."""

    async def test_enqueue_persists_pending_job(self, enqueuer: Enqueuer, store: JobStore):
        job_id = await enqueuer.enqueue("default", "echo", ["hello", 1])

        job = await store.get_job(job_id)
        assert job.state == JobState.PENDING
        assert job.queue_name == "default"
        assert job.job_type == "echo"
        assert job.arguments == ["hello", 1]
        assert job.attempt_count == 0

    async def test_enqueue_with_delay(self, enqueuer: Enqueuer, store: JobStore):
        job_id = await enqueuer.enqueue("default", "echo", delay=60)

        job = await store.get_job(job_id)
        assert (job.next_run_at - job.created_at).total_seconds() == pytest.approx(60, abs=0.01)

    async def test_enqueue_overrides(self, enqueuer: Enqueuer, store: JobStore):
        job_id = await enqueuer.enqueue(
            "default", "echo", max_retries=0, timeout_seconds=2.5
        )

        job = await store.get_job(job_id)
        assert job.max_retries == 0
        assert job.timeout_seconds == 2.5

    async def test_listener_notified(self, enqueuer: Enqueuer):
        notified = []
        enqueuer.add_listener(notified.append)

        await enqueuer.enqueue("default", "echo")
        await enqueuer.enqueue("mailers", "echo")

        assert notified == ["default", "mailers"]

    async def test_metrics_recorded(self, enqueuer: Enqueuer, metrics: MetricsCollector):
        await enqueuer.enqueue("default", "echo")
        await enqueuer.enqueue("default", "echo")

        value = metrics.registry.get_sample_value("jobs_enqueued_total", {"queue": "default"})
        assert value == 2

    async def test_non_serializable_arguments_rejected(self, enqueuer: Enqueuer, store: JobStore):
        with pytest.raises(ValidationError):
            await enqueuer.enqueue("default", "echo", [object()])

        assert await store.count_by_state() == {state.value: 0 for state in JobState}

    @pytest.mark.parametrize("queue_name,job_type", [("", "echo"), ("default", "  ")])
    async def test_blank_names_rejected(self, enqueuer: Enqueuer, queue_name: str, job_type: str):
        with pytest.raises(ValidationError):
            await enqueuer.enqueue(queue_name, job_type)

    async def test_negative_delay_rejected(self, enqueuer: Enqueuer):
        with pytest.raises(ValidationError):
            await enqueuer.enqueue("default", "echo", delay=-1)
