"""
Producer-side API for submitting jobs.
"""

import logging
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any
from uuid import UUID

from jobqueue.config import Settings
from jobqueue.db.repository import JobStore
from jobqueue.observability.metrics import MetricsCollector, get_metrics
from jobqueue.types.job import JobSpec

logger = logging.getLogger(__name__)

# Called with the queue name after each successful enqueue
EnqueueListener = Callable[[str], None]


class Enqueuer:
    """
    Accepts job specifications from producers and writes them to the store.

    This is the only call a web layer makes into the queue. Listeners (for
    example Dispatcher.wake) are notified after each durable write so idle
    in-process workers do not wait for the next poll.
    """

    def __init__(
        self,
        store: JobStore,
        settings: Settings,
        metrics: MetricsCollector | None = None,
    ):
        self._store = store
        self._settings = settings
        self._metrics = metrics or get_metrics()
        self._listeners: list[EnqueueListener] = []

    def add_listener(self, listener: EnqueueListener) -> None:
        """Register a callback invoked with the queue name after enqueue."""
        self._listeners.append(listener)

    async def enqueue(
        self,
        queue_name: str,
        job_type: str,
        arguments: Sequence[Any] = (),
        delay: float = 0,
        *,
        run_at: datetime | None = None,
        max_retries: int | None = None,
        timeout_seconds: float | None = None,
    ) -> UUID:
        """
        Enqueue a job.

        Args:
            queue_name: Logical queue the job belongs to.
            job_type: Name of the registered handler.
            arguments: JSON-serializable positional arguments.
            delay: Seconds before the job becomes claimable.
            run_at: Absolute time before which the job is not claimable.
            max_retries: Per-job override of the retry limit.
            timeout_seconds: Per-job execution timeout.

        Returns:
            The new job id.

        Raises:
            pydantic.ValidationError: The job specification is invalid.
            EnqueueFailure: The store is unreachable; the job was not created.
        """
        spec = JobSpec(
            queue_name=queue_name,
            job_type=job_type,
            arguments=list(arguments),
            delay_seconds=delay,
            run_at=run_at,
            max_retries=max_retries,
            timeout_seconds=timeout_seconds,
        )
        return await self.submit(spec)

    async def submit(self, spec: JobSpec) -> UUID:
        """Enqueue a prepared JobSpec."""
        if spec.queue_name not in self._settings.queues:
            logger.warning(
                "Enqueued to a queue no local worker listens on",
                extra={"queue": spec.queue_name, "queues": self._settings.queues},
            )

        job_id = await self._store.enqueue(spec)
        self._metrics.record_job_enqueued(spec.queue_name)

        for listener in self._listeners:
            listener(spec.queue_name)

        return job_id
