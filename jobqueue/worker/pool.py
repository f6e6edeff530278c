"""
Worker pool: a fixed set of execution slots.
"""

import logging
from dataclasses import dataclass
from uuid import UUID

from jobqueue.constants import SPAN_EXECUTE_JOB
from jobqueue.observability.logging import bind_context, clear_context
from jobqueue.observability.metrics import MetricsCollector, get_metrics
from jobqueue.observability.tracing import get_tracer
from jobqueue.types.job import JobContext, JobRecord, JobResult
from jobqueue.worker.handlers import HandlerRegistry, default_registry, execute_job

logger = logging.getLogger(__name__)


@dataclass
class WorkerSlot:
    """
    One execution slot. Its token identifies the slot's claims in the store.
    """

    index: int
    token: str
    current_job: UUID | None = None

    @property
    def busy(self) -> bool:
        return self.current_job is not None


class WorkerPool:
    """
    N execution slots running handlers in isolation.

    A slot runs at most one job at a time. Handler faults are turned into
    failed JobResults by execute_job, so one slot's crash never reaches the
    other slots or the dispatcher.
    """

    def __init__(
        self,
        worker_id: str,
        concurrency: int,
        registry: HandlerRegistry = default_registry,
        default_timeout: float | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the pool.

        Args:
            worker_id: Process-level identifier used to derive slot tokens.
            concurrency: Number of slots.
            registry: Handler lookup table.
            default_timeout: Timeout for jobs without their own.
            metrics: Metrics collector.
        """
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")

        self.worker_id = worker_id
        self.registry = registry
        self.default_timeout = default_timeout
        self.slots = [
            WorkerSlot(index=i, token=f"{worker_id}:{i}") for i in range(concurrency)
        ]
        self._metrics = metrics or get_metrics()

    @property
    def size(self) -> int:
        return len(self.slots)

    @property
    def idle_slots(self) -> list[WorkerSlot]:
        return [slot for slot in self.slots if not slot.busy]

    @property
    def busy_count(self) -> int:
        return sum(1 for slot in self.slots if slot.busy)

    async def execute(self, slot: WorkerSlot, record: JobRecord) -> JobResult:
        """
        Run a claimed job in a slot.

        Args:
            slot: An idle slot; it is marked busy for the duration.
            record: The claimed job.

        Returns:
            The JobResult of the handler.
        """
        if slot.busy:
            raise RuntimeError(f"Slot {slot.token} is already running {slot.current_job}")

        slot.current_job = record.id
        self._metrics.busy_workers.inc()
        bind_context(job_id=str(record.id), worker_token=slot.token)

        context = JobContext.from_record(record, worker_token=slot.token)
        timeout = record.timeout_seconds or self.default_timeout

        logger.info(
            "Executing job",
            extra={
                "job_type": record.job_type,
                "queue": record.queue_name,
                "attempt": record.attempt_count,
            }
        )

        try:
            with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
                span.set_attribute("job_id", str(record.id))
                span.set_attribute("job_type", record.job_type)
                span.set_attribute("attempt", record.attempt_count)

                result = await execute_job(context, self.registry, timeout)

                span.set_attribute("success", result.success)
            return result
        finally:
            slot.current_job = None
            self._metrics.busy_workers.dec()
            clear_context()
