"""
Dispatcher loop tying the worker pool to the queue store.

Each worker slot runs its own polling loop:
1. claim from the configured queues in priority order
2. execute the claimed job in the slot
3. report mark_done / mark_failed
4. when nothing is eligible, wait for a wake signal or poll_interval

A reaper task alongside the slots promotes due retries and recovers stale
claims.
"""

import asyncio
import logging
import os
import time

from jobqueue.config import Settings
from jobqueue.constants import JobState
from jobqueue.db.repository import JobStore
from jobqueue.errors import InvalidState, NotFound
from jobqueue.observability.metrics import MetricsCollector, get_metrics
from jobqueue.reaper.main import Reaper
from jobqueue.types.job import JobRecord, JobResult
from jobqueue.worker.handlers import HandlerRegistry, default_registry
from jobqueue.worker.pool import WorkerPool, WorkerSlot

logger = logging.getLogger(__name__)


class Dispatcher:
    """
    Claims jobs for idle worker slots and reports their outcomes.

    Features:
    - Strict queue priority: queues are checked in configured order
    - Wake signal from in-process enqueuers, poll interval otherwise
    - Periodic stale-claim recovery and retry promotion via the Reaper
    - Graceful shutdown: running jobs finish before start() returns
    """

    def __init__(
        self,
        store: JobStore,
        settings: Settings,
        registry: HandlerRegistry = default_registry,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the dispatcher.

        Args:
            store: The durable queue store.
            settings: Worker configuration (concurrency, queues, intervals).
            registry: Handler lookup table.
            metrics: Metrics collector.
        """
        self.store = store
        self.queues = list(settings.queues)
        self.poll_interval = settings.poll_interval_seconds
        self.worker_id = settings.worker_id or f"{os.uname().nodename}-{os.getpid()}"

        self._metrics = metrics or get_metrics()
        self.pool = WorkerPool(
            worker_id=self.worker_id,
            concurrency=settings.concurrency,
            registry=registry,
            default_timeout=settings.job_timeout_seconds,
            metrics=self._metrics,
        )
        self.reaper = Reaper(store, settings, metrics=self._metrics)

        self._running = False
        self._wake = asyncio.Event()
        self._reaper_task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._running

    def wake(self, queue_name: str | None = None) -> None:
        """Wake idle slots; suitable as an Enqueuer listener."""
        if queue_name is None or queue_name in self.queues:
            self._wake.set()

    async def start(self) -> None:
        """Run the slot loops and the reaper until stop() is called."""
        logger.info(
            "Dispatcher starting",
            extra={
                "worker_id": self.worker_id,
                "concurrency": self.pool.size,
                "queues": self.queues,
            }
        )

        self._running = True
        self._reaper_task = asyncio.create_task(self.reaper.start())

        try:
            await asyncio.gather(*(self._slot_loop(slot) for slot in self.pool.slots))
        finally:
            await self.reaper.stop()
            self._reaper_task.cancel()
            try:
                await self._reaper_task
            except asyncio.CancelledError:
                pass
            self._reaper_task = None

        logger.info("Dispatcher stopped", extra={"worker_id": self.worker_id})

    async def stop(self) -> None:
        """Stop the dispatcher gracefully."""
        logger.info("Dispatcher stopping", extra={"worker_id": self.worker_id})
        self._running = False
        self._wake.set()

    async def run_once(self) -> int:
        """
        Run one dispatch round.

        Every idle slot claims in turn, then all claimed jobs execute
        concurrently and their outcomes are reported.

        Returns:
            Number of jobs processed.
        """
        claimed: list[tuple[WorkerSlot, JobRecord]] = []
        for slot in self.pool.idle_slots:
            record = await self.claim(slot)
            if record is None:
                break
            claimed.append((slot, record))

        if not claimed:
            return 0

        await asyncio.gather(*(self.process(slot, record) for slot, record in claimed))
        return len(claimed)

    async def run_until_idle(self, max_rounds: int | None = None) -> int:
        """
        Dispatch rounds until no eligible job is left.

        Scheduled retries are promoted between rounds, so retries whose
        backoff has already elapsed are drained too.

        Returns:
            Total number of jobs processed.
        """
        total = 0
        rounds = 0
        while max_rounds is None or rounds < max_rounds:
            await self.store.promote_scheduled()
            processed = await self.run_once()
            rounds += 1
            if processed == 0:
                break
            total += processed
        return total

    async def claim(self, slot: WorkerSlot) -> JobRecord | None:
        """
        Claim the first eligible job across queues, in priority order.
        """
        for queue_name in self.queues:
            record = await self.store.claim_next(queue_name, slot.token)
            if record is not None:
                self._metrics.record_job_claimed(queue_name)
                return record
        return None

    async def process(self, slot: WorkerSlot, record: JobRecord) -> JobResult:
        """
        Execute a claimed job in a slot and report the outcome to the store.
        """
        start_time = time.monotonic()
        result = await self.pool.execute(slot, record)
        duration = time.monotonic() - start_time

        try:
            if result.success:
                await self.store.mark_done(record.id, worker_token=slot.token, result=result.output)
                status = JobState.DONE
            else:
                outcome = await self.store.mark_failed(record.id, result.error, worker_token=slot.token)
                status = outcome.state
        except (NotFound, InvalidState) as e:
            # The claim was lost (e.g. requeued as stale) while the job ran.
            logger.error(
                "Could not report job outcome",
                extra={"job_id": str(record.id), "worker_token": slot.token, "error": str(e)}
            )
            return result

        self._metrics.record_job_completed(
            queue=record.queue_name,
            status=status.value,
            duration_seconds=duration,
        )
        return result

    async def _slot_loop(self, slot: WorkerSlot) -> None:
        while self._running:
            try:
                record = await self.claim(slot)
            except Exception as e:
                logger.exception(
                    f"Error claiming job: {e}",
                    extra={"worker_token": slot.token}
                )
                await self._idle_wait()
                continue

            if record is None:
                await self._idle_wait()
                continue

            try:
                await self.process(slot, record)
            except Exception as e:
                # Store unreachable while reporting; the claim goes stale and
                # the reaper returns the job to pending.
                logger.exception(
                    f"Error reporting job outcome: {e}",
                    extra={"job_id": str(record.id), "worker_token": slot.token}
                )
                await self._idle_wait()

    async def _idle_wait(self) -> None:
        if not self._running:
            return
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass
        else:
            if self._running:
                self._wake.clear()
