"""
Reaper for scheduled retries and stale claims.

The reaper runs periodically to:
1. Promote retry-scheduled jobs whose backoff elapsed back to pending
2. Return in-flight jobs whose worker presumably crashed to pending

The second step is what gives at-least-once delivery under worker failure.
It runs inside every dispatcher and can also run as a standalone process.
"""

import asyncio
import logging
import signal
import time

from jobqueue.config import Settings, get_settings
from jobqueue.db import close_db, get_engine, init_db
from jobqueue.db.repository import JobStore
from jobqueue.observability.logging import setup_logging
from jobqueue.observability.metrics import MetricsCollector, get_metrics
from jobqueue.types.job import SweepResult

logger = logging.getLogger(__name__)


class Reaper:
    """
    Periodic maintenance over the queue store.

    Promotion runs every poll_interval; stale recovery runs on its own,
    slower cadence (stale_check_interval).
    """

    def __init__(
        self,
        store: JobStore,
        settings: Settings,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the reaper.

        Args:
            store: The durable queue store.
            settings: Intervals, stale threshold, and queues to report on.
        """
        self.store = store
        self.queues = list(settings.queues)
        self.interval = settings.poll_interval_seconds
        self.stale_check_interval = settings.stale_check_interval_seconds
        self.stale_threshold = settings.stale_inflight_threshold_seconds
        self._running = False
        self._last_stale_check: float | None = None
        self._metrics = metrics or get_metrics()

    async def start(self) -> None:
        """Start the reaper loop."""
        logger.info(
            f"Reaper starting with interval {self.interval}s",
            extra={"stale_threshold": self.stale_threshold}
        )
        self._running = True

        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.exception(f"Error in reaper loop: {e}")

            await asyncio.sleep(self.interval)

        logger.info("Reaper stopped")

    async def stop(self) -> None:
        """Stop the reaper."""
        logger.info("Reaper stopping")
        self._running = False

    async def run_once(self, force_stale_check: bool = False) -> SweepResult:
        """
        Run one maintenance pass.

        Args:
            force_stale_check: Recover stale claims regardless of cadence.

        Returns:
            SweepResult with promoted and requeued counts.
        """
        promoted = await self.store.promote_scheduled()
        if promoted:
            self._metrics.record_retries_promoted(promoted)

        requeued = 0
        now = time.monotonic()
        if (
            force_stale_check
            or self._last_stale_check is None
            or now - self._last_stale_check >= self.stale_check_interval
        ):
            self._last_stale_check = now
            requeued = await self.store.requeue_stale_inflight(self.stale_threshold)
            if requeued:
                logger.warning(f"Recovered {requeued} stale in-flight jobs")
                self._metrics.record_stale_requeued(requeued)

        for queue_name in self.queues:
            depth = await self.store.queue_depth(queue_name)
            self._metrics.update_queue_depth(queue_name, depth)

        return SweepResult(promoted=promoted, requeued=requeued)


async def run_async() -> None:
    """Run the reaper as a standalone process."""
    settings = get_settings()
    setup_logging(settings)

    engine = get_engine(settings)
    await init_db(engine, create_tables=settings.database_create_tables)

    reaper = Reaper(JobStore(engine), settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(reaper.stop())
        )

    try:
        await reaper.start()
    finally:
        await close_db(engine)


def run() -> None:
    """Run the reaper."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
