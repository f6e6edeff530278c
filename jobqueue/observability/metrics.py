"""
Prometheus metrics collection.
"""

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

from jobqueue.constants import (
    METRIC_BUSY_WORKERS,
    METRIC_JOB_DURATION,
    METRIC_JOBS_CLAIMED,
    METRIC_JOBS_COMPLETED,
    METRIC_JOBS_ENQUEUED,
    METRIC_QUEUE_DEPTH,
    METRIC_RETRIES_PROMOTED,
    METRIC_STALE_REQUEUED,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the job queue.

    Collects metrics for:
    - Queue depth
    - Job enqueues, claims and completions
    - Job execution duration
    - Stale claim recovery and retry promotion
    - Worker slot utilisation
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of pending jobs in the queue",
            ["queue"],
            registry=self._registry,
        )

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs enqueued",
            ["queue"],
            registry=self._registry,
        )

        self.jobs_claimed = Counter(
            METRIC_JOBS_CLAIMED,
            "Total number of job claims",
            ["queue"],
            registry=self._registry,
        )

        # status is done, retry_scheduled or dead
        self.jobs_completed = Counter(
            METRIC_JOBS_COMPLETED,
            "Total number of finished executions",
            ["queue", "status"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["queue", "status"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.stale_requeued = Counter(
            METRIC_STALE_REQUEUED,
            "Total number of stale in-flight jobs returned to pending",
            registry=self._registry,
        )

        self.retries_promoted = Counter(
            METRIC_RETRIES_PROMOTED,
            "Total number of scheduled retries promoted to pending",
            registry=self._registry,
        )

        self.busy_workers = Gauge(
            METRIC_BUSY_WORKERS,
            "Number of worker slots executing a job",
            registry=self._registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def record_job_enqueued(self, queue: str) -> None:
        """Record a job enqueue."""
        self.jobs_enqueued.labels(queue=queue).inc()

    def record_job_claimed(self, queue: str) -> None:
        """Record a successful claim."""
        self.jobs_claimed.labels(queue=queue).inc()

    def record_job_completed(
        self,
        queue: str,
        status: str,
        duration_seconds: float,
    ) -> None:
        """Record a finished execution."""
        self.jobs_completed.labels(queue=queue, status=status).inc()
        self.job_duration.labels(queue=queue, status=status).observe(
            duration_seconds
        )

    def record_stale_requeued(self, count: int) -> None:
        self.stale_requeued.inc(count)

    def record_retries_promoted(self, count: int) -> None:
        self.retries_promoted.inc(count)

    def update_queue_depth(self, queue: str, depth: int) -> None:
        """Update pending depth for a queue."""
        self.queue_depth.labels(queue=queue).set(depth)

    def serve(self, port: int) -> None:
        """Expose the registry over HTTP on the given port."""
        start_http_server(port, registry=self._registry)


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the process-wide metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the process-wide metrics collector, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
