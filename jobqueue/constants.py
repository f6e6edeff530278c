"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobState(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - PENDING -> IN_FLIGHT (claimed by a worker slot)
    - IN_FLIGHT -> DONE (success)
    - IN_FLIGHT -> RETRY_SCHEDULED (failure, retries left)
    - IN_FLIGHT -> DEAD (failure, retries exhausted)
    - RETRY_SCHEDULED -> PENDING (next_run_at elapsed)
    - IN_FLIGHT -> PENDING (stale claim recovered)
    """

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD = "dead"
    DONE = "done"


class ErrorKind(StrEnum):
    """Classification of a failed execution."""

    HANDLER_ERROR = "handler_error"
    HANDLER_CRASH = "handler_crash"
    TIMEOUT = "timeout"
    UNKNOWN_JOB_TYPE = "unknown_job_type"


class BackoffStrategy(StrEnum):
    """Named backoff schemes for retry scheduling."""

    CONSTANT = "constant"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    POLYNOMIAL = "polynomial"


# Default values
DEFAULT_QUEUE = "default"
DEFAULT_MAX_RETRIES = 25
DEFAULT_RETRY_BASE_DELAY_SECONDS = 15.0
DEFAULT_CONCURRENCY = 5

# Number of times claim_next re-selects after losing a race for a record
MAX_CLAIM_CONFLICT_RETRIES = 5

# Upper bound on any retry delay (30 days)
MAX_BACKOFF_SECONDS = 30 * 24 * 3600.0

# Metrics names
METRIC_QUEUE_DEPTH = "job_queue_depth"
METRIC_JOBS_ENQUEUED = "jobs_enqueued_total"
METRIC_JOBS_CLAIMED = "jobs_claimed_total"
METRIC_JOBS_COMPLETED = "jobs_completed_total"
METRIC_JOB_DURATION = "job_duration_seconds"
METRIC_STALE_REQUEUED = "stale_jobs_requeued_total"
METRIC_RETRIES_PROMOTED = "retries_promoted_total"
METRIC_BUSY_WORKERS = "busy_workers"

# Trace span names
SPAN_ENQUEUE_JOB = "enqueue_job"
SPAN_CLAIM_JOB = "claim_job"
SPAN_EXECUTE_JOB = "execute_job"
