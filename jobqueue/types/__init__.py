"""
Type definitions for the job queue.
Contains input/output type definitions shared across modules.
"""

from jobqueue.types.job import (
    ErrorDetail,
    FailureOutcome,
    JobContext,
    JobRecord,
    JobResult,
    JobSpec,
    SweepResult,
)

__all__ = [
    "ErrorDetail",
    "FailureOutcome",
    "JobContext",
    "JobRecord",
    "JobResult",
    "JobSpec",
    "SweepResult",
]
