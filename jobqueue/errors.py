"""
Exception hierarchy for the job queue.
"""

from uuid import UUID


class JobQueueError(Exception):
    """Base class for all job queue errors."""


class EnqueueFailure(JobQueueError):
    """The store could not persist a new job; the job was not created."""


class ClaimConflict(JobQueueError):
    """Another claimer won the race for a record. Callers retry the claim."""

    def __init__(self, job_id: UUID):
        super().__init__(f"Lost claim race for job {job_id}")
        self.job_id = job_id


class HandlerError(JobQueueError):
    """
    Recoverable error raised by job logic.

    Handlers raise this for expected failures; the job is routed to the
    retry policy and logged at warning level.
    """


class HandlerCrash(JobQueueError):
    """
    Unexpected fault during execution.

    Any exception other than HandlerError is classified as a crash; handlers
    may also raise this directly. Retried exactly like HandlerError but
    logged with its traceback at error level.
    """


class NotFound(JobQueueError):
    """The referenced job does not exist."""

    def __init__(self, job_id: UUID):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class InvalidState(JobQueueError):
    """The job is not in the state required for the requested transition."""

    def __init__(self, job_id: UUID, state: str, operation: str):
        super().__init__(f"Cannot {operation} job {job_id} in state {state}")
        self.job_id = job_id
        self.state = state
        self.operation = operation
