"""
Retry/failure policy.

Decides, for a failed execution, whether the job is rescheduled with a
backoff delay or moved to the dead set.
"""

import logging
import math
import random
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from jobqueue.clock import utcnow
from jobqueue.config import Settings
from jobqueue.constants import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_BASE_DELAY_SECONDS,
    MAX_BACKOFF_SECONDS,
    BackoffStrategy,
    JobState,
)
from jobqueue.types.job import ErrorDetail

logger = logging.getLogger(__name__)

# Maps a 1-based attempt number to a delay in seconds
Backoff = Callable[[int], float]


def constant_backoff(base_delay: float) -> Backoff:
    """Same delay before every retry."""
    return lambda attempt: base_delay


def linear_backoff(base_delay: float) -> Backoff:
    """Delay grows by base_delay per attempt."""
    return lambda attempt: base_delay * attempt


def exponential_backoff(base_delay: float) -> Backoff:
    """Delay doubles per attempt: base_delay * 2^(attempt - 1)."""
    return lambda attempt: base_delay * 2 ** (attempt - 1)


def polynomial_backoff(base_delay: float) -> Backoff:
    """
    Quartic schedule: attempt^4 + base_delay seconds.

    With the default base of 15s the first retries land after 16s, 31s, 96s.
    """
    return lambda attempt: attempt**4 + base_delay


BACKOFF_STRATEGIES: dict[BackoffStrategy, Callable[[float], Backoff]] = {
    BackoffStrategy.CONSTANT: constant_backoff,
    BackoffStrategy.LINEAR: linear_backoff,
    BackoffStrategy.EXPONENTIAL: exponential_backoff,
    BackoffStrategy.POLYNOMIAL: polynomial_backoff,
}


@dataclass(frozen=True)
class RetryDecision:
    """
    Output of the retry policy for one failure.
    """

    state: JobState
    next_run_at: datetime | None = None

    @property
    def will_retry(self) -> bool:
        return self.state == JobState.RETRY_SCHEDULED


class RetryPolicy:
    """
    Maps (attempt_count, error) to RetryScheduled(next_run_at) or Dead.

    A job whose attempt_count exceeds max_retries is always dead, whatever the
    error kind. max_retries=1 therefore allows two attempts in total.
    """

    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff: BackoffStrategy | str | Backoff = BackoffStrategy.EXPONENTIAL,
        base_delay: float = DEFAULT_RETRY_BASE_DELAY_SECONDS,
        max_delay: float | None = None,
        jitter: float = 0.0,
    ):
        """
        Initialize the policy.

        Args:
            max_retries: Retries allowed after the first attempt.
            backoff: Strategy name or a callable mapping attempt -> seconds.
            base_delay: Base delay in seconds for named strategies.
            max_delay: Optional cap on the computed delay.
            jitter: Fraction (0..1) of the delay added at random.
        """
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if not 0.0 <= jitter <= 1.0:
            raise ValueError("jitter must be between 0 and 1")

        if callable(backoff):
            self._backoff = backoff
        else:
            self._backoff = BACKOFF_STRATEGIES[BackoffStrategy(backoff)](base_delay)

        self.max_retries = max_retries
        self.max_delay = max_delay
        self.jitter = jitter

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        """Build the policy from application settings."""
        return cls(
            max_retries=settings.max_retries,
            backoff=settings.retry_backoff,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
            jitter=settings.retry_jitter,
        )

    def delay_for(self, attempt_count: int) -> float:
        """
        Seconds to wait before the retry that follows attempt `attempt_count`.

        Never more than max_delay, and never more than MAX_BACKOFF_SECONDS
        however large the attempt count.
        """
        try:
            delay = float(self._backoff(max(1, attempt_count)))
        except OverflowError:
            delay = math.inf

        cap = MAX_BACKOFF_SECONDS if self.max_delay is None else min(self.max_delay, MAX_BACKOFF_SECONDS)
        delay = min(max(0.0, delay), cap)
        if self.jitter:
            delay = min(delay + delay * self.jitter * random.random(), cap)
        return delay

    def decide(
        self,
        attempt_count: int,
        error: ErrorDetail,
        max_retries: int | None = None,
        now: datetime | None = None,
    ) -> RetryDecision:
        """
        Decide the next state of a failed job.

        Args:
            attempt_count: Attempts made so far, including the failed one.
            error: The failure detail.
            max_retries: Per-job override of the policy limit.
            now: Reference time for next_run_at.

        Returns:
            RetryDecision with RETRY_SCHEDULED and next_run_at, or DEAD.
        """
        limit = self.max_retries if max_retries is None else max_retries

        if attempt_count > limit:
            logger.debug(
                "Retries exhausted",
                extra={"attempt": attempt_count, "max_retries": limit, "error_kind": error.kind},
            )
            return RetryDecision(state=JobState.DEAD)

        now = now or utcnow()
        delay = self.delay_for(attempt_count)
        return RetryDecision(
            state=JobState.RETRY_SCHEDULED,
            next_run_at=now + timedelta(seconds=delay),
        )
