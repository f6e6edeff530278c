"""
Retry module.
Contains the retry/failure policy and backoff strategies.
"""

from jobqueue.retry.policy import (
    BACKOFF_STRATEGIES,
    Backoff,
    RetryDecision,
    RetryPolicy,
    constant_backoff,
    exponential_backoff,
    linear_backoff,
    polynomial_backoff,
)

__all__ = [
    "BACKOFF_STRATEGIES",
    "Backoff",
    "RetryDecision",
    "RetryPolicy",
    "constant_backoff",
    "exponential_backoff",
    "linear_backoff",
    "polynomial_backoff",
]
