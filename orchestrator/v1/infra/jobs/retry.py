"""
Retry policy for generic jobs.

Pure calculations only: the store applies whatever this module decides.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

DEFAULT_RETRY_DELAYS_MINUTES: tuple[int, ...] = (1, 5, 15)


@dataclass(frozen=True)
class FailureDecision:
    """Outcome of evaluating a failed attempt."""

    retry: bool
    attempts: int
    max_attempts: int
    next_retry_at: datetime | None = None
    delay: timedelta | None = None


class RetryPolicy:
    """
    Fixed backoff ladder.

    ``delay_for(n)`` indexes the ladder with ``min(n, len(ladder)) - 1`` so
    attempts past the end of the ladder keep reusing its last delay.
    """

    def __init__(self, delays_minutes: Sequence[int] = DEFAULT_RETRY_DELAYS_MINUTES):
        if not delays_minutes:
            raise ValueError("Retry ladder must contain at least one delay")
        self.ladder: tuple[timedelta, ...] = tuple(
            timedelta(minutes=m) for m in delays_minutes
        )

    def delay_for(self, attempt: int) -> timedelta:
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got: {attempt}")
        return self.ladder[min(attempt, len(self.ladder)) - 1]

    def evaluate_failure(
        self, attempts: int, max_attempts: int, now: datetime
    ) -> FailureDecision:
        """
        Decide what a failed attempt leads to.

        ``attempts`` already counts the attempt that just failed (the
        dispatcher counts an attempt when it claims the job).
        """
        if attempts < max_attempts:
            delay = self.delay_for(max(attempts, 1))
            return FailureDecision(
                retry=True,
                attempts=attempts,
                max_attempts=max_attempts,
                next_retry_at=now + delay,
                delay=delay,
            )
        return FailureDecision(retry=False, attempts=attempts, max_attempts=max_attempts)


def get_retry_policy(settings) -> RetryPolicy:
    """Build the policy from configured ladder."""
    return RetryPolicy(settings.job_retry_delays_minutes)
