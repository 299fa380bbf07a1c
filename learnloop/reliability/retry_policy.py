"""Retry and backoff policy for queued jobs."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

MIN_TRIES = 3
MAX_TRIES = 5


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry/backoff configuration for a job type.

    backoff is either a fixed delay in seconds or an ordered list of delays,
    one per retry; attempts beyond the list reuse its last entry.
    """

    max_tries: int = 3
    backoff: int | Sequence[int] = (60, 180, 300)
    timeout_seconds: float = 600.0

    def __post_init__(self) -> None:
        _validate_policy(self)

    def should_retry(self, attempt: int) -> bool:
        """Return whether another attempt is permitted after `attempt` failed."""
        return int(attempt) < int(self.max_tries)

    def delay_for_attempt(self, attempt: int) -> int:
        """Delay in seconds before the retry that follows failed attempt `attempt` (1-based)."""
        if attempt <= 0:
            raise ValueError("attempt must be >= 1.")
        if isinstance(self.backoff, int):
            return self.backoff
        index = min(attempt - 1, len(self.backoff) - 1)
        return int(self.backoff[index])

    def lease_ttl(self, margin_seconds: float = 60.0) -> float:
        """Lease TTL covering the whole job timeout."""
        return self.timeout_seconds + max(0.0, margin_seconds)


def _validate_policy(policy: RetryPolicy) -> None:
    """Validate retry policy settings."""
    if not MIN_TRIES <= policy.max_tries <= MAX_TRIES:
        raise ValueError(f"max_tries must be between {MIN_TRIES} and {MAX_TRIES}.")
    if policy.timeout_seconds <= 0:
        raise ValueError("timeout_seconds must be > 0.")
    if isinstance(policy.backoff, int):
        if policy.backoff < 0:
            raise ValueError("backoff must be >= 0.")
        return
    if len(policy.backoff) == 0:
        raise ValueError("backoff schedule must not be empty.")
    if any(int(delay) < 0 for delay in policy.backoff):
        raise ValueError("backoff delays must be >= 0.")
