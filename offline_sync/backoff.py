"""Exponential backoff policy shared by the operation and upload queues.

A queue item that failed ``attempts`` times becomes ready again once
``delay(attempts)`` seconds have passed since its last attempt. Items that
reached ``max_attempts`` are never ready again until explicitly reset.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta


@dataclass(frozen=True)
class BackoffPolicy:
    """Configuration for retry with exponential backoff."""

    base_delay: float = 1.0  # seconds
    multiplier: float = 2.0
    cap: float = 60.0  # seconds
    max_attempts: int = 5

    def __post_init__(self) -> None:
        if self.base_delay < 0:
            raise ValueError(f"base_delay must be >= 0, got {self.base_delay}")
        if self.multiplier < 1:
            raise ValueError(f"multiplier must be >= 1, got {self.multiplier}")
        if self.cap < self.base_delay:
            raise ValueError(f"cap ({self.cap}) must be >= base_delay ({self.base_delay})")
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")

    def delay(self, attempts: int) -> float:
        """Delay in seconds before the next attempt after ``attempts`` failures."""
        if attempts <= 0:
            return min(self.base_delay, self.cap)
        # Float exponentiation overflows for very large attempt counts
        try:
            raw = self.base_delay * (self.multiplier**attempts)
        except OverflowError:
            return self.cap
        return min(raw, self.cap)

    def is_exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts

    def is_ready(
        self,
        attempts: int,
        last_attempt_at: datetime | None,
        now: datetime,
    ) -> bool:
        """Check whether an item is eligible for another attempt."""
        if self.is_exhausted(attempts):
            return False
        if last_attempt_at is None:
            return True
        return (now - last_attempt_at).total_seconds() >= self.delay(attempts)

    def next_attempt_at(
        self,
        attempts: int,
        last_attempt_at: datetime | None,
        now: datetime,
    ) -> datetime | None:
        """Earliest time the item becomes ready, ``None`` if it never will."""
        if self.is_exhausted(attempts):
            return None
        if last_attempt_at is None:
            return now
        return last_attempt_at + timedelta(seconds=self.delay(attempts))
