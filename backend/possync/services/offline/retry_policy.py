"""Exponential backoff for failed sync attempts."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from possync.core.config import settings
from possync.services.offline.exceptions import ExhaustedRetriesError


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff without jitter.

    The delay before attempt ``n + 1`` is ``2 ** n`` seconds, capped at
    ``cap_seconds``. Items are given up on deterministically once
    ``attempts >= max_attempts``.
    """

    cap_seconds: int = 300
    max_attempts: int = 5

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            cap_seconds=settings.offline_retry_cap_seconds,
            max_attempts=settings.offline_max_attempts,
        )

    def delay(self, attempts: int) -> timedelta:
        # Avoid computing huge powers once we are past the cap
        if attempts >= self.cap_seconds.bit_length():
            return timedelta(seconds=self.cap_seconds)
        return timedelta(seconds=min(2 ** max(attempts, 0), self.cap_seconds))

    def next_eligible(self, attempts: int, now: datetime) -> datetime:
        return now + self.delay(attempts)

    def should_give_up(self, attempts: int, max_attempts: Optional[int] = None) -> bool:
        limit = self.max_attempts if max_attempts is None else max_attempts
        return attempts >= limit

    def schedule(self, attempts: int, now: datetime, max_attempts: Optional[int] = None) -> datetime:
        """Return when the item becomes due again, or raise if it is out of attempts."""
        limit = self.max_attempts if max_attempts is None else max_attempts
        if self.should_give_up(attempts, limit):
            raise ExhaustedRetriesError(attempts, limit)
        return self.next_eligible(attempts, now)
