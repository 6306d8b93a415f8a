"""Deadline value object used to time-box job runs.

A ``Deadline`` is advisory to source adapters (they stop paging once it has
expired and report ``has_more=True``) and the budget the scheduler hands to
every bounded run.
"""

from __future__ import annotations

import math
import time
from collections.abc import Callable


class Deadline:
    """A point in time on a monotonic clock.

    The clock is injectable so paging behaviour can be exercised without
    sleeping.
    """

    def __init__(self, expires_at: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.expires_at = expires_at
        self._clock = clock

    @classmethod
    def after(cls, seconds: float, clock: Callable[[], float] = time.monotonic) -> Deadline:
        return cls(clock() + seconds, clock)

    @classmethod
    def never(cls) -> Deadline:
        return cls(math.inf)

    def remaining(self) -> float:
        """Seconds left before expiry, never negative."""
        return max(0.0, self.expires_at - self._clock())

    def expired(self) -> bool:
        return self._clock() >= self.expires_at

    def __repr__(self) -> str:
        if math.isinf(self.expires_at):
            return "Deadline(never)"
        return f"Deadline(remaining={self.remaining():.3f}s)"
