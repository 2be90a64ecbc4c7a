"""
Bounded polling policy.

Decides how long to wait between prediction status checks and when to give up.
"""

import math
from dataclasses import dataclass
from typing import Iterator, Optional

# Ceiling for a backoff schedule that names no max_interval
DEFAULT_MAX_INTERVAL = 300.0


@dataclass(frozen=True)
class PollPolicy:
    """Fixed-interval polling with optional exponential backoff.

    ``max_attempts`` bounds the number of status checks after the
    prediction is created; exceeding it is a timeout.
    """
    max_attempts: int = 300
    interval: float = 1.0
    backoff: float = 1.0
    max_interval: Optional[float] = None

    def __post_init__(self):
        if self.max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        if self.interval < 0:
            raise ValueError("interval must be >= 0")
        if self.backoff < 1:
            raise ValueError("backoff must be >= 1")
        if self.max_interval is not None and self.max_interval < self.interval:
            raise ValueError("max_interval must be >= interval")

    @classmethod
    def from_settings(cls, settings) -> "PollPolicy":
        """Build a policy from ``PollSettings``."""
        return cls(
            max_attempts=settings.max_attempts,
            interval=settings.interval_seconds,
            backoff=settings.backoff,
            max_interval=settings.max_interval_seconds,
        )

    @property
    def ceiling(self) -> float:
        """Longest single wait the schedule can reach."""
        if self.max_interval is not None:
            return self.max_interval
        return max(self.interval, DEFAULT_MAX_INTERVAL)

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait before the given zero-based attempt."""
        if self.backoff == 1 or self.interval == 0:
            return min(self.interval, self.ceiling)
        # Past this exponent the ceiling always wins; stop before the float overflows
        last_growing = math.ceil(math.log(self.ceiling / self.interval, self.backoff))
        exponent = min(attempt, max(last_growing, 0))
        return min(self.interval * (self.backoff ** exponent), self.ceiling)

    def delays(self) -> Iterator[float]:
        for attempt in range(self.max_attempts):
            yield self.delay_for(attempt)

    @property
    def total_wait(self) -> float:
        """Longest time spent sleeping before a timeout fires."""
        return sum(self.delays())
