"""
Retry backoff for the logtap dispatcher.

The delay starts at a floor on the first failure, is multiplied on every
further failure up to a ceiling, and drops back to zero on success.

Usage:
    backoff = Backoff(BackoffConfig(floor=0.5, ceiling=30.0))

    backoff.bump()      # 0.5 after the first failure
    backoff.bump()      # 1.0
    backoff.pending     # 1.0, waited out before the next attempt
    backoff.reset()     # 0.0 after a success
"""

import logging
import random
import threading
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackoffConfig:
    """Configuration for exponential retry backoff."""

    floor: float = 0.5  # Delay after the first failure, in seconds
    ceiling: float = 30.0  # Maximum delay
    multiplier: float = 2.0
    jitter: float = 0.0  # Random jitter factor (0-1)


class Backoff:
    """
    Exponential backoff state shared by every flush trigger.

    A single instance lives on the dispatcher so that the ticker, the retry
    timer and explicit flush() calls all observe the same pending delay.
    """

    def __init__(self, config: BackoffConfig | None = None):
        self.config = config or BackoffConfig()
        self._delay = 0.0
        self._failures = 0
        self._lock = threading.Lock()

    @property
    def pending(self) -> float:
        """Delay to wait before the next attempt, 0 when healthy."""
        with self._lock:
            return self._with_jitter(self._delay)

    @property
    def failures(self) -> int:
        """Consecutive failures since the last success."""
        with self._lock:
            return self._failures

    def _with_jitter(self, delay: float) -> float:
        if delay <= 0 or self.config.jitter <= 0:
            return delay
        jitter_range = delay * self.config.jitter
        return max(0.0, delay + random.uniform(-jitter_range, jitter_range))

    def bump(self) -> float:
        """Record a failure and return the new delay."""
        with self._lock:
            if self._delay <= 0:
                self._delay = self.config.floor
            else:
                self._delay = min(self._delay * self.config.multiplier, self.config.ceiling)
            self._failures += 1
            logger.debug(f"Backoff raised to {self._delay:.2f}s after {self._failures} failure(s)")
            return self._delay

    def reset(self):
        """Record a success."""
        with self._lock:
            self._delay = 0.0
            self._failures = 0

    def get_stats(self) -> dict:
        with self._lock:
            return {
                "failures": self._failures,
                "current_delay": self._delay,
                "max_delay": self.config.ceiling,
            }
