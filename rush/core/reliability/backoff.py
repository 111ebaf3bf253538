"""
Bounded exponential backoff with jitter.

Shared by the fetcher (transient network errors) and the state lock
(contention). The policy only computes delays; callers decide what is
retryable. ``sleep`` is injectable so tests run without waiting.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class BackoffPolicy:
    """Retry schedule.

    Args:
        max_attempts: Total attempts including the first one.
        base_delay: Delay before the second attempt, in seconds.
        max_delay: Upper bound of a single delay.
        jitter: Fraction of the delay added at random (0 disables).
    """

    max_attempts: int = 4
    base_delay: float = 0.5
    max_delay: float = 8.0
    jitter: float = 0.3
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def delay_for(self, attempt: int) -> float:
        """Delay after failed attempt number ``attempt`` (1-based)."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay += random.uniform(0, delay * self.jitter)
        return delay

    def attempts(self) -> Iterator[int]:
        """Yield attempt numbers, sleeping between them.

        The caller ``break``s (or returns) on success; falling off the end
        means every attempt was used.
        """
        for attempt in range(1, self.max_attempts + 1):
            if attempt > 1:
                delay = self.delay_for(attempt - 1)
                logger.debug("Retry %d/%d in %.2fs", attempt, self.max_attempts, delay)
                self.sleep(delay)
            yield attempt


def no_wait(max_attempts: int = 4) -> BackoffPolicy:
    """Policy that retries without sleeping (tests, local sources)."""
    return BackoffPolicy(max_attempts=max_attempts, jitter=0.0, sleep=lambda _s: None)
