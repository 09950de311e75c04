"""
Timing Utilities - Deadlines and jittered sleeps for bounded retry loops.
"""

import random
import time
from typing import Optional


def random_sleep() -> None:
    """Sleep 8 to 17 milliseconds to desynchronize competing processes."""
    time.sleep(random.randint(8, 17) / 1000)


class Deadline:
    """
    Point in time after which a blocking operation must give up.

    Args:
        timeout_ms: Milliseconds from now, or None for no deadline
    """

    def __init__(self, timeout_ms: Optional[int]) -> None:
        if timeout_ms is None:
            self._expires_at = None
        else:
            self._expires_at = time.monotonic() + max(timeout_ms, 0) / 1000

    def remaining(self) -> Optional[float]:
        """Seconds left (never negative), or None when unbounded."""
        if self._expires_at is None:
            return None
        return max(self._expires_at - time.monotonic(), 0.0)

    def expired(self) -> bool:
        return self._expires_at is not None and time.monotonic() >= self._expires_at
