"""
Sliding-window rate limiting for forwarded requests.
"""

import time
from collections import deque
from typing import Callable, Deque

from mcp_shim.logging_config import get_logger

logger = get_logger(__name__)

WINDOW_SECONDS = 60.0


class RateLimiter:
    """
    Counts requests over the last minute.

    The window slides with each check rather than resetting on minute
    boundaries.
    """

    def __init__(
        self,
        limit_per_minute: int,
        clock: Callable[[], float] = time.monotonic,
        window_seconds: float = WINDOW_SECONDS,
    ):
        self.limit_per_minute = limit_per_minute
        self.window_seconds = window_seconds
        self._clock = clock
        self._timestamps: Deque[float] = deque()

    def would_exceed(self) -> bool:
        """Drop timestamps older than the window, then check the ceiling."""
        now = self._clock()
        while self._timestamps and now - self._timestamps[0] >= self.window_seconds:
            self._timestamps.popleft()
        exceeded = len(self._timestamps) >= self.limit_per_minute
        if exceeded:
            logger.debug(
                "Rate window full: %d requests in the last %.0fs",
                len(self._timestamps),
                self.window_seconds,
            )
        return exceeded

    def record(self) -> None:
        self._timestamps.append(self._clock())

    @property
    def count(self) -> int:
        """Timestamps currently held (not pruned until the next check)."""
        return len(self._timestamps)
