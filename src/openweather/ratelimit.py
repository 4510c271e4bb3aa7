"""Fixed-window call budget for outbound API calls.

One RateLimiter instance budgets the whole process: every fingerprint
draws from the same window. The window starts at construction and
restarts at the first call made after it has elapsed, so it is not
aligned to calendar minutes. A burst straddling a window boundary can
therefore admit up to twice ``max_calls`` in a short span.

The limiter holds no lock. It is meant to be used from a single asyncio
event loop, where admit() runs without interleaving.

Example:
    >>> limiter = RateLimiter(max_calls=50, window=60.0)
    >>> if not limiter.admit():
    ...     raise OpenWeatherRateLimitError(limiter.retry_after())
"""

import logging
import time
from typing import Callable

from .types import MAX_CALLS_PER_WINDOW, RATE_WINDOW_SECONDS

logger = logging.getLogger(__name__)


class RateLimiter:
    """Fixed-window counter.

    Args:
        max_calls: Calls admitted per window. Defaults to 50.
        window: Window length in seconds. Defaults to 60.
        clock: Callable returning the current time in seconds.

    Attributes:
        call_count: Calls admitted in the current window.
        window_start: Clock reading at which the current window began.
    """

    def __init__(
        self,
        max_calls: int = MAX_CALLS_PER_WINDOW,
        window: float = RATE_WINDOW_SECONDS,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_calls = max_calls
        self.window = window
        self._clock = clock
        self.call_count = 0
        self.window_start = clock()

    def _roll_window(self, now: float) -> None:
        if now - self.window_start > self.window:
            self.call_count = 0
            self.window_start = now

    def admit(self) -> bool:
        """Try to spend one call from the budget.

        Returns:
            True if the call is admitted (the counter is incremented),
            False if the window's budget is exhausted.
        """
        self._roll_window(self._clock())
        if self.call_count >= self.max_calls:
            logger.warning(
                f"Rate limit reached ({self.call_count}/{self.max_calls}), "
                f"retry in {self.retry_after():.1f}s"
            )
            return False
        self.call_count += 1
        return True

    @property
    def remaining(self) -> int:
        """Calls still available in the current window."""
        now = self._clock()
        if now - self.window_start > self.window:
            return self.max_calls
        return max(0, self.max_calls - self.call_count)

    def retry_after(self) -> float:
        """Seconds until the current window can be reset."""
        elapsed = self._clock() - self.window_start
        return max(0.0, self.window - elapsed)

    def reset(self) -> None:
        self.call_count = 0
        self.window_start = self._clock()
