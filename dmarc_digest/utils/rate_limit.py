"""
Client-side rate limiting for outbound lookups.

Built on ``limits`` with a moving window. Callers block in ``acquire()``
until the window has room, so a burst of lookups is spread out instead of
being rejected by the provider.

Usage:
    limiter = RateLimiter(requests_per_minute=45)
    limiter.acquire()
    response = requests.get(...)
"""
import logging
import time
from typing import Callable, Optional

from limits import RateLimitItemPerMinute
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter, RateLimiter as LimitsStrategy

logger = logging.getLogger(__name__)


class RateLimiter:
    """Allow at most ``requests_per_minute`` acquisitions in any 60 second window"""

    def __init__(
        self,
        requests_per_minute: int,
        key: str = "geolocation",
        strategy: Optional[LimitsStrategy] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if requests_per_minute < 1:
            raise ValueError("requests_per_minute must be at least 1")

        self.item = RateLimitItemPerMinute(requests_per_minute)
        self.key = key
        self._strategy = strategy or MovingWindowRateLimiter(MemoryStorage())
        self._clock = clock
        self._sleep = sleep

    def acquire(self) -> float:
        """
        Wait until the window has room and take a slot

        Returns:
            Seconds spent waiting
        """
        waited = 0.0
        while not self._strategy.hit(self.item, self.key):
            reset_time = self._strategy.get_window_stats(self.item, self.key).reset_time
            delay = max(reset_time - self._clock(), 0.01)

            logger.debug(f"Rate limit reached, waiting {delay:.2f}s")
            self._sleep(delay)
            waited += delay

        return waited
