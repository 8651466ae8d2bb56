"""Sliding-window admission limit for a RequestThrottle.

Every attempt the throttle starts takes one slot in the window. When the
remote side pushes back with a `retry_after`, `hold()` closes the window for
that long for every caller sharing the limiter.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Callable, Deque

from steadyfetch.domain.models.common import RateLimitOptions

logger = logging.getLogger(__name__)


class RateLimiter:
    """Caps attempts at `max_requests` per `time_window` seconds."""

    def __init__(
        self,
        options: RateLimitOptions,
        *,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ):
        if options.max_requests < 1 or options.time_window <= 0:
            raise ValueError("max_requests and time_window must be positive")
        self.options = options
        self.name = name
        self._clock = clock
        self._admitted: Deque[float] = deque()
        self._held_until = 0.0
        self.waits = 0
        logger.info(
            f"RateLimiter '{name}' initialized: {options.max_requests} requests / {options.time_window}s"
        )

    async def acquire(self) -> float:
        """Waits for a free slot and takes it. Returns the seconds spent waiting."""
        waited = 0.0
        while True:
            wait = self.get_wait_time()
            if wait <= 0:
                self._admitted.append(self._clock())
                return waited
            if waited == 0:
                self.waits += 1
            logger.debug(f"Rate limit '{self.name}' reached. Waiting for {wait:.2f} seconds.")
            await asyncio.sleep(wait)
            waited += wait

    def hold(self, seconds: float) -> None:
        """Admits nothing for `seconds`; a shorter hold never shortens a longer one."""
        until = self._clock() + seconds
        if until > self._held_until:
            self._held_until = until
            logger.warning(f"Rate limit '{self.name}' holding all requests for {seconds:.1f}s")

    def get_wait_time(self) -> float:
        """Seconds until the next attempt may start (0 when one may start now)."""
        now = self._clock()
        while self._admitted and now - self._admitted[0] >= self.options.time_window:
            self._admitted.popleft()
        wait = self._held_until - now
        if len(self._admitted) >= self.options.max_requests:
            wait = max(wait, self._admitted[0] + self.options.time_window - now)
        return max(0.0, wait)
