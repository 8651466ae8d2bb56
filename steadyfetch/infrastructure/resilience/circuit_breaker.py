"""Circuit breaker guarding the remote API after resource exhaustion.

The whole state is a single `open_until` timestamp: while the clock is before
it, `check()` raises `CircuitOpenError` without any network call.
"""

import logging
import time
from typing import Callable, Optional

from steadyfetch.domain.errors import CircuitOpenError
from steadyfetch.domain.events.data_events import CircuitOpened
from steadyfetch.domain.events.dispatcher import EventDispatcher

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """Fail-fast gate that opens for a cooldown period."""

    def __init__(
        self,
        cooldown: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        events: Optional[EventDispatcher] = None,
    ):
        self.cooldown = cooldown
        self.open_until = 0.0
        self._clock = clock
        self._events = events

    @property
    def is_open(self) -> bool:
        return self._clock() < self.open_until

    def remaining(self) -> float:
        """Seconds until the breaker closes again (0 when closed)."""
        return max(0.0, self.open_until - self._clock())

    def trip(self, reason: str = "", retry_after: Optional[float] = None) -> None:
        """Opens the breaker for the cooldown, or longer if the server asked for it."""
        cooldown = max(self.cooldown, retry_after or 0.0)
        self.open_until = max(self.open_until, self._clock() + cooldown)
        logger.warning(f"Circuit opened for {cooldown:.1f}s: {reason or 'resource exhausted'}")
        if self._events:
            self._events.dispatch(CircuitOpened(open_until=self.open_until, cooldown_seconds=cooldown, reason=reason))

    def check(self) -> None:
        """Raises CircuitOpenError while the breaker is open."""
        if self.is_open:
            raise CircuitOpenError(self.remaining())

    def reset(self) -> None:
        if self.open_until:
            logger.info("Circuit breaker reset.")
        self.open_until = 0.0
