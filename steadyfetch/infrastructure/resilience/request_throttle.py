"""Concurrency-limited dispatcher for remote calls.

At most `max_concurrent` operations run at once; the rest wait in a FIFO
queue and start as slots free. Failed operations are retried in place (the
slot stays held) with a linear delay, plus an extra backoff when the failure
signals resource exhaustion. An attached RateLimiter gates every attempt.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, List, Optional, Sequence, Set, TypeVar

from steadyfetch.domain.errors import ResourceExhaustionError, classify_exception
from steadyfetch.domain.events.data_events import RequestQueued, RetryScheduled
from steadyfetch.domain.events.dispatcher import EventDispatcher
from steadyfetch.domain.models.common import ThrottleOptions
from steadyfetch.domain.models.state import ThrottleStatus
from steadyfetch.infrastructure.resilience.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class ThrottleTask:
    """A queued unit of work and the future its caller awaits."""
    operation: Callable[[], Awaitable[Any]]
    future: "asyncio.Future[Any]"
    retry: bool = True
    attempts: int = 0


class RequestThrottle:
    """Runs async operations with bounded concurrency and retries."""

    def __init__(
        self,
        options: Optional[ThrottleOptions] = None,
        *,
        name: str = "default",
        rate_limiter: Optional[RateLimiter] = None,
        events: Optional[EventDispatcher] = None,
    ):
        self.options = options or ThrottleOptions()
        if self.options.max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.name = name
        self.rate_limiter = rate_limiter
        self._events = events
        self._queue: Deque[ThrottleTask] = deque()
        self._runners: Set["asyncio.Task[None]"] = set()
        self._active = 0
        self._peak_active = 0
        self._completed = 0
        self._failed = 0
        logger.info(
            f"RequestThrottle '{name}' initialized: max_concurrent={self.options.max_concurrent}, "
            f"max_retries={self.options.max_retries}, retry_on_failure={self.options.retry_on_failure}"
        )

    async def add(self, operation: Callable[[], Awaitable[T]], *, retry: bool = True) -> T:
        """Schedules `operation` and waits for its result.

        With `retry=False` a failure is raised after the single attempt, for
        callers that run their own retry policy.

        Raises:
            The last (classified) error once retries are exhausted.
            asyncio.CancelledError: If the task was removed by `clear()`.
        """
        future: "asyncio.Future[Any]" = asyncio.get_running_loop().create_future()
        self._queue.append(ThrottleTask(operation=operation, future=future, retry=retry))
        if self._active >= self.options.max_concurrent:
            logger.debug(f"Throttle '{self.name}' saturated; {len(self._queue)} queued, {self._active} active")
            self._dispatch(RequestQueued(throttle=self.name, queued=len(self._queue), active=self._active))
        self._pump()
        return await future

    async def process_batch(
        self,
        items: Sequence[T],
        fn: Callable[[T], Awaitable[R]],
        batch_size: Optional[int] = None,
    ) -> List[Optional[R]]:
        """Applies `fn` to every item in chunks; failed items resolve to None.

        Results keep the order of `items`.
        """
        size = batch_size or self.options.max_concurrent
        results: List[Optional[R]] = []
        for start in range(0, len(items), size):
            chunk = items[start:start + size]
            outcomes = await asyncio.gather(
                *(self.add(lambda item=item: fn(item)) for item in chunk),
                return_exceptions=True,
            )
            for item, outcome in zip(chunk, outcomes):
                if isinstance(outcome, BaseException):
                    logger.warning(f"Batch item {item!r} failed in throttle '{self.name}': {outcome!r}")
                    results.append(None)
                else:
                    results.append(outcome)
            if start + size < len(items) and self.options.delay_between_batches > 0:
                await asyncio.sleep(self.options.delay_between_batches)
        return results

    def get_status(self) -> ThrottleStatus:
        return ThrottleStatus(
            queued=len(self._queue),
            active=self._active,
            max_concurrent=self.options.max_concurrent,
            peak_active=self._peak_active,
            completed=self._completed,
            failed=self._failed,
            rate_limited=self.rate_limiter.waits if self.rate_limiter else 0,
        )

    def clear(self) -> int:
        """Cancels every queued (not yet started) task. Returns how many."""
        cancelled = 0
        while self._queue:
            task = self._queue.popleft()
            if not task.future.done():
                task.future.cancel()
                cancelled += 1
        if cancelled:
            logger.info(f"Cleared {cancelled} queued task(s) from throttle '{self.name}'")
        return cancelled

    def _pump(self) -> None:
        while self._queue and self._active < self.options.max_concurrent:
            task = self._queue.popleft()
            if task.future.done():
                # Caller gave up while queued
                continue
            self._active += 1
            self._peak_active = max(self._peak_active, self._active)
            runner = asyncio.ensure_future(self._run(task))
            self._runners.add(runner)
            runner.add_done_callback(self._runners.discard)

    async def _run(self, task: ThrottleTask) -> None:
        try:
            result = await self._execute(task)
        except asyncio.CancelledError:
            if not task.future.done():
                task.future.cancel()
            raise
        except Exception as e:
            self._failed += 1
            if not task.future.done():
                task.future.set_exception(e)
        else:
            self._completed += 1
            if not task.future.done():
                task.future.set_result(result)
        finally:
            self._active -= 1
            self._pump()

    async def _execute(self, task: ThrottleTask) -> Any:
        while True:
            task.attempts += 1
            if self.rate_limiter is not None:
                await self.rate_limiter.acquire()
            try:
                return await task.operation()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = classify_exception(e)
                if isinstance(error, ResourceExhaustionError) and error.retry_after and self.rate_limiter:
                    self.rate_limiter.hold(error.retry_after)
                retries_left = (
                    task.retry and self.options.retry_on_failure and task.attempts <= self.options.max_retries
                )
                if not retries_left or task.future.done():
                    logger.error(
                        f"Operation failed in throttle '{self.name}' after {task.attempts} attempt(s): "
                        f"{type(error).__name__}: {error}"
                    )
                    if error is e:
                        raise
                    raise error from e

                delay = self.options.retry_delay * task.attempts
                if isinstance(error, ResourceExhaustionError):
                    delay += self.options.exhaustion_backoff * task.attempts
                logger.warning(
                    f"Retryable error in throttle '{self.name}' on attempt {task.attempts}/"
                    f"{self.options.max_retries + 1}: {type(error).__name__}. Waiting {delay:.2f}s..."
                )
                self._dispatch(RetryScheduled(
                    source="throttle",
                    attempt_number=task.attempts,
                    delay_seconds=delay,
                    error_type=type(error).__name__,
                ))
                await asyncio.sleep(delay)

    def _dispatch(self, event: Any) -> None:
        if self._events:
            self._events.dispatch(event)
