"""Application Service: coordinates one logical fetch operation.

Wraps a fetcher with observable loading/error/stale state, retries with
backoff, a circuit breaker, in-flight deduplication, supersession by forced
or dependency-triggered refetches, and cooperative cancellation.
"""

import asyncio
import logging
import time
from dataclasses import replace
from typing import Any, Awaitable, Callable, Generic, List, Optional, Set, Tuple, TypeVar, Union

from steadyfetch.domain.errors import (
    CircuitOpenError,
    ResourceExhaustionError,
    classify_exception,
    is_cancellation,
)
from steadyfetch.domain.events.data_events import RetryScheduled
from steadyfetch.domain.events.dispatcher import EventDispatcher
from steadyfetch.domain.models.common import FetchOptions
from steadyfetch.domain.models.state import FetchState
from steadyfetch.infrastructure.cache.cache_store import CacheStore
from steadyfetch.infrastructure.resilience.backoff import compute_backoff
from steadyfetch.infrastructure.resilience.circuit_breaker import CircuitBreaker
from steadyfetch.infrastructure.resilience.request_throttle import RequestThrottle

logger = logging.getLogger(__name__)

T = TypeVar("T")

StateListener = Callable[[FetchState], None]


class FetchCoordinator(Generic[T]):
    """Owns the state of one fetch and every attempt made for it."""

    def __init__(
        self,
        fetcher: Callable[[], Awaitable[T]],
        options: Optional[FetchOptions] = None,
        *,
        name: str = "fetch",
        cache_store: Optional[CacheStore] = None,
        cache_key: Optional[str] = None,
        throttle: Optional[RequestThrottle] = None,
        breaker: Optional[CircuitBreaker] = None,
        events: Optional[EventDispatcher] = None,
        on_success: Optional[Callable[[T], None]] = None,
        on_error: Optional[Callable[[BaseException], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.fetcher = fetcher
        self.options = options or FetchOptions()
        self.name = name
        self.cache_store = cache_store
        self.cache_key = cache_key
        self.throttle = throttle
        self.breaker = breaker or CircuitBreaker(cooldown=self.options.circuit_cooldown, events=events)
        self.on_success = on_success
        self.on_error = on_error
        self._events = events
        self._clock = clock

        self._state = FetchState()
        self._listeners: List[StateListener] = []
        self._task: Optional["asyncio.Task[Optional[T]]"] = None
        self._generation = 0
        self._debounce: Optional[asyncio.TimerHandle] = None
        self._background: Set["asyncio.Task[Any]"] = set()
        self._last_dependencies: Optional[Tuple[Any, ...]] = None
        self._last_success: Optional[float] = None
        self._closed = False

    # --- Observable state ---

    @property
    def state(self) -> FetchState:
        return self._state

    @property
    def is_loading(self) -> bool:
        return self._task is not None and not self._task.done()

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Calls `listener` with every new state; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_state(self, **changes: Any) -> None:
        self._state = replace(self._state, **changes)
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception as e:
                logger.error(f"State listener for '{self.name}' failed: {e}", exc_info=True)

    # --- Operations ---

    async def start(self) -> None:
        """Performs the initial fetch when `auto_fetch` is enabled."""
        if self.options.auto_fetch and not self.is_loading:
            self._spawn_fetch(force=False)

    async def fetch(self, force: bool = False) -> Optional[T]:
        """Fetches data, joining or superseding an attempt already in flight.

        A non-forced call while loading waits for the current attempt instead of
        starting another. A forced call cancels the current attempt first.

        Returns:
            The fetched (or cached) data. Superseded or cancelled attempts
            return the current state's data instead of raising.

        Raises:
            The final (classified) error once retries are exhausted, or
            CircuitOpenError while the breaker is open.
        """
        if self._closed:
            raise RuntimeError(f"FetchCoordinator '{self.name}' is closed")
        current = self._task
        if current is not None and not current.done():
            if not force:
                logger.debug(f"Fetch '{self.name}' already in flight; joining it")
                return await self._await_attempt(current)
            logger.debug(f"Forced fetch '{self.name}' supersedes the in-flight attempt")
            current.cancel()

        self._generation += 1
        task = asyncio.ensure_future(self._run(self._generation, force))
        task.add_done_callback(self._attempt_done)
        self._task = task
        return await self._await_attempt(task)

    async def refresh(self) -> Optional[T]:
        return await self.fetch(force=True)

    def set_data(self, value: Union[T, Callable[[Optional[T]], T]]) -> None:
        """Replaces the data locally, from a value or an updater of the current data."""
        data = value(self._state.data) if callable(value) else value
        self._set_state(data=data, is_stale=False)

    def reset(self) -> None:
        """Cancels any attempt and returns to the initial state."""
        self.cancel()
        self._last_success = None
        self._last_dependencies = None
        self._set_state(data=None, loading=False, error=None, is_stale=False)

    def cancel(self) -> None:
        """Cancels the in-flight attempt, its retry timer and the debounce timer."""
        if self._debounce is not None:
            self._debounce.cancel()
            self._debounce = None
        if self._task is not None and not self._task.done():
            logger.debug(f"Cancelling fetch '{self.name}'")
            self._task.cancel()
        for task in list(self._background):
            task.cancel()
        if self._state.loading:
            self._set_state(loading=False)

    async def close(self) -> None:
        """Cancels everything and waits for the attempts to unwind."""
        self.cancel()
        self._closed = True
        pending = [t for t in [self._task, *self._background] if t is not None and not t.done()]
        if pending:
            await asyncio.wait(pending)
        self._listeners.clear()

    def dependencies_changed(self, *dependencies: Any) -> None:
        """Schedules a debounced, superseding refetch when the dependencies differ."""
        if self._closed or dependencies == self._last_dependencies:
            return
        self._last_dependencies = dependencies
        if self._debounce is not None:
            self._debounce.cancel()
        loop = asyncio.get_running_loop()
        self._debounce = loop.call_later(self.options.debounce_delay, self._on_debounce_elapsed)

    def check_staleness(self) -> bool:
        """Marks the data stale once it is older than `cache_time`."""
        if self._last_success is None or self._state.data is None:
            return False
        stale = self._clock() - self._last_success > self.options.cache_time
        if stale != self._state.is_stale:
            self._set_state(is_stale=stale)
        return stale

    # --- Internals ---

    def _on_debounce_elapsed(self) -> None:
        self._debounce = None
        logger.debug(f"Dependencies changed for '{self.name}'; refetching")
        self._spawn_fetch(force=True)

    def _spawn_fetch(self, force: bool) -> None:
        task = asyncio.ensure_future(self.fetch(force=force))
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: "asyncio.Task[Any]") -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Background fetch '{self.name}' ended with {task.exception()!r}")

    def _attempt_done(self, task: "asyncio.Task[Any]") -> None:
        # Mark the outcome retrieved; callers (if any) still see it via result()
        if not task.cancelled():
            task.exception()

    async def _await_attempt(self, task: "asyncio.Task[Optional[T]]") -> Optional[T]:
        await asyncio.wait({task})
        if task.cancelled():
            return self._state.data
        return task.result()

    async def _run(self, generation: int, force: bool) -> Optional[T]:
        self._set_state(loading=True, error=None)
        try:
            if not force and self.cache_store is not None and self.cache_key:
                cached = await self.cache_store.get(self.cache_key)
                if cached is not None:
                    logger.debug(f"Fetch '{self.name}' served from cache key: {self.cache_key}")
                    self._complete(generation, cached)
                    return cached
            data = await self._attempt_with_retries()
        except asyncio.CancelledError:
            if generation == self._generation:
                self._set_state(loading=False)
            raise
        except Exception as e:
            if is_cancellation(e):
                if generation == self._generation:
                    self._set_state(loading=False)
                return self._state.data
            if generation == self._generation:
                logger.error(f"Fetch '{self.name}' failed: {type(e).__name__}: {e}")
                self._set_state(loading=False, error=str(e))
                if self.on_error:
                    self.on_error(e)
            raise

        if self.cache_store is not None and self.cache_key:
            await self.cache_store.set(self.cache_key, data, ttl=self.options.cache_time)
        self._complete(generation, data)
        return data

    def _complete(self, generation: int, data: T) -> None:
        if generation != self._generation:
            return
        self._last_success = self._clock()
        self._set_state(data=data, loading=False, error=None, is_stale=False)
        if self.on_success:
            self.on_success(data)

    async def _attempt_with_retries(self) -> T:
        policy = self.options.backoff_policy()
        attempt = 0
        while True:
            self.breaker.check()
            try:
                return await self._call_fetcher()
            except Exception as e:
                if is_cancellation(e) or isinstance(e, CircuitOpenError):
                    raise
                if isinstance(e, ResourceExhaustionError):
                    self.breaker.trip(reason=str(e), retry_after=e.retry_after)
                    raise
                if attempt >= self.options.retry_count:
                    raise
                attempt += 1
                delay = compute_backoff(attempt, policy)
                logger.warning(
                    f"Fetch '{self.name}' failed on attempt {attempt}/{self.options.retry_count + 1}: "
                    f"{type(e).__name__}. Retrying in {delay:.2f}s..."
                )
                if self._events:
                    self._events.dispatch(RetryScheduled(
                        source="fetch", attempt_number=attempt, delay_seconds=delay, error_type=type(e).__name__
                    ))
                await asyncio.sleep(delay)

    async def _call_fetcher(self) -> T:
        async def call() -> T:
            try:
                return await self.fetcher()
            except Exception as e:
                error = classify_exception(e)
                if error is e:
                    raise
                raise error from e

        if self.throttle is not None:
            return await self.throttle.add(call, retry=False)
        return await call()
