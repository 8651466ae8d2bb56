"""Application Service: optimistic mutations with rollback.

Each update shows its optimistic value immediately, runs the remote operation,
then either keeps the server-confirmed value or, after a short feedback
window, reverts to the snapshot taken before the update. Updates to the same
key form a strict FIFO chain of asyncio tasks.
"""

import asyncio
import itertools
import logging
import time
from collections import deque
from dataclasses import replace
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from steadyfetch.domain.errors import classify_exception, is_cancellation
from steadyfetch.domain.events.data_events import OptimisticRollback
from steadyfetch.domain.events.dispatcher import EventDispatcher
from steadyfetch.domain.models.common import OptimisticOptions
from steadyfetch.domain.models.state import OperationStatus, OptimisticOperation, OptimisticState
from steadyfetch.infrastructure.cache.cache_store import CacheStore

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 100

StateListener = Callable[[str, OptimisticState], None]


class _PendingUpdate:
    """Bookkeeping for an update that has not resolved yet."""

    def __init__(self, operation: OptimisticOperation):
        self.operation = operation
        self.task: Optional["asyncio.Task[None]"] = None
        self.applied = False
        self.snapshot: Any = None


class OptimisticMutationQueue:
    """Per-key optimistic state with FIFO serialization and rollback."""

    def __init__(
        self,
        defaults: Optional[OptimisticOptions] = None,
        *,
        cache_store: Optional[CacheStore] = None,
        events: Optional[EventDispatcher] = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.defaults = defaults or OptimisticOptions()
        self.cache_store = cache_store
        self._events = events
        self._clock = clock
        self._states: Dict[str, OptimisticState] = {}
        self._pending: Dict[str, List[_PendingUpdate]] = {}
        self._tails: Dict[str, "asyncio.Task[None]"] = {}
        self._history: Deque[OptimisticOperation] = deque(maxlen=history_limit)
        self._listeners: List[StateListener] = []
        self._ids = itertools.count(1)

    # --- Observable state ---

    def state(self, key: str) -> OptimisticState:
        return self._states.get(key, OptimisticState())

    def seed(self, key: str, value: Any) -> None:
        """Sets the confirmed value for a key without any remote call."""
        self._set_state(key, data=value, is_pending=False, is_rolling_back=False, error=None)

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Calls `listener(key, state)` on every change; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_state(self, key: str, **changes: Any) -> None:
        state = replace(self.state(key), **changes)
        self._states[key] = state
        for listener in list(self._listeners):
            try:
                listener(key, state)
            except Exception as e:
                logger.error(f"Optimistic state listener failed for key={key}: {e}", exc_info=True)

    # --- Operations ---

    async def update(
        self,
        key: str,
        value: Any,
        remote_op: Callable[[], Awaitable[Any]],
        options: Optional[OptimisticOptions] = None,
        **overrides: Any,
    ) -> OptimisticOperation:
        """Applies `value` optimistically and reconciles it with `remote_op()`.

        `value` may be a callable receiving the previous data. Waits until the
        update is fully resolved (including the rollback window on failure)
        and returns its history record; remote failures are reported through
        the record status, the state's error and the callbacks, not raised.
        """
        opts = replace(options or self.defaults, **overrides)
        operation = OptimisticOperation(id=f"{key}#{next(self._ids)}", key=key, started_at=self._clock())
        self._history.append(operation)

        if opts.cancel_previous:
            self._supersede(key)

        pending = _PendingUpdate(operation)
        previous = self._tails.get(key)
        task = asyncio.ensure_future(self._run(key, value, remote_op, opts, pending, previous))
        pending.task = task
        self._pending.setdefault(key, []).append(pending)
        self._tails[key] = task
        task.add_done_callback(lambda done, key=key, pending=pending: self._forget(key, pending, done))

        await asyncio.wait({task})
        return operation

    def cancel(self, key: str) -> int:
        """Cancels every unresolved update for `key`, restoring its snapshot."""
        return self._supersede(key, reason="cancelled")

    def cancel_all(self) -> int:
        return sum(self.cancel(key) for key in list(self._pending))

    async def wait_for_all(self) -> None:
        """Waits until every queued update has resolved."""
        tasks = [p.task for updates in self._pending.values() for p in updates if p.task is not None]
        if tasks:
            await asyncio.wait(tasks)

    def history(self) -> List[OptimisticOperation]:
        return list(self._history)

    def clear_history(self) -> None:
        self._history.clear()

    def is_active(self, key: str) -> bool:
        return bool(self._pending.get(key))

    def active_count(self) -> int:
        return sum(len(updates) for updates in self._pending.values())

    def reset(self, key: Optional[str] = None) -> None:
        """Cancels pending updates and drops state for one key or all keys."""
        keys = [key] if key is not None else list(set(self._states) | set(self._pending))
        for current in keys:
            self.cancel(current)
            self._states.pop(current, None)

    # --- Internals ---

    async def _run(
        self,
        key: str,
        value: Any,
        remote_op: Callable[[], Awaitable[Any]],
        opts: OptimisticOptions,
        pending: _PendingUpdate,
        previous: Optional["asyncio.Task[None]"],
    ) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait({previous})

        operation = pending.operation
        snapshot = self.state(key).data
        optimistic = value(snapshot) if callable(value) else value
        pending.snapshot = snapshot
        pending.applied = True
        self._set_state(key, data=optimistic, is_pending=True, is_rolling_back=False, error=None)
        logger.debug(f"Applied optimistic update {operation.id}")

        try:
            confirmed = await remote_op()
        except Exception as e:
            if is_cancellation(e):
                self._restore(key, pending, reason="cancelled")
                return
            await self._roll_back(key, pending, opts, classify_exception(e))
            return

        pending.applied = False
        data = optimistic if confirmed is None else confirmed
        self._set_state(key, data=data, is_pending=False, is_rolling_back=False, error=None)
        self._finish(operation, OperationStatus.SUCCESS)
        logger.debug(f"Optimistic update {operation.id} confirmed")
        if opts.on_success:
            self._invoke(opts.on_success, data)
        await self._invalidate(opts.invalidate_patterns)

    async def _roll_back(
        self, key: str, pending: _PendingUpdate, opts: OptimisticOptions, error: BaseException
    ) -> None:
        operation = pending.operation
        operation.status = OperationStatus.FAILED
        logger.warning(f"Optimistic update {operation.id} failed: {type(error).__name__}: {error}. Rolling back.")
        self._set_state(key, is_pending=False, is_rolling_back=True, error=str(error))
        if opts.on_error:
            self._invoke(opts.on_error, error, pending.snapshot)

        # Optimistic value stays visible during the feedback window
        await asyncio.sleep(opts.rollback_delay)

        pending.applied = False
        self._set_state(key, data=pending.snapshot, is_pending=False, is_rolling_back=False, error=None)
        self._finish(operation, OperationStatus.ROLLED_BACK)
        self._dispatch(OptimisticRollback(key=key, operation_id=operation.id, reason=type(error).__name__))
        if opts.on_rollback:
            self._invoke(opts.on_rollback, pending.snapshot)

    def _supersede(self, key: str, reason: str = "superseded") -> int:
        updates = list(self._pending.get(key, []))
        # Only the head of the chain can have applied its value
        for pending in updates:
            if pending.applied:
                self._restore(key, pending, reason=reason)
        for pending in updates:
            if pending.operation.status is OperationStatus.PENDING:
                self._finish(pending.operation, OperationStatus.ROLLED_BACK)
            if pending.task is not None and not pending.task.done():
                pending.task.cancel()
        if updates:
            logger.info(f"{reason.capitalize()} {len(updates)} pending update(s) for key={key}")
        return len(updates)

    def _restore(self, key: str, pending: _PendingUpdate, reason: str) -> None:
        if not pending.applied:
            return
        pending.applied = False
        self._set_state(key, data=pending.snapshot, is_pending=False, is_rolling_back=False, error=None)
        if pending.operation.status is not OperationStatus.ROLLED_BACK:
            self._finish(pending.operation, OperationStatus.ROLLED_BACK)
        self._dispatch(OptimisticRollback(key=key, operation_id=pending.operation.id, reason=reason))

    def _forget(self, key: str, pending: _PendingUpdate, task: "asyncio.Task[None]") -> None:
        updates = self._pending.get(key)
        if updates and pending in updates:
            updates.remove(pending)
            if not updates:
                del self._pending[key]
        if self._tails.get(key) is task:
            del self._tails[key]
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Optimistic update {pending.operation.id} crashed: {task.exception()!r}")

    def _finish(self, operation: OptimisticOperation, status: OperationStatus) -> None:
        operation.status = status
        operation.duration = self._clock() - operation.started_at

    async def _invalidate(self, patterns: Any) -> None:
        if self.cache_store is None:
            return
        for pattern in patterns:
            try:
                await self.cache_store.invalidate(pattern)
            except Exception as e:
                logger.warning(f"Cache invalidation for '{pattern}' failed: {e}")

    @staticmethod
    def _invoke(callback: Callable[..., Any], *args: Any) -> None:
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"Optimistic update callback {callback!r} failed: {e}", exc_info=True)

    def _dispatch(self, event: Any) -> None:
        if self._events:
            self._events.dispatch(event)
