"""Strategy-based offline cache with a deferred-write sync queue.

Three tables share one KeyValueStore under key prefixes:

- ``cache/<key>``: fetched values with their timestamp and category,
- ``syncQueue/<seq>``: mutations attempted while offline, replayed oldest first,
- ``preferences/<key>``: small user settings.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Set, TypeVar

from steadyfetch.domain.errors import OfflineUnavailableError, classify_exception, is_cancellation
from steadyfetch.domain.events.data_events import StaleDataServed, SyncOperationQueued, SyncOperationReplayed
from steadyfetch.domain.events.dispatcher import EventDispatcher
from steadyfetch.domain.interfaces.key_value_store import KeyValueStore
from steadyfetch.domain.models.cache import OfflineCacheStats
from steadyfetch.domain.models.common import FetchStrategy
from steadyfetch.domain.models.state import SyncQueueEntry, SyncReport
from steadyfetch.infrastructure.connectivity.monitor import ConnectivityMonitor
from steadyfetch.infrastructure.storage.sizing import estimate_size

logger = logging.getLogger(__name__)

T = TypeVar("T")

CACHE_TABLE = "cache/"
SYNC_QUEUE_TABLE = "syncQueue/"
PREFERENCES_TABLE = "preferences/"

SyncOperation = Callable[[], Awaitable[Any]]
# Replays an entry persisted by an earlier process, given its metadata
SyncHandler = Callable[[Optional[Dict[str, Any]]], Awaitable[Any]]


@dataclass
class CacheConfig:
    """Caching policy for one logical data category."""
    name: str
    version: int = 1
    max_age: float = 5 * 60
    strategy: FetchStrategy = FetchStrategy.NETWORK_FIRST
    max_size: Optional[int] = None


DEFAULT_CACHE_CONFIGS = (
    CacheConfig(name="meetings", max_age=5 * 60, strategy=FetchStrategy.STALE_WHILE_REVALIDATE),
    CacheConfig(name="races", max_age=10 * 60, strategy=FetchStrategy.CACHE_FIRST),
    CacheConfig(name="contestants", max_age=15 * 60, strategy=FetchStrategy.CACHE_FIRST),
    CacheConfig(name="static", max_age=24 * 60 * 60, strategy=FetchStrategy.CACHE_FIRST),
)


@dataclass
class _CachedValue:
    data: Any
    timestamp: float


class OfflineCache:
    """Serves data according to per-category strategies, online or offline."""

    def __init__(
        self,
        store: KeyValueStore,
        *,
        connectivity: Optional[ConnectivityMonitor] = None,
        configs: Iterable[CacheConfig] = DEFAULT_CACHE_CONFIGS,
        sync_handlers: Optional[Mapping[str, SyncHandler]] = None,
        clock: Callable[[], float] = time.time,
        events: Optional[EventDispatcher] = None,
    ):
        self.store = store
        self.connectivity = connectivity or ConnectivityMonitor()
        self.sync_handlers: Dict[str, SyncHandler] = dict(sync_handlers or {})
        self._clock = clock
        self._events = events
        self._configs: Dict[str, CacheConfig] = {}
        for config in configs:
            self.register_cache(config)

        self._pending_operations: Dict[int, SyncOperation] = {}
        self._queued_entries: Dict[int, SyncQueueEntry] = {}
        self._sequence: Optional[int] = None
        self._sync_lock = asyncio.Lock()
        self._background: Set["asyncio.Task[Any]"] = set()
        self._unsubscribe = self.connectivity.subscribe(self._on_connectivity_change)
        logger.info(f"OfflineCache initialized with categories: {sorted(self._configs)}")

    @property
    def is_online(self) -> bool:
        return self.connectivity.is_online()

    def register_cache(self, config: CacheConfig) -> None:
        """Adds or replaces the policy for a category."""
        self._configs[config.name] = replace(config, strategy=FetchStrategy(config.strategy))

    def config_for(self, strategy_name: str) -> CacheConfig:
        config = self._configs.get(strategy_name)
        if config is None:
            config = CacheConfig(name=strategy_name, max_age=5 * 60, strategy=FetchStrategy.NETWORK_FIRST)
        return config

    # --- Reads ---

    async def get_data(self, key: str, fetcher: Callable[[], Awaitable[T]], strategy_name: str = "default") -> T:
        """Returns data for `key` using the strategy registered for `strategy_name`.

        Raises:
            OfflineUnavailableError: Offline (or the fetch failed) and nothing is cached.
        """
        config = self.config_for(strategy_name)
        if not self.is_online:
            # Every strategy serves offline reads through the stale path
            return self._serve_offline(key, await self._read(key, config))
        if config.strategy is FetchStrategy.CACHE_FIRST:
            return await self._cache_first(key, fetcher, config)
        if config.strategy is FetchStrategy.STALE_WHILE_REVALIDATE:
            return await self._stale_while_revalidate(key, fetcher, config)
        return await self._network_first(key, fetcher, config)

    async def _cache_first(self, key: str, fetcher: Callable[[], Awaitable[T]], config: CacheConfig) -> T:
        cached = await self._read(key, config)
        if cached is not None and not self._is_expired(cached, config):
            logger.debug(f"Offline cache hit (cache-first) for key: {key}")
            return cached.data
        try:
            return await self._fetch_and_save(key, fetcher, config)
        except Exception as e:
            if is_cancellation(e) or cached is None:
                raise
            return self._serve_stale(key, cached, reason=f"fetch error: {type(e).__name__}")

    async def _network_first(self, key: str, fetcher: Callable[[], Awaitable[T]], config: CacheConfig) -> T:
        try:
            return await self._fetch_and_save(key, fetcher, config)
        except Exception as e:
            if is_cancellation(e):
                raise
            logger.error(f"Network fetch failed for key={key}: {type(e).__name__}: {e}")
            cached = await self._read(key, config)
            if cached is None:
                raise
            return self._serve_stale(key, cached, reason=f"fetch error: {type(e).__name__}")

    async def _stale_while_revalidate(self, key: str, fetcher: Callable[[], Awaitable[T]], config: CacheConfig) -> T:
        cached = await self._read(key, config)
        if cached is not None and not self._is_expired(cached, config):
            self._spawn(self._revalidate(key, fetcher, config))
            return cached.data
        try:
            return await self._fetch_and_save(key, fetcher, config)
        except Exception as e:
            if is_cancellation(e) or cached is None:
                raise
            return self._serve_stale(key, cached, reason=f"fetch error: {type(e).__name__}")

    async def _revalidate(self, key: str, fetcher: Callable[[], Awaitable[Any]], config: CacheConfig) -> None:
        try:
            await self._fetch_and_save(key, fetcher, config)
            logger.debug(f"Background revalidation refreshed key: {key}")
        except Exception as e:
            logger.error(f"Background revalidation failed for key={key}: {type(e).__name__}: {e}")

    async def _fetch_and_save(self, key: str, fetcher: Callable[[], Awaitable[T]], config: CacheConfig) -> T:
        try:
            data = await fetcher()
        except Exception as e:
            error = classify_exception(e)
            if error is e:
                raise
            raise error from e
        await self._save(key, data, config)
        return data

    def _serve_stale(self, key: str, cached: _CachedValue, reason: str) -> Any:
        age = self._clock() - cached.timestamp
        logger.warning(f"Using stale cache for key={key} ({reason}, age {age:.0f}s)")
        self._dispatch(StaleDataServed(key=key, reason=reason, age_seconds=age))
        return cached.data

    def _serve_offline(self, key: str, cached: Optional[_CachedValue]) -> Any:
        if cached is None:
            raise OfflineUnavailableError(f"Offline and no cached data available for '{key}'")
        return self._serve_stale(key, cached, reason="offline")

    def _is_expired(self, cached: _CachedValue, config: CacheConfig) -> bool:
        return self._clock() - cached.timestamp > config.max_age

    async def _read(self, key: str, config: CacheConfig) -> Optional[_CachedValue]:
        try:
            record = await self.store.get(f"{CACHE_TABLE}{key}")
        except Exception as e:
            logger.warning(f"Offline cache read failed for key={key}: {e}")
            return None
        if record is None:
            return None
        if int(record.get("version", config.version)) != config.version:
            logger.debug(f"Ignoring cached key={key} from an older '{config.name}' version")
            return None
        return _CachedValue(data=record.get("data"), timestamp=float(record.get("timestamp", 0.0)))

    async def _save(self, key: str, data: Any, config: CacheConfig) -> None:
        size = estimate_size(data)
        if config.max_size is not None and size > config.max_size:
            logger.warning(f"Not caching key={key}: {size} bytes exceeds '{config.name}' limit of {config.max_size}")
            return
        record = {
            "key": f"{CACHE_TABLE}{key}",
            "data": data,
            "timestamp": self._clock(),
            "size": size,
            "category": config.name,
            "version": config.version,
        }
        try:
            await self.store.put(record)
        except Exception as e:
            logger.warning(f"Could not persist key={key} to offline cache: {e}")

    # --- Sync queue ---

    async def queue_for_sync(
        self,
        operation: SyncOperation,
        metadata: Optional[Dict[str, Any]] = None,
        name: Optional[str] = None,
    ) -> Optional[SyncQueueEntry]:
        """Runs `operation` now if online, otherwise defers it.

        Args:
            operation: Zero-argument coroutine function performing the mutation.
            metadata: JSON-friendly description stored with the entry.
            name: Operation name; entries whose name matches a registered
                sync handler can be replayed by a later process.

        Returns:
            The queued entry, or None when the operation ran immediately.
        """
        if self.is_online:
            await operation()
            return None

        entry_id = await self._next_sequence()
        entry = SyncQueueEntry(
            id=entry_id,
            operation=name or getattr(operation, "__name__", repr(operation)),
            metadata=metadata,
            timestamp=self._clock(),
        )
        self._pending_operations[entry_id] = operation
        self._queued_entries[entry_id] = entry
        try:
            await self.store.put(entry.to_record(self._sync_key(entry_id)))
        except Exception as e:
            logger.warning(f"Could not persist sync entry {entry_id}; keeping it in memory only: {e}")
        logger.info(f"Queued '{entry.operation}' for sync (id={entry_id})")
        self._dispatch(SyncOperationQueued(entry_id=entry_id, operation=entry.operation, metadata=metadata))
        return entry

    async def pending_sync_entries(self) -> List[SyncQueueEntry]:
        """Queued entries, oldest first, including ones from earlier processes."""
        entries: Dict[int, SyncQueueEntry] = {}
        try:
            for record in await self.store.iterate(SYNC_QUEUE_TABLE):
                entry = SyncQueueEntry.from_record(record)
                entries[entry.id] = entry
        except Exception as e:
            logger.warning(f"Could not read the persisted sync queue: {e}")
        for entry_id, entry in self._queued_entries.items():
            entries.setdefault(entry_id, entry)
        return [entries[entry_id] for entry_id in sorted(entries)]

    async def process_sync_queue(self) -> SyncReport:
        """Replays queued operations in insertion order.

        Successful entries are deleted; failed entries stay queued (with their
        attempt count bumped) and replay continues with the next one.
        """
        async with self._sync_lock:
            entries = await self.pending_sync_entries()
            report = SyncReport()
            if not self.is_online:
                report.remaining = len(entries)
                return report

            for index, entry in enumerate(entries):
                if not self.is_online:
                    logger.warning("Connectivity lost during sync replay; stopping")
                    report.remaining += len(entries) - index
                    break
                operation = self._resolve_operation(entry)
                if operation is None:
                    logger.warning(f"No handler for queued operation '{entry.operation}' (id={entry.id}); leaving it queued")
                    report.skipped += 1
                    report.remaining += 1
                    continue
                try:
                    await operation()
                except Exception as e:
                    if is_cancellation(e):
                        raise
                    logger.error(f"Sync operation '{entry.operation}' (id={entry.id}) failed: {type(e).__name__}: {e}")
                    entry.attempts += 1
                    await self._persist_entry(entry)
                    report.failed += 1
                    report.remaining += 1
                    self._dispatch(SyncOperationReplayed(
                        entry_id=entry.id, operation=entry.operation, succeeded=False, error_message=str(e)
                    ))
                    continue
                await self._forget_entry(entry.id)
                report.replayed += 1
                self._dispatch(SyncOperationReplayed(entry_id=entry.id, operation=entry.operation, succeeded=True))

            logger.info(
                f"Sync replay finished: {report.replayed} replayed, {report.failed} failed, "
                f"{report.skipped} skipped, {report.remaining} remaining"
            )
            return report

    def _resolve_operation(self, entry: SyncQueueEntry) -> Optional[SyncOperation]:
        operation = self._pending_operations.get(entry.id)
        if operation is not None:
            return operation
        handler = self.sync_handlers.get(entry.operation)
        if handler is None:
            return None
        return lambda: handler(entry.metadata)

    async def _next_sequence(self) -> int:
        if self._sequence is None:
            try:
                records = await self.store.iterate(SYNC_QUEUE_TABLE)
                self._sequence = max((int(r["id"]) for r in records), default=0)
            except Exception as e:
                logger.warning(f"Could not read sync queue sequence: {e}")
                self._sequence = 0
        self._sequence += 1
        return self._sequence

    @staticmethod
    def _sync_key(entry_id: int) -> str:
        return f"{SYNC_QUEUE_TABLE}{entry_id:012d}"

    async def _persist_entry(self, entry: SyncQueueEntry) -> None:
        if entry.id in self._queued_entries:
            self._queued_entries[entry.id] = entry
        try:
            await self.store.put(entry.to_record(self._sync_key(entry.id)))
        except Exception as e:
            logger.warning(f"Could not update sync entry {entry.id}: {e}")

    async def _forget_entry(self, entry_id: int) -> None:
        self._pending_operations.pop(entry_id, None)
        self._queued_entries.pop(entry_id, None)
        try:
            await self.store.delete(self._sync_key(entry_id))
        except Exception as e:
            logger.warning(f"Could not delete replayed sync entry {entry_id}: {e}")

    def _on_connectivity_change(self, online: bool) -> None:
        if not online:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("Back online outside an event loop; call process_sync_queue() to replay")
            return
        self._spawn(self.process_sync_queue())

    # --- Maintenance and preferences ---

    async def clear_cache(self) -> int:
        """Deletes every cached value (the sync queue and preferences stay)."""
        records = await self.store.iterate(CACHE_TABLE)
        for record in records:
            await self.store.delete(record["key"])
        logger.info(f"Cleared offline cache. Removed {len(records)} items.")
        return len(records)

    async def get_cache_stats(self) -> OfflineCacheStats:
        stats = OfflineCacheStats()
        try:
            records = await self.store.iterate(CACHE_TABLE)
        except Exception as e:
            logger.warning(f"Could not read offline cache statistics: {e}")
            records = []
        stats.item_count = len(records)
        stats.total_size = sum(int(r.get("size", 0)) for r in records)
        stats.oldest_item = min((float(r.get("timestamp", 0.0)) for r in records), default=0.0)
        for record in records:
            category = record.get("category") or "default"
            stats.categories[category] = stats.categories.get(category, 0) + 1
        stats.pending_sync = len(await self.pending_sync_entries())
        return stats

    async def get_preference(self, key: str, default: Any = None) -> Any:
        record = await self.store.get(f"{PREFERENCES_TABLE}{key}")
        return record.get("value", default) if record is not None else default

    async def set_preference(self, key: str, value: Any) -> None:
        await self.store.put({"key": f"{PREFERENCES_TABLE}{key}", "value": value})

    async def list_preferences(self) -> Dict[str, Any]:
        return {
            record["key"][len(PREFERENCES_TABLE):]: record.get("value")
            for record in await self.store.iterate(PREFERENCES_TABLE)
        }

    async def close(self) -> None:
        self._unsubscribe()
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: "asyncio.Task[Any]") -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Offline cache background task failed: {task.exception()!r}")

    def _dispatch(self, event: Any) -> None:
        if self._events:
            self._events.dispatch(event)
