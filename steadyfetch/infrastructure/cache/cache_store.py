"""Concrete implementation of the multi-tier CacheStore.

Manages the memory tier (a dict bounded by entry count) and the session and
local tiers (KeyValueStores bounded by a byte budget). Durable writes that hit
a storage quota go down a degradation ladder instead of failing:

1. evict aggressively (entry size plus the reserved margin) and retry,
2. retry with a minimized payload (lists cut to their first N items),
3. give up on persistence and keep a memory-tier copy.
"""

import asyncio
import logging
import re
import time
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Pattern, Set, TypeVar, Union

from steadyfetch.domain.errors import QuotaExceededError, classify_exception
from steadyfetch.domain.events.data_events import CacheEntryEvicted, PersistenceDegraded, StaleDataServed
from steadyfetch.domain.events.dispatcher import EventDispatcher
from steadyfetch.domain.interfaces.cache import CacheService
from steadyfetch.domain.interfaces.key_value_store import KeyValueStore, Record
from steadyfetch.domain.models.cache import CacheEntry, CacheStats
from steadyfetch.domain.models.common import CacheSettings, StorageTier
from steadyfetch.infrastructure.storage.sizing import estimate_size

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Prefix for records this store writes into shared key-value stores
STORAGE_PREFIX = "sf_cache_"


def compile_pattern(pattern: Union[str, Pattern[str]]) -> Pattern[str]:
    """Turns a glob string ('*' wildcard) into an unanchored regex."""
    if isinstance(pattern, re.Pattern):
        return pattern
    return re.compile(".*".join(re.escape(part) for part in str(pattern).split("*")))


class CacheStore(CacheService):
    """Multi-tier cache (memory, session, local) with TTLs and eviction."""

    def __init__(
        self,
        settings: Optional[CacheSettings] = None,
        *,
        session_store: Optional[KeyValueStore] = None,
        local_store: Optional[KeyValueStore] = None,
        clock: Callable[[], float] = time.time,
        events: Optional[EventDispatcher] = None,
    ):
        self.settings = settings or CacheSettings()
        self._stores: Dict[StorageTier, KeyValueStore] = {}
        if session_store is not None:
            self._stores[StorageTier.SESSION] = session_store
        if local_store is not None:
            self._stores[StorageTier.LOCAL] = local_store
        self._clock = clock
        self._events = events

        self._memory: Dict[str, CacheEntry] = {}
        # Keys whose durable write fell back to a memory copy, per tier
        self._degraded: Dict[StorageTier, Set[str]] = {tier: set() for tier in StorageTier}
        self._inflight: Dict[str, "asyncio.Task[Any]"] = {}
        self._cleanup_task: Optional["asyncio.Task[None]"] = None

        self._hits = 0
        self._misses = 0
        self._evictions = 0

        logger.info(
            f"CacheStore initialized. memory(max={self.settings.max_memory_entries}), "
            f"durable tiers={[tier.value for tier in self._stores]}, "
            f"budget={self.settings.tier_budget_bytes}B, reserved={self.settings.reserved_bytes}B"
        )

    # --- TTL resolution ---

    def category_for(self, key: str) -> Optional[str]:
        lowered = key.lower()
        for category in self.settings.category_ttls:
            if category.lower() in lowered:
                return category
        return None

    def resolve_ttl(self, key: str, ttl: Optional[float] = None) -> float:
        """Explicit TTL, then the category default, then the global default."""
        if ttl is not None:
            return ttl
        category = self.category_for(key)
        if category is not None:
            return self.settings.category_ttls[category]
        return self.settings.default_ttl

    # --- CacheService Interface Implementation ---

    async def get(
        self,
        key: str,
        *,
        storage: Union[StorageTier, str] = StorageTier.MEMORY,
        stale_while_revalidate: bool = False,
    ) -> Optional[Any]:
        tier = StorageTier.parse(storage)
        entry = await self._lookup(tier, key)
        if entry is None:
            self._misses += 1
            logger.debug(f"Cache miss ({tier.value}) for key: {key}")
            return None

        now = self._clock()
        if entry.is_expired(now):
            if not stale_while_revalidate:
                self._misses += 1
                logger.debug(f"Cache expired ({tier.value}) for key: {key}. Removing.")
                await self.remove(key, storage=tier)
                return None
            self._dispatch(StaleDataServed(key=key, reason="expired", age_seconds=now - entry.created_at))

        await self._record_hit(tier, key, entry)
        return entry.data

    async def set(
        self,
        key: str,
        data: Any,
        *,
        ttl: Optional[float] = None,
        storage: Union[StorageTier, str] = StorageTier.MEMORY,
        max_size: Optional[int] = None,
        etag: Optional[str] = None,
    ) -> None:
        tier = StorageTier.parse(storage)
        now = self._clock()
        entry = CacheEntry(data=data, created_at=now, expires_at=now + self.resolve_ttl(key, ttl), etag=etag)
        if tier is StorageTier.MEMORY:
            self._set_memory(key, entry, max_size)
            logger.debug(f"Stored item in memory cache: key={key}")
            return
        try:
            await self._persist(tier, key, entry)
        except Exception as e:
            logger.error(f"Failed to persist key={key} in {tier.value} storage: {e}. Keeping a memory copy.", exc_info=True)
            self._keep_memory_copy(tier, key, entry, step="memory-only")

    async def remove(self, key: str, *, storage: Union[StorageTier, str] = StorageTier.MEMORY) -> None:
        tier = StorageTier.parse(storage)
        if tier is StorageTier.MEMORY:
            self._memory.pop(key, None)
            return
        if key in self._degraded[tier]:
            self._degraded[tier].discard(key)
            self._memory.pop(key, None)
        store = self._stores.get(tier)
        if store is None:
            return
        try:
            await store.delete(self._storage_key(key))
        except Exception as e:
            logger.warning(f"Failed to delete key={key} from {tier.value} storage: {e}")

    async def clear(self, tier: Union[StorageTier, str] = "all") -> None:
        tiers = list(StorageTier) if str(tier).lower() == "all" else [StorageTier.parse(tier)]
        for current in tiers:
            if current is StorageTier.MEMORY:
                self._memory.clear()
                for degraded in self._degraded.values():
                    degraded.clear()
                logger.info("Cleared memory cache.")
                continue
            store = self._stores.get(current)
            if store is None:
                continue
            try:
                records = await store.iterate(STORAGE_PREFIX)
                for record in records:
                    await store.delete(record["key"])
                logger.info(f"Cleared {current.value} cache. Removed {len(records)} items.")
            except Exception as e:
                logger.error(f"Failed to clear {current.value} cache: {e}", exc_info=True)

    async def invalidate(self, pattern: Union[str, Pattern[str]]) -> int:
        regex = compile_pattern(pattern)
        removed = 0
        for key in [k for k in self._memory if regex.search(k)]:
            del self._memory[key]
            removed += 1
        for tier, store in self._stores.items():
            try:
                for record in await store.iterate(STORAGE_PREFIX):
                    key = self._cache_key(record["key"])
                    if regex.search(key):
                        await store.delete(record["key"])
                        self._degraded[tier].discard(key)
                        removed += 1
            except Exception as e:
                logger.warning(f"Failed to invalidate '{regex.pattern}' in {tier.value} storage: {e}")
        logger.debug(f"Invalidated {removed} cache entries matching '{regex.pattern}'")
        return removed

    async def get_or_fetch(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[T]],
        *,
        ttl: Optional[float] = None,
        storage: Union[StorageTier, str] = StorageTier.MEMORY,
        stale_while_revalidate: bool = False,
    ) -> T:
        tier = StorageTier.parse(storage)
        entry = await self._lookup(tier, key)
        now = self._clock()
        if entry is not None:
            expired = entry.is_expired(now)
            if not expired or stale_while_revalidate:
                await self._record_hit(tier, key, entry)
                if stale_while_revalidate and (expired or entry.is_stale(now)):
                    if expired:
                        self._dispatch(StaleDataServed(key=key, reason="expired", age_seconds=now - entry.created_at))
                    self._start_fetch(key, fetcher, ttl, tier, background=True)
                return entry.data

        self._misses += 1
        task = self._start_fetch(key, fetcher, ttl, tier)
        return await asyncio.shield(task)

    # --- Maintenance ---

    async def warm(
        self,
        fetchers: Mapping[str, Callable[[], Awaitable[Any]]],
        *,
        ttl: Optional[float] = None,
        storage: Union[StorageTier, str] = StorageTier.MEMORY,
    ) -> int:
        """Pre-populates several keys. Returns how many were loaded."""
        keys = list(fetchers)
        results = await asyncio.gather(
            *(self.get_or_fetch(key, fetchers[key], ttl=ttl, storage=storage) for key in keys),
            return_exceptions=True,
        )
        loaded = 0
        for key, result in zip(keys, results):
            if isinstance(result, BaseException):
                logger.warning(f"Cache warm-up failed for key={key}: {result!r}")
            else:
                loaded += 1
        logger.info(f"Cache warmed: {loaded}/{len(keys)} keys loaded")
        return loaded

    async def cleanup(self) -> int:
        """Removes expired entries from every tier. Returns how many."""
        now = self._clock()
        removed = 0
        for key in [k for k, entry in self._memory.items() if entry.is_expired(now)]:
            del self._memory[key]
            removed += 1
        for tier, store in self._stores.items():
            try:
                for record in await store.iterate(STORAGE_PREFIX):
                    if CacheEntry.from_record(record).is_expired(now):
                        await store.delete(record["key"])
                        removed += 1
            except Exception as e:
                logger.warning(f"Expiry sweep of {tier.value} storage failed: {e}")
        if removed:
            logger.debug(f"Cache cleanup removed {removed} expired entries")
        return removed

    def start_cleanup(self, interval: Optional[float] = None) -> None:
        """Starts the periodic expiry sweep on the running loop."""
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        period = interval if interval is not None else self.settings.cleanup_interval
        self._cleanup_task = asyncio.ensure_future(self._cleanup_loop(period))

    async def _cleanup_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.cleanup()
            except Exception as e:
                logger.error(f"Periodic cache cleanup failed: {e}", exc_info=True)

    async def load_from_storage(self) -> int:
        """Hydrates the memory tier with unexpired session-tier entries."""
        store = self._stores.get(StorageTier.SESSION)
        if store is None:
            return 0
        now = self._clock()
        loaded = 0
        try:
            records = await store.iterate(STORAGE_PREFIX)
        except Exception as e:
            logger.warning(f"Could not hydrate memory cache from session storage: {e}")
            return 0
        for record in sorted(records, key=lambda r: r.get("timestamp", 0.0)):
            entry = CacheEntry.from_record(record)
            if entry.is_expired(now):
                continue
            self._set_memory(self._cache_key(record["key"]), entry, None)
            loaded += 1
        logger.info(f"Loaded {loaded} entries from session storage into memory")
        return loaded

    async def close(self) -> None:
        """Stops the sweep and any in-flight or background fetches."""
        tasks = list(self._inflight.values())
        if self._cleanup_task is not None:
            tasks.append(self._cleanup_task)
            self._cleanup_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()

    def get_stats(self) -> CacheStats:
        timestamps = [entry.created_at for entry in self._memory.values()]
        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            size=len(self._memory),
            evictions=self._evictions,
            oldest_entry=min(timestamps) if timestamps else None,
            newest_entry=max(timestamps) if timestamps else None,
        )

    async def get_size(self) -> Dict[str, int]:
        """Approximate bytes used per tier."""
        sizes = {StorageTier.MEMORY.value: sum(estimate_size(e.data) for e in self._memory.values())}
        for tier, store in self._stores.items():
            try:
                sizes[tier.value] = sum(int(r.get("size", 0)) for r in await store.iterate(STORAGE_PREFIX))
            except Exception as e:
                logger.warning(f"Could not measure {tier.value} storage: {e}")
                sizes[tier.value] = 0
        return sizes

    # --- Internals ---

    @staticmethod
    def _storage_key(key: str) -> str:
        return f"{STORAGE_PREFIX}{key}"

    @staticmethod
    def _cache_key(storage_key: str) -> str:
        return storage_key[len(STORAGE_PREFIX):]

    async def _lookup(self, tier: StorageTier, key: str) -> Optional[CacheEntry]:
        if tier is StorageTier.MEMORY:
            return self._memory.get(key)
        if key in self._degraded[tier] and key in self._memory:
            return self._memory[key]
        store = self._stores.get(tier)
        if store is None:
            return None
        try:
            record = await store.get(self._storage_key(key))
        except Exception as e:
            logger.warning(f"Read from {tier.value} storage failed for key={key}: {e}")
            return self._memory.get(key)
        return CacheEntry.from_record(record) if record is not None else None

    async def _record_hit(self, tier: StorageTier, key: str, entry: CacheEntry) -> None:
        self._hits += 1
        entry.hits += 1
        logger.debug(f"Cache hit ({tier.value}) for key: {key}")
        store = self._stores.get(tier)
        if tier is StorageTier.MEMORY or store is None or key in self._degraded[tier]:
            return
        try:
            record = await store.get(self._storage_key(key))
            if record is not None:
                record["hits"] = entry.hits
                await store.put(record)
        except Exception as e:
            logger.debug(f"Could not update hit count for key={key}: {e}")

    def _set_memory(self, key: str, entry: CacheEntry, max_size: Optional[int]) -> None:
        limit = max(1, max_size or self.settings.max_memory_entries)
        if key not in self._memory:
            while len(self._memory) >= limit:
                oldest_key = min(self._memory, key=lambda k: self._memory[k].created_at)
                del self._memory[oldest_key]
                self._evictions += 1
                logger.debug(f"Memory cache EVICTED key (oldest): {oldest_key}")
                self._dispatch(CacheEntryEvicted(key=oldest_key, tier=StorageTier.MEMORY.value, reason="capacity"))
        self._memory[key] = entry

    def _keep_memory_copy(self, tier: StorageTier, key: str, entry: CacheEntry, step: str) -> None:
        self._set_memory(key, entry, None)
        self._degraded[tier].add(key)
        self._dispatch(PersistenceDegraded(key=key, tier=tier.value, step=step))

    async def _persist(self, tier: StorageTier, key: str, entry: CacheEntry) -> None:
        store = self._stores.get(tier)
        if store is None:
            logger.debug(f"No {tier.value} store configured; keeping key={key} in memory")
            self._keep_memory_copy(tier, key, entry, step="memory-only")
            return

        size = estimate_size(entry.data)
        if size > self.settings.max_entry_bytes:
            logger.warning(
                f"Skipping {tier.value} write for key={key}: {size} bytes exceeds the "
                f"{self.settings.max_entry_bytes} byte entry cap"
            )
            self._dispatch(PersistenceDegraded(key=key, tier=tier.value, step="skipped"))
            return

        category = self.category_for(key)
        record = entry.to_record(self._storage_key(key), size, category)
        await self._make_room(tier, store, key, size)
        if await self._try_put(store, record):
            self._degraded[tier].discard(key)
            return

        # Step 1: aggressive eviction
        logger.warning(f"Storage quota exceeded in {tier.value} for key={key}; evicting aggressively")
        await self._evict(tier, store, size + self.settings.reserved_bytes, exclude=key, reason="quota")
        if await self._try_put(store, record):
            self._degraded[tier].discard(key)
            self._dispatch(PersistenceDegraded(key=key, tier=tier.value, step="evicted"))
            return

        # Step 2: minimized payload
        minimized = self._minimize(entry.data)
        if minimized is not None:
            minimized_size = estimate_size(minimized)
            if minimized_size <= self.settings.max_entry_bytes:
                minimized_entry = CacheEntry(
                    data=minimized, created_at=entry.created_at, expires_at=entry.expires_at, etag=entry.etag
                )
                if await self._try_put(store, minimized_entry.to_record(self._storage_key(key), minimized_size, category)):
                    logger.warning(f"Stored minimized payload for key={key} in {tier.value} ({minimized_size} bytes)")
                    self._degraded[tier].discard(key)
                    self._dispatch(PersistenceDegraded(key=key, tier=tier.value, step="minimized"))
                    return

        # Step 3: memory-only
        logger.warning(f"Giving up on {tier.value} persistence for key={key}; keeping a memory copy")
        self._keep_memory_copy(tier, key, entry, step="memory-only")

    @staticmethod
    async def _try_put(store: KeyValueStore, record: Record) -> bool:
        try:
            await store.put(record)
        except QuotaExceededError:
            return False
        return True

    async def _make_room(self, tier: StorageTier, store: KeyValueStore, key: str, size: int) -> None:
        """Evicts oldest records until `size` more bytes fit in the tier budget."""
        budget = self.settings.tier_budget_bytes - self.settings.reserved_bytes
        records = await store.iterate(STORAGE_PREFIX)
        storage_key = self._storage_key(key)
        used = sum(int(r.get("size", 0)) for r in records if r["key"] != storage_key)
        overflow = used + size - budget
        if overflow > 0:
            logger.debug(f"{tier.value} budget exceeded by {overflow} bytes; evicting oldest entries")
            await self._evict(tier, store, overflow, exclude=key, reason="budget", records=records)

    async def _evict(
        self,
        tier: StorageTier,
        store: KeyValueStore,
        needed: int,
        *,
        exclude: str,
        reason: str,
        records: Optional[List[Record]] = None,
    ) -> int:
        if records is None:
            records = await store.iterate(STORAGE_PREFIX)
        storage_key = self._storage_key(exclude)
        freed = 0
        for record in sorted(records, key=lambda r: r.get("timestamp", 0.0)):
            if freed >= needed:
                break
            if record["key"] == storage_key:
                continue
            await store.delete(record["key"])
            freed += int(record.get("size", 0))
            self._evictions += 1
            evicted_key = self._cache_key(record["key"])
            logger.debug(f"{tier.value} cache EVICTED key (oldest, {reason}): {evicted_key}")
            self._dispatch(CacheEntryEvicted(key=evicted_key, tier=tier.value, reason=reason))
        return freed

    def _minimize(self, data: Any) -> Optional[Any]:
        """First N items of lists (top level or one level into a dict); None if nothing shrinks."""
        limit = self.settings.minimized_list_items
        if isinstance(data, (list, tuple)):
            return list(data[:limit]) if len(data) > limit else None
        if isinstance(data, dict):
            shrunk = False
            minimized = {}
            for field_name, value in data.items():
                if isinstance(value, (list, tuple)) and len(value) > limit:
                    minimized[field_name] = list(value[:limit])
                    shrunk = True
                else:
                    minimized[field_name] = value
            return minimized if shrunk else None
        return None

    def _start_fetch(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[Any]],
        ttl: Optional[float],
        tier: StorageTier,
        background: bool = False,
    ) -> "asyncio.Task[Any]":
        task = self._inflight.get(key)
        if task is not None:
            return task
        task = asyncio.ensure_future(self._fetch_and_store(key, fetcher, ttl, tier))
        self._inflight[key] = task
        task.add_done_callback(lambda done, key=key, background=background: self._fetch_done(key, done, background))
        return task

    async def _fetch_and_store(
        self, key: str, fetcher: Callable[[], Awaitable[Any]], ttl: Optional[float], tier: StorageTier
    ) -> Any:
        try:
            value = await fetcher()
        except Exception as e:
            error = classify_exception(e)
            if error is e:
                raise
            raise error from e
        await self.set(key, value, ttl=ttl, storage=tier)
        return value

    def _fetch_done(self, key: str, task: "asyncio.Task[Any]", background: bool) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if task.cancelled():
            return
        error = task.exception()
        if error is not None and background:
            logger.warning(f"Background refresh failed for key={key}: {type(error).__name__}: {error}")

    def _dispatch(self, event: Any) -> None:
        if self._events:
            self._events.dispatch(event)
