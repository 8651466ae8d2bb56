"""Composition root for the data-access layer.

One DataAccessContext is built per application and passed by reference to
whatever needs it; nothing here is a module-level singleton.
"""

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping, Optional, TypeVar

from steadyfetch.core.services.fetch_coordinator import FetchCoordinator
from steadyfetch.core.services.optimistic_queue import OptimisticMutationQueue
from steadyfetch.domain.events.dispatcher import EventDispatcher
from steadyfetch.domain.interfaces.key_value_store import KeyValueStore
from steadyfetch.domain.models.common import CacheSettings, FetchOptions
from steadyfetch.infrastructure.cache.cache_store import CacheStore
from steadyfetch.infrastructure.cache.offline_cache import OfflineCache, SyncHandler
from steadyfetch.infrastructure.config.settings import (
    get_cache_directory,
    get_cache_settings,
    get_fetch_options,
    get_optimistic_options,
    get_rate_limit_options,
    get_throttle_options,
)
from steadyfetch.infrastructure.connectivity.monitor import ConnectivityMonitor
from steadyfetch.infrastructure.resilience.circuit_breaker import CircuitBreaker
from steadyfetch.infrastructure.resilience.rate_limiter import RateLimiter
from steadyfetch.infrastructure.resilience.request_throttle import RequestThrottle
from steadyfetch.infrastructure.storage.disk_store import DiskKeyValueStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class DataAccessContext:
    """Every shared data-access component, wired together."""
    settings: CacheSettings
    fetch_options: FetchOptions
    events: EventDispatcher
    connectivity: ConnectivityMonitor
    session_store: KeyValueStore
    local_store: KeyValueStore
    offline_store: KeyValueStore
    cache_store: CacheStore
    offline_cache: OfflineCache
    throttle: RequestThrottle
    breaker: CircuitBreaker
    optimistic: OptimisticMutationQueue

    def coordinator(
        self,
        fetcher: Callable[[], Awaitable[T]],
        *,
        name: str = "fetch",
        cache_key: Optional[str] = None,
        options: Optional[FetchOptions] = None,
        **kwargs: Any,
    ) -> FetchCoordinator[T]:
        """Builds a FetchCoordinator sharing this context's cache, throttle and breaker."""
        return FetchCoordinator(
            fetcher,
            options or self.fetch_options,
            name=name,
            cache_store=self.cache_store if cache_key else None,
            cache_key=cache_key,
            throttle=self.throttle,
            breaker=self.breaker,
            events=self.events,
            **kwargs,
        )

    async def close(self) -> None:
        """Stops background work and releases the stores."""
        self.optimistic.cancel_all()
        self.throttle.clear()
        await self.cache_store.close()
        await self.offline_cache.close()
        for store in (self.session_store, self.local_store, self.offline_store):
            try:
                await store.close()
            except Exception as e:
                logger.warning(f"Failed to close store {store!r}: {e}")
        logger.debug("Data-access context closed.")


def create_context(
    cache_directory: Optional[Path] = None,
    *,
    session_store: Optional[KeyValueStore] = None,
    local_store: Optional[KeyValueStore] = None,
    offline_store: Optional[KeyValueStore] = None,
    connectivity: Optional[ConnectivityMonitor] = None,
    sync_handlers: Optional[Mapping[str, SyncHandler]] = None,
    clock: Callable[[], float] = time.time,
) -> DataAccessContext:
    """Creates a DataAccessContext from configuration.

    Stores not passed in are created with diskcache: the local and offline
    stores under `cache_directory` (configured default when None), the
    session store in a temporary directory.
    """
    settings = get_cache_settings()
    directory = Path(cache_directory) if cache_directory is not None else get_cache_directory()
    events = EventDispatcher()
    connectivity = connectivity or ConnectivityMonitor()

    if session_store is None:
        session_store = DiskKeyValueStore(quota_bytes=settings.tier_budget_bytes)
    if local_store is None:
        local_store = DiskKeyValueStore(str(directory / "local"), quota_bytes=settings.tier_budget_bytes)
    if offline_store is None:
        offline_store = DiskKeyValueStore(str(directory / "offline"))

    fetch_options = get_fetch_options()
    rate_limit = get_rate_limit_options()
    rate_limiter = RateLimiter(rate_limit, name="api") if rate_limit.max_requests > 0 else None
    cache_store = CacheStore(
        settings, session_store=session_store, local_store=local_store, clock=clock, events=events
    )
    context = DataAccessContext(
        settings=settings,
        fetch_options=fetch_options,
        events=events,
        connectivity=connectivity,
        session_store=session_store,
        local_store=local_store,
        offline_store=offline_store,
        cache_store=cache_store,
        offline_cache=OfflineCache(
            offline_store,
            connectivity=connectivity,
            sync_handlers=sync_handlers,
            clock=clock,
            events=events,
        ),
        throttle=RequestThrottle(get_throttle_options(), name="api", rate_limiter=rate_limiter, events=events),
        breaker=CircuitBreaker(cooldown=fetch_options.circuit_cooldown, events=events),
        optimistic=OptimisticMutationQueue(get_optimistic_options(), cache_store=cache_store, events=events),
    )
    logger.info(f"Data-access context created (cache directory: {directory})")
    return context
