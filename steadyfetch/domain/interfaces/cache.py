"""Interface for the multi-tier cache.

Defines the contract for storing, retrieving, and invalidating cached data
across the memory, session and durable tiers with TTL semantics.
"""

import abc
from typing import Any, Awaitable, Callable, Optional, Pattern, TypeVar, Union

from steadyfetch.domain.models.common import StorageTier

T = TypeVar("T")


class CacheService(abc.ABC):
    """Abstract Base Class for caching operations."""

    @abc.abstractmethod
    async def get(
        self,
        key: str,
        *,
        storage: Union[StorageTier, str] = StorageTier.MEMORY,
        stale_while_revalidate: bool = False,
    ) -> Optional[Any]:
        """Retrieves an item from one tier.

        Args:
            key: The cache key to retrieve.
            storage: Which tier to read.
            stale_while_revalidate: Return expired entries instead of dropping them.

        Returns:
            The cached item if found (and fresh unless stale serving was asked), otherwise None.
        """
        pass

    @abc.abstractmethod
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
        """Stores an item in one tier. Never raises because of a storage failure.

        Args:
            key: The cache key to store the item under.
            data: The item to store.
            ttl: Time-to-live in seconds (category or global default if None).
            storage: Which tier to write.
            max_size: Entry cap for the memory tier.
            etag: Optional validator stored with the entry.
        """
        pass

    @abc.abstractmethod
    async def remove(self, key: str, *, storage: Union[StorageTier, str] = StorageTier.MEMORY) -> None:
        """Deletes an item from one tier."""
        pass

    @abc.abstractmethod
    async def clear(self, tier: Union[StorageTier, str] = "all") -> None:
        """Clears one tier or all of them ('all')."""
        pass

    @abc.abstractmethod
    async def invalidate(self, pattern: Union[str, Pattern[str]]) -> int:
        """Removes every key, across tiers, matching a glob string or compiled regex.

        Returns:
            Number of entries removed.
        """
        pass

    @abc.abstractmethod
    async def get_or_fetch(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[T]],
        *,
        ttl: Optional[float] = None,
        storage: Union[StorageTier, str] = StorageTier.MEMORY,
        stale_while_revalidate: bool = False,
    ) -> T:
        """Returns the cached value or calls `fetcher`, caching its result."""
        pass
