"""Defines common Value Objects and option structures shared across contexts.

These objects represent simple values or tuning knobs (cache keys, storage
tiers, strategies, retry policies) so every component speaks the same terms.
All durations are expressed in seconds.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, NewType, Optional, Sequence, TypedDict

# === Caching Context ===
CacheKey = NewType("CacheKey", str)              # Opaque key for a cache entry
CategoryName = NewType("CategoryName", str)      # Logical data category (e.g., 'meetings')


class StorageTier(str, Enum):
    """Capability tiers of the cache."""
    MEMORY = "memory"    # Ephemeral, process memory
    SESSION = "session"  # Process/session scoped temp store
    LOCAL = "local"      # Durable embedded store

    @classmethod
    def parse(cls, value: "str | StorageTier") -> "StorageTier":
        if isinstance(value, StorageTier):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(
                f"Unknown storage tier '{value}'. Choose one of: {', '.join(t.value for t in cls)}"
            ) from None


class FetchStrategy(str, Enum):
    """Offline cache strategies, selected per data category."""
    CACHE_FIRST = "cache-first"
    NETWORK_FIRST = "network-first"
    STALE_WHILE_REVALIDATE = "stale-while-revalidate"


# Default TTLs per category, matched case-insensitively as key substrings.
DEFAULT_CATEGORY_TTLS: Dict[str, float] = {
    "meetings": 5 * 60,
    "races": 5 * 60,
    "contestants": 5 * 60,
    "search": 10 * 60,
    "greyhound": 30 * 60,
    "healthcheck": 15 * 60,
}
DEFAULT_TTL_SECONDS = 5 * 60


class BackoffPolicy(TypedDict):
    """Value Object representing retry backoff configuration."""
    initial_delay: float
    factor: float
    max_delay: float


@dataclass
class CacheSettings:
    """Tuning knobs for the multi-tier CacheStore."""
    default_ttl: float = DEFAULT_TTL_SECONDS
    category_ttls: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_CATEGORY_TTLS))
    max_memory_entries: int = 100
    tier_budget_bytes: int = 5 * 1024 * 1024       # Per durable tier
    reserved_bytes: int = 512 * 1024               # Free-space margin kept in each tier
    max_entry_bytes: int = 1024 * 1024             # Single entry cap
    minimized_list_items: int = 50                 # Ladder step 2 truncation length
    cleanup_interval: float = 60.0


@dataclass
class ThrottleOptions:
    """Concurrency and retry tuning for RequestThrottle."""
    max_concurrent: int = 3
    delay_between_batches: float = 0.1
    retry_on_failure: bool = True
    max_retries: int = 2
    retry_delay: float = 0.5
    exhaustion_backoff: float = 1.0


@dataclass
class RateLimitOptions:
    """Sliding-window cap on attempts started by a RequestThrottle.

    A `max_requests` of 0 disables the limit.
    """
    max_requests: int = 20
    time_window: float = 1.0


@dataclass
class FetchOptions:
    """Behaviour of a FetchCoordinator."""
    auto_fetch: bool = False
    cache_time: float = 5 * 60
    retry_count: int = 0
    retry_delay: float = 1.0
    use_exponential_backoff: bool = False
    max_retry_delay: float = 30.0
    debounce_delay: float = 0.05
    circuit_cooldown: float = 30.0

    def backoff_policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            initial_delay=self.retry_delay,
            factor=2.0 if self.use_exponential_backoff else 1.0,
            max_delay=self.max_retry_delay,
        )


@dataclass
class OptimisticOptions:
    """Behaviour of a single optimistic update (or the queue defaults)."""
    rollback_delay: float = 1.5
    on_success: Optional[Callable[[Any], None]] = None
    on_error: Optional[Callable[[Exception, Any], None]] = None
    on_rollback: Optional[Callable[[Any], None]] = None
    cancel_previous: bool = False
    invalidate_patterns: Sequence[str] = ()
