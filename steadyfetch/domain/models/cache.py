"""Domain models for cached values and their bookkeeping."""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class CacheEntry:
    """A cached value with its lifetime metadata.

    `expires_at` is never earlier than `created_at`.
    """
    data: Any
    created_at: float
    expires_at: float
    etag: Optional[str] = None
    hits: int = 0

    def __post_init__(self) -> None:
        if self.expires_at < self.created_at:
            self.expires_at = self.created_at

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def is_stale(self, now: float) -> bool:
        """Past half of its lifetime; a background refresh is due."""
        ttl = self.expires_at - self.created_at
        return now - self.created_at > ttl * 0.5

    def to_record(self, key: str, size: int, category: Optional[str] = None) -> Dict[str, Any]:
        """Serializes the entry into a key-value store record."""
        return {
            "key": key,
            "data": self.data,
            "timestamp": self.created_at,
            "expires_at": self.expires_at,
            "etag": self.etag,
            "hits": self.hits,
            "size": size,
            "category": category,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "CacheEntry":
        created_at = float(record.get("timestamp", 0.0))
        return cls(
            data=record.get("data"),
            created_at=created_at,
            expires_at=float(record.get("expires_at", created_at)),
            etag=record.get("etag"),
            hits=int(record.get("hits", 0)),
        )


@dataclass
class CacheStats:
    """Counters describing the memory tier of a CacheStore."""
    hits: int = 0
    misses: int = 0
    size: int = 0
    evictions: int = 0
    oldest_entry: Optional[float] = None
    newest_entry: Optional[float] = None


@dataclass
class OfflineCacheStats:
    """Summary of the durable `cache` table of an OfflineCache."""
    total_size: int = 0
    item_count: int = 0
    oldest_item: float = 0.0
    categories: Dict[str, int] = field(default_factory=dict)
    pending_sync: int = 0
