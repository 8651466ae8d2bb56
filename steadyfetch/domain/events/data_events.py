"""Domain Events related to data access and resilience.

Examples include events for when requests are queued or retried, when the
circuit opens, when persistence degrades, and when optimistic updates roll back.
"""

from dataclasses import dataclass, field
import time
from typing import Any, Optional


@dataclass
class DomainEvent:
    """Base class for domain events."""
    pass


# --- Dispatch / Resilience Events ---

@dataclass
class RequestQueued(DomainEvent):
    """A throttled request had to wait for a free concurrency slot."""
    throttle: str
    queued: int
    active: int
    timestamp: float = field(default_factory=time.time)


@dataclass
class RetryScheduled(DomainEvent):
    """A retry is scheduled for a failed operation."""
    source: str  # 'throttle' or 'fetch'
    attempt_number: int
    delay_seconds: float
    error_type: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class CircuitOpened(DomainEvent):
    """The circuit breaker tripped after a resource exhaustion error."""
    open_until: float
    cooldown_seconds: float
    reason: str
    timestamp: float = field(default_factory=time.time)


# --- Cache Events ---

@dataclass
class CacheEntryEvicted(DomainEvent):
    """An entry was evicted to make room (count cap or byte budget)."""
    key: str
    tier: str
    reason: str  # 'capacity', 'budget', 'quota'
    timestamp: float = field(default_factory=time.time)


@dataclass
class PersistenceDegraded(DomainEvent):
    """A durable write went down the degradation ladder."""
    key: str
    tier: str
    step: str  # 'evicted', 'minimized', 'memory-only', 'skipped'
    timestamp: float = field(default_factory=time.time)


@dataclass
class StaleDataServed(DomainEvent):
    """An expired or fallback value was returned instead of fresh data."""
    key: str
    reason: str
    age_seconds: Optional[float] = None
    timestamp: float = field(default_factory=time.time)


# --- Offline Sync Events ---

@dataclass
class SyncOperationQueued(DomainEvent):
    """A mutation was deferred because the client is offline."""
    entry_id: int
    operation: str
    metadata: Optional[Any] = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class SyncOperationReplayed(DomainEvent):
    """A deferred mutation was replayed after reconnecting."""
    entry_id: int
    operation: str
    succeeded: bool
    error_message: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


# --- Optimistic Update Events ---

@dataclass
class OptimisticRollback(DomainEvent):
    """An optimistic update was reverted to its snapshot."""
    key: str
    operation_id: str
    reason: str
    timestamp: float = field(default_factory=time.time)
