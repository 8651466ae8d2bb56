"""Observable state objects and diagnostic records.

FetchState and OptimisticState are what callers render; OptimisticOperation
and SyncQueueEntry are bookkeeping records kept for replay or diagnostics.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class FetchState:
    """Snapshot of a FetchCoordinator."""
    data: Any = None
    loading: bool = False
    error: Optional[str] = None
    is_stale: bool = False


@dataclass(frozen=True)
class OptimisticState:
    """Snapshot of one key managed by the OptimisticMutationQueue."""
    data: Any = None
    is_pending: bool = False
    is_rolling_back: bool = False
    error: Optional[str] = None


class OperationStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    ROLLED_BACK = "rolled-back"


@dataclass
class OptimisticOperation:
    """Diagnostic history record of one optimistic update."""
    id: str
    key: str
    started_at: float
    status: OperationStatus = OperationStatus.PENDING
    duration: Optional[float] = None


@dataclass
class SyncQueueEntry:
    """A mutation deferred while offline."""
    id: int
    operation: str
    metadata: Optional[Dict[str, Any]]
    timestamp: float
    attempts: int = 0

    def to_record(self, key: str) -> Dict[str, Any]:
        return {
            "key": key,
            "id": self.id,
            "operation": self.operation,
            "metadata": self.metadata,
            "timestamp": self.timestamp,
            "attempts": self.attempts,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "SyncQueueEntry":
        return cls(
            id=int(record["id"]),
            operation=str(record.get("operation", "")),
            metadata=record.get("metadata"),
            timestamp=float(record.get("timestamp", 0.0)),
            attempts=int(record.get("attempts", 0)),
        )


@dataclass
class SyncReport:
    """Outcome of one replay of the sync queue."""
    replayed: int = 0
    failed: int = 0
    skipped: int = 0
    remaining: int = 0


@dataclass(frozen=True)
class ThrottleStatus:
    queued: int
    active: int
    max_concurrent: int
    peak_active: int = 0
    completed: int = 0
    failed: int = 0
    rate_limited: int = 0
