"""Typed error taxonomy for the data-access layer.

Errors are assigned once, at the boundary where a supplied fetcher or remote
operation is invoked (see `classify_exception`). Downstream components branch
on the exception type only; message text is never inspected.
"""

import asyncio
from typing import Optional


class DataAccessError(Exception):
    """Base class for every error raised by steadyfetch."""


class TransientNetworkError(DataAccessError):
    """A failure that is worth retrying locally (connection reset, timeout)."""


class ResourceExhaustionError(DataAccessError):
    """The remote side or the local runtime is out of resources.

    Not retried immediately; opens the circuit breaker when seen by the
    FetchCoordinator.
    """

    def __init__(self, message: str = "Resource exhausted", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class CircuitOpenError(ResourceExhaustionError):
    """Raised without touching the network while the breaker is open."""

    def __init__(self, retry_in: float):
        self.retry_in = max(0.0, retry_in)
        super().__init__(
            f"Service temporarily unavailable, retry in {int(round(self.retry_in))}s",
            retry_after=self.retry_in,
        )


class QuotaExceededError(DataAccessError):
    """A storage tier refused a write because it is out of space.

    Absorbed by the CacheStore degradation ladder; never reaches callers.
    """

    def __init__(self, message: str = "Storage quota exceeded", requested_bytes: int = 0):
        super().__init__(message)
        self.requested_bytes = requested_bytes


class OperationCancelledError(DataAccessError):
    """Cooperative cancellation of an operation. Never reported as a failure."""


class RemoteOperationError(DataAccessError):
    """A remote mutation failed; drives optimistic rollback."""


class OfflineUnavailableError(DataAccessError):
    """Offline and no cached value exists for the requested key."""


# Built-in exception types that represent retryable transport failures.
TRANSIENT_EXCEPTION_TYPES = (ConnectionError, TimeoutError, asyncio.TimeoutError)
EXHAUSTION_EXCEPTION_TYPES = (MemoryError,)


def classify_exception(exc: BaseException) -> BaseException:
    """Maps a raw exception raised by a fetcher onto the taxonomy.

    Already-typed errors and cancellation pass through untouched. Built-in
    transport errors become `TransientNetworkError`, memory pressure becomes
    `ResourceExhaustionError`. Anything else is returned as is so callers see
    the original failure.
    """
    if isinstance(exc, (DataAccessError, asyncio.CancelledError)):
        return exc
    if isinstance(exc, EXHAUSTION_EXCEPTION_TYPES):
        classified: DataAccessError = ResourceExhaustionError(str(exc) or type(exc).__name__)
    elif isinstance(exc, TRANSIENT_EXCEPTION_TYPES):
        classified = TransientNetworkError(str(exc) or type(exc).__name__)
    else:
        return exc
    classified.__cause__ = exc
    return classified


def is_cancellation(exc: BaseException) -> bool:
    """True for both asyncio task cancellation and our cooperative variant."""
    return isinstance(exc, (asyncio.CancelledError, OperationCancelledError))
