"""Interface for persistent key-value storage backing the cache tiers.

Records are plain dictionaries carrying their own `key`. All methods are
coroutines so that every storage call is a suspension point, whatever the
backend.
"""

import abc
from typing import Any, Dict, List, Optional

Record = Dict[str, Any]


class KeyValueStore(abc.ABC):
    """Abstract Base Class for a record store."""

    @abc.abstractmethod
    async def get(self, key: str) -> Optional[Record]:
        """Returns the record stored under `key`, or None."""
        pass

    @abc.abstractmethod
    async def put(self, record: Record) -> None:
        """Inserts or replaces `record` (keyed by `record['key']`).

        Raises:
            QuotaExceededError: If the store has no room for the record.
        """
        pass

    @abc.abstractmethod
    async def delete(self, key: str) -> None:
        """Removes a record. Missing keys are ignored."""
        pass

    @abc.abstractmethod
    async def clear(self) -> None:
        """Removes every record."""
        pass

    @abc.abstractmethod
    async def iterate(self, prefix: str = "") -> List[Record]:
        """Returns all records whose key starts with `prefix`, ordered by key."""
        pass

    async def close(self) -> None:
        """Releases backend resources. Optional."""
        return None
