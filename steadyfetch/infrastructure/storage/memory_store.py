"""In-process KeyValueStore.

Used for tests and for callers that want the tier semantics without touching
disk. An optional byte quota makes it behave like a full browser-style store.
"""

import copy
import logging
from typing import Dict, List, Optional

from steadyfetch.domain.errors import QuotaExceededError
from steadyfetch.domain.interfaces.key_value_store import KeyValueStore, Record
from steadyfetch.infrastructure.storage.sizing import estimate_size

logger = logging.getLogger(__name__)


class MemoryKeyValueStore(KeyValueStore):
    """Dictionary-backed record store with an optional byte quota."""

    def __init__(self, quota_bytes: Optional[int] = None):
        self.quota_bytes = quota_bytes
        self._records: Dict[str, Record] = {}
        self._sizes: Dict[str, int] = {}

    @property
    def used_bytes(self) -> int:
        return sum(self._sizes.values())

    async def get(self, key: str) -> Optional[Record]:
        record = self._records.get(key)
        return copy.deepcopy(record) if record is not None else None

    async def put(self, record: Record) -> None:
        key = record["key"]
        size = estimate_size(record)
        if self.quota_bytes is not None:
            projected = self.used_bytes - self._sizes.get(key, 0) + size
            if projected > self.quota_bytes:
                raise QuotaExceededError(
                    f"Record '{key}' ({size} bytes) does not fit in {self.quota_bytes} bytes",
                    requested_bytes=size,
                )
        self._records[key] = copy.deepcopy(record)
        self._sizes[key] = size

    async def delete(self, key: str) -> None:
        self._records.pop(key, None)
        self._sizes.pop(key, None)

    async def clear(self) -> None:
        self._records.clear()
        self._sizes.clear()

    async def iterate(self, prefix: str = "") -> List[Record]:
        return [
            copy.deepcopy(self._records[key])
            for key in sorted(self._records)
            if key.startswith(prefix)
        ]
