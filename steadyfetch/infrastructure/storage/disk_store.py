"""KeyValueStore backed by diskcache.

Serves both the durable `local` tier (a persistent directory) and the
`session` tier (a temporary directory removed on close).
"""

import errno
import logging
import shutil
import tempfile
from typing import Dict, List, Optional

import diskcache as dc

from steadyfetch.domain.errors import QuotaExceededError
from steadyfetch.domain.interfaces.key_value_store import KeyValueStore, Record
from steadyfetch.infrastructure.storage.sizing import estimate_size

logger = logging.getLogger(__name__)

# OS errors that mean "the disk (or the user's quota) is full".
_QUOTA_ERRNOS = {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)}


class DiskKeyValueStore(KeyValueStore):
    """Record store persisted with diskcache.

    Args:
        directory: Cache directory. A fresh temporary directory when None.
        quota_bytes: Optional logical byte quota enforced on `put`.
        temporary: Remove the directory on `close()`. Implied when no
            directory is given.
    """

    def __init__(
        self,
        directory: Optional[str] = None,
        quota_bytes: Optional[int] = None,
        temporary: bool = False,
    ):
        self.temporary = temporary or directory is None
        self.directory = directory or tempfile.mkdtemp(prefix="steadyfetch-session-")
        self.quota_bytes = quota_bytes
        self._cache = dc.Cache(self.directory, timeout=1)
        self._sizes: Optional[Dict[str, int]] = None
        logger.info(f"Initialized disk store at: {self._cache.directory} (temporary={self.temporary})")

    def _size_index(self) -> Dict[str, int]:
        if self._sizes is None:
            self._sizes = {}
            for key in list(self._cache.iterkeys()):
                record = self._cache.get(key)
                if record is not None:
                    self._sizes[key] = estimate_size(record)
        return self._sizes

    async def get(self, key: str) -> Optional[Record]:
        return self._cache.get(key, default=None)

    async def put(self, record: Record) -> None:
        key = record["key"]
        size = estimate_size(record)
        sizes = self._size_index()
        if self.quota_bytes is not None:
            projected = sum(sizes.values()) - sizes.get(key, 0) + size
            if projected > self.quota_bytes:
                raise QuotaExceededError(
                    f"Record '{key}' ({size} bytes) exceeds disk store quota of {self.quota_bytes} bytes",
                    requested_bytes=size,
                )
        try:
            self._cache.set(key, record)
        except OSError as e:
            if e.errno in _QUOTA_ERRNOS:
                raise QuotaExceededError(f"Disk full while writing '{key}': {e}", requested_bytes=size) from e
            raise
        sizes[key] = size

    async def delete(self, key: str) -> None:
        self._cache.delete(key)
        if self._sizes is not None:
            self._sizes.pop(key, None)

    async def clear(self) -> None:
        count = self._cache.clear()
        self._sizes = {}
        logger.debug(f"Cleared disk store {self.directory}. Removed {count} records.")

    async def iterate(self, prefix: str = "") -> List[Record]:
        records = []
        keys = sorted(k for k in self._cache.iterkeys() if isinstance(k, str) and k.startswith(prefix))
        for key in keys:
            record = self._cache.get(key)
            if record is not None:
                records.append(record)
        return records

    async def close(self) -> None:
        self._cache.close()
        if self.temporary:
            shutil.rmtree(self.directory, ignore_errors=True)
            logger.debug(f"Removed temporary disk store {self.directory}")
