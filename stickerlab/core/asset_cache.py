"""Bounded in-process cache of resolved asset records."""

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Optional

logger = logging.getLogger(__name__)

DEFAULT_MAX_SIZE = 1000


@dataclass(frozen=True)
class CachedAsset:
    """Snapshot of the asset fields needed to answer a lookup without the database."""

    id: str
    asset_id: str
    hash: str
    original_path: str
    mime_type: str
    blob_url: Optional[str] = None

    @classmethod
    def from_record(cls, asset: Any) -> "CachedAsset":
        """Build a snapshot from an ``Asset`` model instance."""
        return cls(
            id=asset.id,
            asset_id=asset.asset_id,
            hash=asset.hash,
            original_path=asset.original_path,
            mime_type=asset.mime_type,
            blob_url=asset.blob_url,
        )


class AssetCache:
    """Capacity-bounded mapping of asset path to cached asset record.

    Eviction is by insertion order: when full, the key inserted first is
    dropped. Lookups do not refresh an entry's position, so this is not an
    LRU cache. Replacing the value of a key already present keeps its
    original position.

    The cache lives in one process. Separate server processes each keep
    their own copy, so it must not be relied on for cross-instance
    consistency; the unique index on the content hash is what prevents
    duplicate records.

    Args:
        max_size: Maximum number of resident entries
    """

    def __init__(self, max_size: int = DEFAULT_MAX_SIZE) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self._entries: OrderedDict[str, CachedAsset] = OrderedDict()
        self._lock = threading.Lock()
        self.stats = {"hits": 0, "misses": 0, "evictions": 0}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str) -> Optional[CachedAsset]:
        """Return the cached entry for a key, or None."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.stats["misses"] += 1
            else:
                self.stats["hits"] += 1
            return entry

    def put(self, key: str, entry: CachedAsset) -> None:
        """Insert or replace an entry, evicting the oldest insertion when full."""
        with self._lock:
            if key in self._entries:
                self._entries[key] = entry
                return
            while len(self._entries) >= self.max_size:
                evicted_key, _ = self._entries.popitem(last=False)
                self.stats["evictions"] += 1
                logger.debug(f"Evicted asset cache entry: {evicted_key}")
            self._entries[key] = entry

    def find_by_id(self, record_id: str) -> Optional[CachedAsset]:
        """Find an entry by its record ID (linear scan)."""
        with self._lock:
            for entry in self._entries.values():
                if entry.id == record_id:
                    return entry
        return None

    def evict(self, key: str) -> bool:
        """Remove one key. Returns True if it was present."""
        with self._lock:
            return self._entries.pop(key, None) is not None

    def evict_ids(self, record_ids: set[str]) -> int:
        """Remove every entry pointing at one of the given record IDs."""
        with self._lock:
            stale = [key for key, entry in self._entries.items() if entry.id in record_ids]
            for key in stale:
                del self._entries[key]
        return len(stale)

    def keys(self) -> list[str]:
        """Resident keys, oldest insertion first."""
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
