"""
In-memory cache store keyed by cache key.
"""
import threading
import logging
from collections import OrderedDict
from typing import List, Optional

from .core import CacheEntry

logger = logging.getLogger("cache.store")


class CacheStore:
    """
    Thread-safe mapping of cache key -> CacheEntry.

    The lock only guards the dict itself (never an upstream call), so
    callers on different keys do not wait on each other beyond a dict
    operation. Entries are immutable and replaced whole.

    With max_entries set the store keeps the most recently used keys and
    evicts the least recently used one on overflow.
    """

    def __init__(self, max_entries: Optional[int] = None):
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self.max_entries = max_entries
        self.evictions = 0

    def get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                self._entries.move_to_end(key)
            return entry

    def put(self, key: str, entry: CacheEntry) -> bool:
        """
        Store an entry, last write wins.

        A value-bearing entry older than the one already stored is dropped
        so fetched_at never goes backwards for a key.

        Returns:
            True if the entry was stored
        """
        with self._lock:
            current = self._entries.get(key)
            if (
                current is not None
                and current.has_value
                and entry.has_value
                and entry.fetched_at < current.fetched_at
            ):
                logger.debug(f"Dropping out-of-order write for {key}")
                return False
            self._entries[key] = entry
            self._entries.move_to_end(key)
            self._evict()
            return True

    def _evict(self) -> None:
        # Caller holds the lock
        if not self.max_entries:
            return
        while len(self._entries) > self.max_entries:
            oldest, _ = self._entries.popitem(last=False)
            self.evictions += 1
            logger.debug(f"Evicted {oldest} (limit {self.max_entries})")

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            return count

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._entries.keys())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
