# -*- coding: utf-8 -*-
"""
Data Cache
Size- and age-bounded read-through cache for mock data sets
"""

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    key: str
    value: Any
    size: int
    cached_at: float


def stale_keys(entries: "OrderedDict[str, CacheEntry]", now: float, max_age: float) -> List[str]:
    """Keys whose entries are older than max_age"""
    return [key for key, entry in entries.items() if now - entry.cached_at > max_age]


def eviction_order(entries: "OrderedDict[str, CacheEntry]", current_size: int,
                   incoming_size: int, max_size: int) -> List[str]:
    """
    Keys to evict, least recently updated first, so that an entry of
    `incoming_size` fits under `max_size`.
    """
    victims = []
    for key, entry in entries.items():
        if current_size + incoming_size <= max_size:
            break
        victims.append(key)
        current_size -= entry.size
    return victims


class DataCache:
    """
    Bounded map with recency tracking.

    Entries are kept in an OrderedDict ordered by last update. Stale entries
    are dropped before size eviction is considered, and every mutation runs
    under a single lock so size accounting stays consistent across tasks and
    threads.
    """

    def __init__(self, max_size: int, max_age: float, clock: Callable[[], float] = time.monotonic):
        self.max_size = max_size
        self.max_age = max_age
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._size = 0
        self._lock = threading.RLock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get(self, key: str) -> Optional[Any]:
        """Fresh entry or None; stale entries count as misses and are dropped"""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            if self._clock() - entry.cached_at > self.max_age:
                self._remove(key)
                self.misses += 1
                return None
            self.hits += 1
            return entry.value

    def touch(self, key: str) -> bool:
        """Move an entry to the most-recent position without extending its age"""
        with self._lock:
            if key not in self._entries:
                return False
            self._entries.move_to_end(key)
            return True

    def put(self, key: str, value: Any, size: int) -> bool:
        """
        Insert or replace an entry. Returns False when the entry alone is
        larger than the cache, in which case it is not cached.
        """
        with self._lock:
            now = self._clock()
            if key in self._entries:
                self._remove(key)

            for stale in stale_keys(self._entries, now, self.max_age):
                self._remove(stale)

            if size > self.max_size:
                logger.warning(f"Entry {key} ({size} bytes) exceeds cache capacity of {self.max_size} bytes")
                return False

            for victim in eviction_order(self._entries, self._size, size, self.max_size):
                self._remove(victim)
                self.evictions += 1
                logger.debug(f"Evicted cache entry {victim}")

            self._entries[key] = CacheEntry(key=key, value=value, size=size, cached_at=now)
            self._size += size
            return True

    def invalidate(self, key: str) -> bool:
        with self._lock:
            if key in self._entries:
                self._remove(key)
                return True
            return False

    def clear(self):
        with self._lock:
            self._entries.clear()
            self._size = 0

    def _remove(self, key: str):
        entry = self._entries.pop(key)
        self._size -= entry.size

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def size(self) -> int:
        with self._lock:
            return self._size

    def keys(self) -> List[str]:
        """Keys from least to most recently updated"""
        with self._lock:
            return list(self._entries.keys())

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            lookups = self.hits + self.misses
            return {
                "size": self._size,
                "max_size": self.max_size,
                "count": len(self._entries),
                "hits": self.hits,
                "misses": self.misses,
                "evictions": self.evictions,
                "hit_rate": (self.hits / lookups) if lookups else 0.0,
            }
