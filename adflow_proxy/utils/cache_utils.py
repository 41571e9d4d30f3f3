import hashlib
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """Represents a cache entry with metadata."""

    data: str
    expires_at: float
    access_count: int = 0
    last_access: float = 0.0


class LRUMemoryCache:
    """Thread-safe LRU memory cache bounded by entry count, with per-entry expiry."""

    def __init__(self, maxsize: int, clock: Callable[[], float] = time.time):
        self.maxsize = maxsize
        self._cache: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()
        self._clock = clock

    def get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            if key in self._cache:
                entry = self._cache.pop(key)  # Remove and re-insert for LRU
                now = self._clock()
                if now < entry.expires_at:
                    entry.access_count += 1
                    entry.last_access = now
                    self._cache[key] = entry
                    return entry
            return None

    def set(self, key: str, entry: CacheEntry) -> None:
        with self._lock:
            self._cache.pop(key, None)
            while len(self._cache) >= self.maxsize and self._cache:
                self._cache.popitem(last=False)
            self._cache[key] = entry

    def remove(self, key: str) -> None:
        with self._lock:
            self._cache.pop(key, None)

    def __len__(self) -> int:
        return len(self._cache)


class PlaylistCache:
    """Rewritten playlists keyed by source URL and rewrite options."""

    def __init__(self, ttl: int, maxsize: int, clock: Callable[[], float] = time.time):
        self.ttl = ttl
        self._clock = clock
        self.memory_cache = LRUMemoryCache(maxsize=maxsize, clock=clock)

    @staticmethod
    def make_key(*parts) -> str:
        return hashlib.md5("|".join(str(part) for part in parts).encode()).hexdigest()

    def get(self, key: str) -> Optional[str]:
        entry = self.memory_cache.get(key)
        return entry.data if entry else None

    def set(self, key: str, data: str) -> None:
        self.memory_cache.set(key, CacheEntry(data=data, expires_at=self._clock() + self.ttl))

    def __len__(self) -> int:
        return len(self.memory_cache)
