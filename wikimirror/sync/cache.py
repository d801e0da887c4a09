"""
In-process content cache with TTL and explicit invalidation.

The cache is a service object that callers receive at construction time;
there is no module-level instance.

Contract:
- Entries live for ``ttl_seconds`` (15 minutes by default) after they are
  written. Expired entries are never returned and are evicted on access.
- At most ``max_entries`` entries are held (10,000 by default). Writing to a
  full cache evicts expired entries first, then the oldest entry.
- ``invalidate(source, slug)`` drops the rendered HTML and raw entries of one
  article. The upsert engine calls it after every Created or Updated result.
- ``invalidate_source(source)`` drops every entry of a source.
"""

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

from ..config import get_logger

logger = get_logger(__name__)

CacheKey = Tuple[Hashable, ...]


def html_key(source: str, slug: str) -> CacheKey:
    return ("html", source, slug)


def raw_key(source: str, slug: str) -> CacheKey:
    return ("raw", source, slug)


@dataclass
class CacheEntry:
    value: Any
    expires_at: float


class ContentCache:
    """TTL cache keyed by tuples whose second element is the source name."""

    def __init__(self, ttl_seconds: float = 900.0, max_entries: int = 10_000,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[CacheKey, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def get(self, key: CacheKey) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if entry.expires_at <= self._clock():
                del self._entries[key]
                self._evictions += 1
                self._misses += 1
                return None
            self._hits += 1
            return entry.value

    def put(self, key: CacheKey, value: Any, ttl_seconds: Optional[float] = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._lock:
            self._entries.pop(key, None)
            if len(self._entries) >= self.max_entries:
                self._evict_locked()
            self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + ttl)

    def fetch(self, key: CacheKey, loader: Callable[[], Any]) -> Any:
        """Return the cached value, calling ``loader`` and caching its result on a miss."""
        value = self.get(key)
        if value is None:
            value = loader()
            self.put(key, value)
        return value

    def invalidate(self, source: str, slug: str) -> None:
        with self._lock:
            self._entries.pop(html_key(source, slug), None)
            self._entries.pop(raw_key(source, slug), None)
        logger.debug(f"Invalidated cache for {source}/{slug}")

    def invalidate_source(self, source: str) -> int:
        with self._lock:
            keys = [k for k in self._entries if len(k) > 1 and k[1] == source]
            for k in keys:
                del self._entries[k]
        logger.info(f"Invalidated {len(keys)} cache entries for {source}")
        return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "size": len(self._entries),
                "max_entries": self.max_entries,
                "ttl_seconds": self.ttl_seconds,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "hit_rate": (self._hits / lookups) if lookups else 0.0,
            }

    def _evict_locked(self) -> None:
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.expires_at <= now]
        for k in expired:
            del self._entries[k]
        self._evictions += len(expired)
        while len(self._entries) >= self.max_entries:
            self._entries.popitem(last=False)
            self._evictions += 1
