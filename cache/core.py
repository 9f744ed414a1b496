"""
Core caching functionality for the explorer.

Both cache tiers (live snapshot data and immutable objects addressed by
hash) are instances of the same bounded TTL cache with least-recently-used
eviction. An expired or evicted entry is indistinguishable from one that
was never set.
"""
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, NamedTuple, Optional

import structlog

from monitoring.metrics import CACHE_HITS, CACHE_ITEMS, CACHE_MISSES

logger = structlog.get_logger()


class _Entry(NamedTuple):
    value: Any
    created_at: float


class Cache:
    """
    In-memory TTL cache with a fixed capacity.

    Accessed from the event loop thread only; no locking is done here.
    """

    def __init__(self, max_size: int = 1000, ttl: float = 3600,
                 name: str = 'default', clock: Callable[[], float] = time.monotonic):
        """
        Initialize the cache.

        Args:
            max_size: Maximum number of entries; the least recently used one
                is evicted when a new key is set at capacity
            ttl: Seconds an entry stays readable after it was set
            name: Label used for metrics and logs
            clock: Time source, injectable for tests
        """
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self._entries: 'OrderedDict[str, _Entry]' = OrderedDict()
        self._max_size = max_size
        self._ttl = ttl
        self._clock = clock
        self.name = name
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def ttl(self) -> float:
        return self._ttl

    def get(self, key: str) -> Optional[Any]:
        """
        Get a value from the cache.

        Returns:
            The cached value, or None if never set, expired or evicted
        """
        entry = self._entries.get(key)
        if entry is None:
            self._record_miss()
            return None

        if self._clock() - entry.created_at > self._ttl:
            del self._entries[key]
            self._record_miss()
            return None

        self._entries.move_to_end(key)
        self._hits += 1
        CACHE_HITS.labels(cache_type=self.name).inc()
        return entry.value

    def set(self, key: str, value: Any) -> None:
        """
        Store a value and restart its TTL clock.

        At capacity, the least recently used entry is evicted first.
        """
        if key in self._entries:
            self._entries.move_to_end(key)
        elif len(self._entries) >= self._max_size:
            evicted_key, _ = self._entries.popitem(last=False)
            self._evictions += 1
            logger.debug("cache_evicted", cache=self.name, key=evicted_key)

        self._entries[key] = _Entry(value, self._clock())
        CACHE_ITEMS.labels(cache_type=self.name).set(len(self._entries))

    def _record_miss(self) -> None:
        self._misses += 1
        CACHE_MISSES.labels(cache_type=self.name).inc()
        CACHE_ITEMS.labels(cache_type=self.name).set(len(self._entries))

    def get_stats(self) -> Dict[str, Any]:
        """
        Get cache statistics.

        Expired entries that were not read yet still count towards size.
        """
        total_requests = self._hits + self._misses
        hit_ratio = self._hits / total_requests if total_requests > 0 else 0

        return {
            'size': len(self._entries),
            'max_size': self._max_size,
            'ttl': self._ttl,
            'hits': self._hits,
            'misses': self._misses,
            'evictions': self._evictions,
            'hit_ratio': hit_ratio,
        }


def cache_key(*args: Any) -> str:
    """
    Generate a cache key from arguments.

    The first argument is the namespace: cache_key("tx", txid) -> "tx:<txid>".
    """
    return ":".join(str(arg) for arg in args)
