"""Generic time-to-live cache shared by every cache in the service.

A key is either absent or maps to an immutable CacheEntry holding the value and the
time it was computed. An entry is valid while ``now - computed_at < ttl``. Stale
entries are not purged; they are replaced on the next get_or_compute.

Population is not serialized: two threads missing the same key may both compute,
and the last put wins. Compute functions must be idempotent reads.
"""

import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Generic, Hashable, TypeVar

import structlog

from material_browser import metrics

logger = structlog.get_logger()

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


@dataclass(frozen=True)
class CacheEntry(Generic[V]):
    """A cached value and the clock reading at which it was computed."""

    value: V
    computed_at: float


@dataclass
class CacheStats:
    """Hit/miss counters for one cache instance."""

    hits: int = 0
    misses: int = 0
    computes: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0


class TTLCache(Generic[K, V]):
    """
    Time-to-live cache keyed by any hashable value.

    Args:
        name: Cache name, used for metrics labels and log events
        ttl: Validity window in seconds
        clock: Monotonic time source (injectable for tests)
    """

    def __init__(
        self,
        name: str,
        ttl: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl <= 0:
            raise ValueError(f"ttl must be positive, got {ttl}")
        self.name = name
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[K, CacheEntry[V]] = {}
        self._lock = threading.Lock()  # Protects _entries mutation and _stats
        self._stats = CacheStats()

    def _is_valid(self, entry: CacheEntry[V], now: float) -> bool:
        return now - entry.computed_at < self.ttl

    def get(self, key: K) -> tuple[V | None, bool]:
        """Return ``(value, True)`` for a valid entry, ``(None, False)`` otherwise."""
        entry = self._entries.get(key)
        if entry is not None and self._is_valid(entry, self._clock()):
            with self._lock:
                self._stats.hits += 1
            metrics.CACHE_HITS.labels(cache=self.name).inc()
            return entry.value, True

        with self._lock:
            self._stats.misses += 1
        metrics.CACHE_MISSES.labels(cache=self.name).inc()
        return None, False

    def put(self, key: K, value: V, now: float | None = None) -> CacheEntry[V]:
        """Store a value, stamped with ``now`` (defaults to the cache clock)."""
        entry = CacheEntry(value=value, computed_at=self._clock() if now is None else now)
        with self._lock:
            self._entries[key] = entry
            metrics.CACHE_ENTRIES.labels(cache=self.name).set(len(self._entries))
        return entry

    def get_or_compute(self, key: K, compute: Callable[[], V]) -> V:
        """
        Return the cached value for key, computing and storing it on miss or staleness.

        Exceptions raised by compute propagate and leave the previous entry untouched.
        """
        value, found = self.get(key)
        if found:
            return value  # type: ignore[return-value]

        logger.debug("cache_miss", cache=self.name, key=str(key))
        value = compute()
        with self._lock:
            self._stats.computes += 1
        self.put(key, value)
        return value

    def peek(self, key: K) -> CacheEntry[V] | None:
        """Return the raw entry (valid or stale) without touching statistics."""
        return self._entries.get(key)

    def is_valid(self, key: K) -> bool:
        entry = self._entries.get(key)
        return entry is not None and self._is_valid(entry, self._clock())

    def invalidate(self, key: K) -> bool:
        """Drop a single entry. Returns True if it existed."""
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> int:
        """Drop every entry. Returns the number of entries removed."""
        with self._lock:
            count = len(self._entries)
            self._entries = {}
            metrics.CACHE_ENTRIES.labels(cache=self.name).set(0)
        if count:
            logger.debug("cache_cleared", cache=self.name, entries=count)
        return count

    @property
    def stats(self) -> CacheStats:
        """Consistent snapshot of the counters."""
        with self._lock:
            return replace(self._stats)

    def summary(self) -> dict[str, float]:
        """Entry count and counters as reported by the cache statistics endpoint."""
        stats = self.stats
        return {
            "entries": len(self),
            "hits": stats.hits,
            "misses": stats.misses,
            "hit_rate": round(stats.hit_rate, 4),
        }

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries
