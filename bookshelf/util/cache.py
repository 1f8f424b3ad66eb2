import asyncio
import threading
import time
from collections import OrderedDict
from typing import Callable

from bookshelf.util.exceptions import handle_cache_error
from bookshelf.util.log import logger


class CacheMetrics:
    """Thread-safe cache metrics tracker."""

    hits: int
    misses: int
    evictions: int
    expirations: int
    _lock: threading.Lock

    def __init__(self):
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self.expirations = 0

    def record_hit(self):
        with self._lock:
            self.hits += 1

    def record_miss(self):
        with self._lock:
            self.misses += 1

    def record_eviction(self):
        with self._lock:
            self.evictions += 1

    def record_expiration(self, count: int = 1):
        with self._lock:
            self.expirations += count

    def hit_rate(self) -> float:
        """Return cache hit rate as percentage (0-100)."""
        with self._lock:
            total = self.hits + self.misses
            if total == 0:
                return 0.0
            return (self.hits / total) * 100

    def reset(self):
        """Reset all metrics to zero."""
        with self._lock:
            self.hits = 0
            self.misses = 0
            self.evictions = 0
            self.expirations = 0


class CacheEntry[VT]:
    value: VT
    stored_at: float
    ttl: float

    def __init__(self, value: VT, stored_at: float, ttl: float):
        self.value = value
        self.stored_at = stored_at
        self.ttl = ttl

    def is_expired(self, now: float) -> bool:
        return now - self.stored_at > self.ttl


class TTLCache[VT]:
    """
    Keyed store where every entry carries its own time-to-live.

    Expiry is lazy: an entry older than its ttl is removed the next time it
    is read. ``sweep`` reclaims memory for entries nobody reads again and is
    never needed for correctness.
    """

    _cache: OrderedDict[str, CacheEntry[VT]]
    _lock: threading.Lock
    _maxsize: int | None
    _metrics: CacheMetrics
    _clock: Callable[[], float]
    default_ttl: float

    def __init__(
        self,
        default_ttl: float = 300,
        maxsize: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize cache.

        Args:
            default_ttl: TTL (seconds) used when ``set`` is called without one.
            maxsize: Maximum number of entries. None = unlimited. Uses LRU eviction.
            clock: Monotonic time source, injectable for tests.
        """
        self._cache = OrderedDict()
        self._lock = threading.Lock()
        self._maxsize = maxsize
        self._metrics = CacheMetrics()
        self._clock = clock
        self.default_ttl = default_ttl

    def get(self, key: str) -> VT | None:
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self._metrics.record_miss()
                return None
            if entry.is_expired(self._clock()):
                del self._cache[key]
                self._metrics.record_expiration()
                self._metrics.record_miss()
                return None
            # Move to end for LRU tracking
            self._cache.move_to_end(key)
            self._metrics.record_hit()
            return entry.value

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def set(self, key: str, value: VT, ttl: float | None = None):
        with self._lock:
            if key in self._cache:
                del self._cache[key]

            self._cache[key] = CacheEntry(
                value=value,
                stored_at=self._clock(),
                ttl=self.default_ttl if ttl is None else ttl,
            )

            if self._maxsize is not None and len(self._cache) > self._maxsize:
                oldest_key = next(iter(self._cache))
                del self._cache[oldest_key]
                self._metrics.record_eviction()

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._cache.pop(key, None) is not None

    def sweep(self) -> int:
        """Remove every expired entry. Returns the number removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._cache.items() if entry.is_expired(now)]
            for key in expired:
                del self._cache[key]
            if expired:
                self._metrics.record_expiration(len(expired))
            return len(expired)

    def flush(self):
        with self._lock:
            self._cache = OrderedDict()

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._cache.keys())

    def get_metrics(self) -> CacheMetrics:
        """Return the metrics tracker for this cache."""
        return self._metrics

    def size(self) -> int:
        """Return current number of entries in cache."""
        with self._lock:
            return len(self._cache)

    def stats(self) -> dict[str, object]:
        keys = self.keys()
        return {
            "size": len(keys),
            "keys": keys,
            "hits": self._metrics.hits,
            "misses": self._metrics.misses,
            "evictions": self._metrics.evictions,
            "expirations": self._metrics.expirations,
            "hit_rate": self._metrics.hit_rate(),
        }


class CacheSweeper:
    """Periodically sweeps a TTLCache from a background asyncio task."""

    cache: TTLCache
    interval: float
    _task: asyncio.Task[None] | None

    def __init__(self, cache: TTLCache, interval: float):
        self.cache = cache
        self.interval = interval
        self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="cache-sweeper")
        logger.debug("Cache sweeper started", interval=self.interval)

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.debug("Cache sweeper stopped")

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval)
            try:
                removed = self.cache.sweep()
            except RuntimeError as e:
                handle_cache_error(e, "sweep", "*")
                continue
            if removed:
                logger.debug("Swept expired cache entries", removed=removed)
