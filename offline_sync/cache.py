"""
Response cache with time-to-live expiry.

Caches API responses so reads keep working offline. Expired entries are
invisible to readers even before :meth:`ResponseCache.sweep_expired` removes
them.

Also provides:
- CacheMonitor: hit/miss and lookup-time metrics
- fetch_with_fallback: network first, cache on failure
- CachedResource: last-known data that revalidates after reconnecting
"""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from .config import DEFAULT_CACHE_TTL
from .connectivity import ConnectivityMonitor
from .models import CacheEntry
from .store.base import RecordStore
from .utils import Clock, format_timestamp, utc_now

logger = logging.getLogger(__name__)

Fetcher = Callable[[], Awaitable[Any]]


class CacheMonitor:
    """
    Cache performance metrics.

    Tracks hits, misses and the most recent lookup durations. Every
    ``log_every`` lookups a metrics line is logged at DEBUG level.
    """

    def __init__(self, max_samples: int = 100, log_every: int = 10):
        if max_samples < 1:
            raise ValueError(f"max_samples must be >= 1, got {max_samples}")

        self.max_samples = max_samples
        self.log_every = log_every
        self.hits = 0
        self.misses = 0
        self._lookup_times: deque[float] = deque(maxlen=max_samples)

    def record_hit(self, lookup_ms: float) -> None:
        self.hits += 1
        self._record(lookup_ms)

    def record_miss(self, lookup_ms: float) -> None:
        self.misses += 1
        self._record(lookup_ms)

    def _record(self, lookup_ms: float) -> None:
        self._lookup_times.append(lookup_ms)
        if self.log_every and self.total_lookups % self.log_every == 0:
            logger.debug("Cache metrics: %s", self.get_metrics())

    @property
    def total_lookups(self) -> int:
        return self.hits + self.misses

    @property
    def hit_ratio(self) -> float:
        total = self.total_lookups
        return self.hits / total if total else 0.0

    @property
    def average_lookup_ms(self) -> float:
        if not self._lookup_times:
            return 0.0
        return sum(self._lookup_times) / len(self._lookup_times)

    @property
    def p95_lookup_ms(self) -> float:
        if not self._lookup_times:
            return 0.0
        ordered = sorted(self._lookup_times)
        index = min(int(len(ordered) * 0.95), len(ordered) - 1)
        return ordered[index]

    def get_metrics(self) -> dict[str, Any]:
        """
        Get cache metrics.

        Returns:
            Dict with hit/miss counts, hit ratio and lookup times in ms
        """
        return {
            "hits": self.hits,
            "misses": self.misses,
            "total": self.total_lookups,
            "hit_ratio": round(self.hit_ratio, 4),
            "average_lookup_ms": round(self.average_lookup_ms, 3),
            "p95_lookup_ms": round(self.p95_lookup_ms, 3),
        }

    def reset(self) -> None:
        self.hits = 0
        self.misses = 0
        self._lookup_times.clear()


class ResponseCache:
    """Key/value cache of API responses backed by a record store.

    Example:
        >>> cache = ResponseCache(store)
        >>> await cache.put("secrets:list", payload, ttl=3600)
        >>> await cache.get("secrets:list")
    """

    def __init__(
        self,
        store: RecordStore,
        clock: Clock = utc_now,
        default_ttl: float = DEFAULT_CACHE_TTL,
        monitor: CacheMonitor | None = None,
    ):
        """Initialize the cache.

        Args:
            store: Store bound to the cache table
            clock: Time source (injectable for tests)
            default_ttl: TTL in seconds used when ``put`` gets none
            monitor: Optional metrics collector
        """
        if default_ttl <= 0:
            raise ValueError(f"default_ttl must be > 0, got {default_ttl}")

        self.store = store
        self.clock = clock
        self.default_ttl = default_ttl
        self.monitor = monitor

    async def get_entry(self, key: str) -> CacheEntry | None:
        """Get the live cache entry for key, deleting it if expired."""
        started = time.perf_counter()
        record = await self.store.get(key)

        entry = CacheEntry.from_dict(record) if record else None
        if entry is not None and entry.is_expired(self.clock()):
            await self.store.delete(key)
            logger.debug(f"Cache entry expired: {key}")
            entry = None

        if self.monitor is not None:
            elapsed_ms = (time.perf_counter() - started) * 1000
            if entry is None:
                self.monitor.record_miss(elapsed_ms)
            else:
                self.monitor.record_hit(elapsed_ms)
        return entry

    async def get(self, key: str) -> Any | None:
        """Get the cached payload, or None if absent or expired."""
        entry = await self.get_entry(key)
        return entry.payload if entry else None

    async def put(self, key: str, payload: Any, ttl: float | None = None) -> CacheEntry:
        """Store a payload.

        Args:
            key: Cache key
            payload: JSON-serializable response body
            ttl: Time to live in seconds (default: ``default_ttl``)

        Raises:
            ValueError: If ttl is not positive
        """
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError(f"ttl must be > 0, got {ttl}")

        now = self.clock()
        entry = CacheEntry(
            key=key,
            payload=payload,
            cached_at=now,
            expires_at=now + timedelta(seconds=ttl),
        )
        await self.store.put(entry.to_dict())
        return entry

    async def delete(self, key: str) -> bool:
        return await self.store.delete(key)

    async def clear(self) -> int:
        count = await self.store.clear()
        logger.info(f"Cleared {count} cached responses")
        return count

    async def sweep_expired(self) -> int:
        """Delete every entry past its expiry. Returns count."""
        count = await self.store.delete_below("expires_at", format_timestamp(self.clock()))
        if count:
            logger.info(f"Swept {count} expired cache entries")
        return count


@dataclass
class CacheRead:
    """Result of a cache-backed read."""

    payload: Any
    is_stale: bool
    fetched_at: datetime


async def fetch_with_fallback(
    cache: ResponseCache,
    key: str,
    fetcher: Fetcher,
    ttl: float | None = None,
) -> CacheRead:
    """Fetch from the network, falling back to the cache on failure.

    A successful fetch overwrites the cache entry. When the fetch fails and a
    live entry exists it is returned marked stale; otherwise the fetch error
    propagates.
    """
    try:
        payload = await fetcher()
    except Exception as e:
        entry = await cache.get_entry(key)
        if entry is None:
            raise
        logger.warning(f"Fetch for {key} failed, serving cached response: {e}")
        return CacheRead(payload=entry.payload, is_stale=True, fetched_at=entry.cached_at)

    entry = await cache.put(key, payload, ttl)
    return CacheRead(payload=payload, is_stale=False, fetched_at=entry.cached_at)


class CachedResource:
    """
    Last-known data for one cache key, revalidated after reconnecting.

    While offline, ``load`` serves the cache only. When connectivity comes
    back the resource marks itself stale so the next ``load`` refetches.
    """

    def __init__(
        self,
        cache: ResponseCache,
        key: str,
        fetcher: Fetcher,
        connectivity: ConnectivityMonitor,
        ttl: float | None = None,
    ):
        self.cache = cache
        self.key = key
        self.fetcher = fetcher
        self.connectivity = connectivity
        self.ttl = ttl

        self.data: Any | None = None
        self.fetched_at: datetime | None = None
        self._is_stale = True
        self._unsubscribe = connectivity.on_transition(self._on_transition)

    @property
    def is_stale(self) -> bool:
        return self._is_stale

    def mark_stale(self) -> None:
        self._is_stale = True

    def _on_transition(self, online: bool) -> None:
        if online:
            logger.debug(f"Connectivity restored, revalidating {self.key}")
            self.mark_stale()

    async def load(self) -> CacheRead | None:
        """Return current data, revalidating when stale and online.

        Returns:
            The read result, or None when offline with nothing cached
        """
        if not self.connectivity.is_online:
            entry = await self.cache.get_entry(self.key)
            if entry is None:
                return None
            self._is_stale = True
            self.data = entry.payload
            self.fetched_at = entry.cached_at
            return CacheRead(payload=entry.payload, is_stale=True, fetched_at=entry.cached_at)

        if not self._is_stale and self.fetched_at is not None:
            return CacheRead(payload=self.data, is_stale=False, fetched_at=self.fetched_at)

        read = await fetch_with_fallback(self.cache, self.key, self.fetcher, self.ttl)
        self.data = read.payload
        self.fetched_at = read.fetched_at
        self._is_stale = read.is_stale
        return read

    def close(self) -> None:
        """Stop listening for connectivity changes."""
        self._unsubscribe()
