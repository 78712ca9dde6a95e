"""Thread-safe read-through cache for per-trace telemetry."""

import asyncio
import logging
import threading
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from .telemetry import get_meter

logger = logging.getLogger(__name__)

meter = get_meter(__name__)

cache_lookups = meter.create_counter(
    name="rca_agent.cache.lookups",
    description="Telemetry cache lookups by outcome",
    unit="1",
)


class TelemetryCache:
    """
    Bounded TTL cache with single-flight population.

    Keys are trace ids. Entries expire after ``ttl_seconds`` and the oldest
    entry is evicted once ``max_entries`` is reached.

    Concurrent ``get_or_fetch`` calls for the same key share one in-flight
    fetch task; it keeps running while any caller still awaits it.
    A failed fetch is never cached, so the next caller retries.

    Lifecycle:
        The cache is an explicit component. Construct one per process (or per
        test), hand it to the TelemetryIndex, and call ``close()`` on shutdown.

    Example:
        >>> cache = TelemetryCache(ttl_seconds=300)
        >>> bundle = await cache.get_or_fetch("trace123", fetch_bundle)
    """

    def __init__(self, ttl_seconds: float = 300, max_entries: int = 1024):
        """
        Initialize the cache.

        Args:
            ttl_seconds: Time-to-live for cached entries in seconds.
            max_entries: Upper bound on stored entries.
        """
        self._cache: dict[str, dict[str, Any]] = {}
        self._inflight: dict[str, asyncio.Future[Any]] = {}
        self._waiters: dict[str, int] = {}
        self._lock = threading.Lock()
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._closed = False
        logger.info(
            f"TelemetryCache initialized with TTL={ttl_seconds}s, max_entries={max_entries}"
        )

    def get(self, key: str) -> Any | None:
        """
        Get cached data if available and not expired.

        Expired entries are removed during lookup.
        """
        with self._lock:
            entry = self._cache.get(key)
            if entry:
                if datetime.now(timezone.utc) < entry["expires"]:
                    logger.debug(f"Cache HIT for key {key}")
                    cache_lookups.add(1, {"outcome": "hit"})
                    return entry["data"]
                logger.debug(f"Cache EXPIRED for key {key}")
                del self._cache[key]
            else:
                logger.debug(f"Cache MISS for key {key}")
            cache_lookups.add(1, {"outcome": "miss"})
            return None

    def put(self, key: str, data: Any) -> None:
        """Cache data with expiration, evicting the oldest entry when full."""
        with self._lock:
            if self._closed:
                return
            if key not in self._cache and len(self._cache) >= self.max_entries:
                oldest = min(self._cache, key=lambda k: self._cache[k]["cached_at"])
                del self._cache[oldest]
            now = datetime.now(timezone.utc)
            self._cache[key] = {
                "data": data,
                "expires": now + timedelta(seconds=self.ttl_seconds),
                "cached_at": now,
            }
            logger.debug(f"Cached key {key} (TTL={self.ttl_seconds}s)")

    async def get_or_fetch(
        self, key: str, fetcher: Callable[[], Awaitable[Any]]
    ) -> Any:
        """
        Return the cached value for ``key`` or populate it with ``fetcher``.

        At most one fetch per key is in flight. The fetch runs in its own task
        and every caller awaits it through ``asyncio.shield``, so cancelling
        the caller that started it leaves the other callers waiting on the
        same fetch. The task is cancelled only when its last caller is.

        Args:
            key: The cache key (a trace id).
            fetcher: Zero-argument coroutine function producing the value.

        Returns:
            The cached or freshly fetched value.
        """
        cached = self.get(key)
        if cached is not None:
            return cached

        with self._lock:
            task = self._inflight.get(key)
            if task is None:
                task = asyncio.ensure_future(self._populate(key, fetcher))
                self._inflight[key] = task
                self._waiters[key] = 0
                task.add_done_callback(lambda done: self._forget(key, done))
            else:
                logger.debug(f"Awaiting in-flight fetch for key {key}")
                cache_lookups.add(1, {"outcome": "coalesced"})
            self._waiters[key] += 1

        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            with self._lock:
                abandoned = self._inflight.get(key) is task and self._waiters[key] == 1
            if abandoned:
                logger.debug(f"Last caller for key {key} cancelled, stopping fetch")
                task.cancel()
            raise
        finally:
            with self._lock:
                if key in self._waiters and self._inflight.get(key) is task:
                    self._waiters[key] -= 1

    async def _populate(
        self, key: str, fetcher: Callable[[], Awaitable[Any]]
    ) -> Any:
        value = await fetcher()
        self.put(key, value)
        return value

    def _forget(self, key: str, task: "asyncio.Future[Any]") -> None:
        with self._lock:
            if self._inflight.get(key) is task:
                del self._inflight[key]
                self._waiters.pop(key, None)
        # Mark retrieved: callers that were cancelled never observe it.
        if not task.cancelled():
            task.exception()

    def clear(self) -> None:
        """Clear all cached entries."""
        with self._lock:
            count = len(self._cache)
            self._cache.clear()
            logger.info(f"Cache cleared ({count} entries removed)")

    def close(self) -> None:
        """Tear down the cache; later puts are ignored."""
        self.clear()
        with self._lock:
            self._closed = True

    def size(self) -> int:
        """Number of stored entries, including expired ones not yet evicted."""
        with self._lock:
            return len(self._cache)

    def stats(self) -> dict[str, Any]:
        """
        Get cache statistics.

        Returns:
            Dictionary with total, expired, active and in-flight counts.
        """
        with self._lock:
            now = datetime.now(timezone.utc)
            total = len(self._cache)
            expired = sum(
                1 for entry in self._cache.values() if now >= entry["expires"]
            )
            return {
                "total_entries": total,
                "expired_entries": expired,
                "active_entries": total - expired,
                "inflight_fetches": len(self._inflight),
                "ttl_seconds": self.ttl_seconds,
            }
