"""Tests for the per-trace telemetry cache."""

import asyncio

import pytest

from rca_agent.tools.common.cache import TelemetryCache


class TestTelemetryCache:
    """Tests for TelemetryCache."""

    def test_put_and_get(self):
        cache = TelemetryCache(ttl_seconds=60)
        cache.put("t1", {"spans": 3})
        assert cache.get("t1") == {"spans": 3}
        assert cache.get("missing") is None

    def test_expired_entries_are_dropped(self):
        cache = TelemetryCache(ttl_seconds=0)
        cache.put("t1", "value")
        assert cache.get("t1") is None
        assert cache.size() == 0

    def test_oldest_entry_is_evicted_when_full(self):
        cache = TelemetryCache(ttl_seconds=60, max_entries=2)
        cache.put("a", 1)
        cache.put("b", 2)
        cache.put("c", 3)
        assert cache.size() == 2
        assert cache.get("a") is None
        assert cache.get("c") == 3

    def test_close_clears_and_ignores_later_puts(self):
        cache = TelemetryCache(ttl_seconds=60)
        cache.put("a", 1)
        cache.close()
        cache.put("b", 2)
        assert cache.size() == 0

    def test_stats(self):
        cache = TelemetryCache(ttl_seconds=60)
        cache.put("a", 1)
        stats = cache.stats()
        assert stats["total_entries"] == 1
        assert stats["active_entries"] == 1
        assert stats["inflight_fetches"] == 0


class TestGetOrFetch:
    """Single-flight population."""

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_fetch(self):
        cache = TelemetryCache(ttl_seconds=60)
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.05)
            return {"trace": "t1"}

        results = await asyncio.gather(
            *(cache.get_or_fetch("t1", fetch) for _ in range(5))
        )

        assert calls == 1
        assert all(r == {"trace": "t1"} for r in results)
        assert cache.stats()["inflight_fetches"] == 0

    @pytest.mark.asyncio
    async def test_cached_value_skips_fetch(self):
        cache = TelemetryCache(ttl_seconds=60)
        cache.put("t1", "cached")

        async def fetch():
            raise AssertionError("should not fetch")

        assert await cache.get_or_fetch("t1", fetch) == "cached"

    @pytest.mark.asyncio
    async def test_failed_fetch_is_not_cached(self):
        cache = TelemetryCache(ttl_seconds=60)
        attempts = 0

        async def flaky():
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise RuntimeError("store down")
            return "ok"

        with pytest.raises(RuntimeError):
            await cache.get_or_fetch("t1", flaky)
        assert await cache.get_or_fetch("t1", flaky) == "ok"
        assert attempts == 2

    @pytest.mark.asyncio
    async def test_waiters_see_the_owner_failure(self):
        cache = TelemetryCache(ttl_seconds=60)

        async def failing():
            await asyncio.sleep(0.02)
            raise RuntimeError("boom")

        results = await asyncio.gather(
            cache.get_or_fetch("t1", failing),
            cache.get_or_fetch("t1", failing),
            return_exceptions=True,
        )
        assert all(isinstance(r, RuntimeError) for r in results)

    @pytest.mark.asyncio
    async def test_cancelled_first_caller_hands_off_to_waiters(self):
        cache = TelemetryCache(ttl_seconds=60)
        release = asyncio.Event()
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            await release.wait()
            return "bundle"

        first = asyncio.create_task(cache.get_or_fetch("t1", fetch))
        await asyncio.sleep(0)
        waiter = asyncio.create_task(cache.get_or_fetch("t1", fetch))
        await asyncio.sleep(0)

        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first
        release.set()

        assert await waiter == "bundle"
        assert calls == 1
        assert cache.get("t1") == "bundle"

    @pytest.mark.asyncio
    async def test_fetch_stops_when_every_caller_is_cancelled(self):
        cache = TelemetryCache(ttl_seconds=60)
        started = asyncio.Event()
        stopped = asyncio.Event()

        async def fetch():
            started.set()
            try:
                await asyncio.sleep(10)
            finally:
                stopped.set()

        caller = asyncio.create_task(cache.get_or_fetch("t1", fetch))
        await started.wait()
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        await asyncio.wait_for(stopped.wait(), timeout=1)
        await asyncio.sleep(0.01)
        assert cache.stats()["inflight_fetches"] == 0
        assert cache.get("t1") is None
