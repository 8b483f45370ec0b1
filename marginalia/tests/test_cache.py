"""Tests for LRUCache: eviction, expiry, stats and single-flight."""

import asyncio

import pytest

from marginalia.common.cache import LRUCache, generate_cache_key


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


class TestCacheKey:
    def test_key_ignores_dict_order(self):
        assert generate_cache_key({"a": 1, "b": [1, 2]}) == generate_cache_key({"b": [1, 2], "a": 1})

    def test_key_distinguishes_values(self):
        assert generate_cache_key({"text": "a"}) != generate_cache_key({"text": "b"})

    def test_key_is_sha256_hex(self):
        key = generate_cache_key({"text": "你好"})
        assert len(key) == 64
        int(key, 16)


class TestEviction:
    def test_evicts_least_recently_accessed(self, clock):
        cache = LRUCache(max_size=2, ttl=60, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        assert cache.get("a") == 1  # a is now most recent
        cache.set("c", 3)

        assert cache.get("b") is None
        assert cache.get("a") == 1
        assert cache.get("c") == 3

    def test_size_never_exceeds_capacity(self, clock):
        cache = LRUCache(max_size=3, ttl=60, clock=clock)
        for i in range(10):
            cache.set(f"k{i}", i)
            assert len(cache) <= 3
        assert [k for k, _ in cache.entries()] == ["k7", "k8", "k9"]

    def test_reset_existing_key_does_not_evict(self, clock):
        cache = LRUCache(max_size=2, ttl=60, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("a", 10)
        assert cache.get("a") == 10
        assert cache.get("b") == 2

    def test_expired_entries_are_purged_before_eviction(self, clock):
        cache = LRUCache(max_size=2, ttl=10, clock=clock)
        cache.set("old", 1)
        clock.now = 5
        cache.set("fresh", 2)
        clock.now = 11  # "old" expired, "fresh" still live
        cache.set("new", 3)
        assert cache.get("fresh") == 2
        assert cache.get("new") == 3

    def test_none_is_rejected(self, clock):
        cache = LRUCache(clock=clock)
        with pytest.raises(ValueError):
            cache.set("k", None)

    def test_invalid_limits(self):
        with pytest.raises(ValueError):
            LRUCache(max_size=0)
        with pytest.raises(ValueError):
            LRUCache(ttl=0)


class TestExpiry:
    def test_live_just_before_ttl(self, clock):
        cache = LRUCache(ttl=10, clock=clock)
        cache.set("k", "v")
        clock.now = 9.999
        assert cache.get("k") == "v"

    def test_miss_exactly_at_ttl(self, clock):
        cache = LRUCache(ttl=10, clock=clock)
        cache.set("k", "v")
        clock.now = 10
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_get_does_not_extend_lifetime(self, clock):
        cache = LRUCache(ttl=10, clock=clock)
        cache.set("k", "v")
        clock.now = 8
        assert cache.get("k") == "v"
        clock.now = 10
        assert cache.get("k") is None

    def test_has_respects_ttl(self, clock):
        cache = LRUCache(ttl=10, clock=clock)
        cache.set("k", "v")
        assert cache.has("k")
        clock.now = 10
        assert not cache.has("k")

    def test_cleanup_removes_only_expired(self, clock):
        cache = LRUCache(ttl=10, clock=clock)
        cache.set("a", 1)
        clock.now = 6
        cache.set("b", 2)
        clock.now = 12
        assert cache.cleanup() == 1
        assert cache.has("b")


class TestStats:
    def test_hits_and_misses(self, clock):
        cache = LRUCache(clock=clock)
        cache.set("k", "v")
        cache.get("k")
        cache.get("k")
        cache.get("missing")

        stats = cache.stats()
        assert stats.hits == 2
        assert stats.misses == 1
        assert stats.size == 1
        assert stats.to_dict()["hit_rate"] == pytest.approx(0.6667, abs=1e-4)

    def test_has_does_not_count(self, clock):
        cache = LRUCache(clock=clock)
        cache.has("missing")
        assert cache.stats().misses == 0

    def test_clear_resets(self, clock):
        cache = LRUCache(clock=clock)
        cache.set("k", "v")
        cache.get("k")
        cache.clear()
        assert cache.stats().to_dict() == {"hits": 0, "misses": 0, "size": 0, "hit_rate": 0.0}

    def test_delete(self, clock):
        cache = LRUCache(clock=clock)
        cache.set("k", "v")
        assert cache.delete("k") is True
        assert cache.delete("k") is False


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_computation(self):
        cache = LRUCache()
        release = asyncio.Event()
        calls = 0

        async def factory():
            nonlocal calls
            calls += 1
            await release.wait()
            return "value"

        first = asyncio.create_task(cache.get_or_compute("k", factory))
        second = asyncio.create_task(cache.get_or_compute("k", factory))
        await asyncio.sleep(0)
        assert cache.in_flight("k")

        release.set()
        assert await asyncio.gather(first, second) == ["value", "value"]
        assert calls == 1
        assert not cache.in_flight("k")
        assert cache.get("k") == "value"

    @pytest.mark.asyncio
    async def test_cached_value_skips_factory(self):
        cache = LRUCache()
        cache.set("k", "cached")

        async def factory():
            raise AssertionError("factory must not run")

        assert await cache.get_or_compute("k", factory) == "cached"

    @pytest.mark.asyncio
    async def test_failure_is_shared_and_not_cached(self):
        cache = LRUCache()
        release = asyncio.Event()

        async def factory():
            await release.wait()
            raise RuntimeError("boom")

        first = asyncio.create_task(cache.get_or_compute("k", factory))
        second = asyncio.create_task(cache.get_or_compute("k", factory))
        await asyncio.sleep(0)
        release.set()

        results = await asyncio.gather(first, second, return_exceptions=True)
        assert all(isinstance(r, RuntimeError) for r in results)
        assert not cache.in_flight("k")
        assert not cache.has("k")

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_shared_work(self):
        cache = LRUCache()
        release = asyncio.Event()

        async def factory():
            await release.wait()
            return "value"

        first = asyncio.create_task(cache.get_or_compute("k", factory))
        second = asyncio.create_task(cache.get_or_compute("k", factory))
        await asyncio.sleep(0)

        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first

        release.set()
        assert await second == "value"
        assert not cache.in_flight("k")

    @pytest.mark.asyncio
    async def test_in_flight_released_when_computation_cancelled(self):
        cache = LRUCache()

        async def factory():
            await asyncio.Event().wait()

        waiter = asyncio.create_task(cache.get_or_compute("k", factory))
        await asyncio.sleep(0)
        cache._inflight["k"].cancel()

        with pytest.raises(asyncio.CancelledError):
            await waiter
        await asyncio.sleep(0)
        assert not cache.in_flight("k")

    @pytest.mark.asyncio
    async def test_retry_after_failure_recomputes(self):
        cache = LRUCache()
        attempts = []

        async def factory():
            attempts.append(1)
            if len(attempts) == 1:
                raise RuntimeError("first call fails")
            return "second"

        with pytest.raises(RuntimeError):
            await cache.get_or_compute("k", factory)
        assert await cache.get_or_compute("k", factory) == "second"
        assert len(attempts) == 2
