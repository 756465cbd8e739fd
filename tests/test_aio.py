"""
Tests for the asyncio read-through cache.
"""

import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio

from readthrough.cache import (
    AsyncInMemoryBackend,
    AsyncReadThroughCache,
    BackendUnavailable,
    FetchTimeout,
    LoaderFailed,
)
from readthrough.config import CacheSettings, InvalidationPolicy


class AsyncLoader:
    """Coroutine loader that can be held open with an asyncio.Event."""

    def __init__(self, value=None, gate=None, error=None, factory=None):
        self.value = value
        self.gate = gate
        self.error = error
        self.factory = factory
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        call_number = self.calls
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        if self.factory is not None:
            return self.factory(call_number)
        return self.value


async def wait_for_condition(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.001)


@pytest_asyncio.fixture
async def backend(clock):
    return AsyncInMemoryBackend(clock=clock)


@pytest_asyncio.fixture
async def cache(backend):
    cache = AsyncReadThroughCache(backend, CacheSettings())
    yield cache
    await cache.close()


class TestAsyncFreshness:

    @pytest.mark.asyncio
    async def test_first_fetch_loads_then_hits(self, cache):
        loader = AsyncLoader(["Tom", "Felix"])

        assert await cache.fetch("cats", loader, timedelta(hours=3)) == ["Tom", "Felix"]
        assert await cache.fetch("cats", loader, timedelta(hours=3)) == ["Tom", "Felix"]
        assert loader.calls == 1

    @pytest.mark.asyncio
    async def test_reload_after_ttl_elapses(self, cache, clock):
        loader = AsyncLoader(factory=lambda n: n)

        assert await cache.fetch("cats", loader, timedelta(hours=3)) == 1
        clock.advance(3 * 3600 + 1)
        assert await cache.fetch("cats", loader, timedelta(hours=3)) == 2

    @pytest.mark.asyncio
    async def test_plain_callable_loader(self, cache):
        assert await cache.fetch("cats", lambda: {"name": "Tom"}, 60) == {"name": "Tom"}

    @pytest.mark.asyncio
    async def test_ttl_zero_bypasses_cache(self, cache, backend):
        loader = AsyncLoader(factory=lambda n: n)

        assert await cache.fetch("cats", loader, 0) == 1
        assert await cache.fetch("cats", loader, 0) == 2
        assert len(backend) == 0

    @pytest.mark.asyncio
    async def test_invalid_arguments(self, cache):
        with pytest.raises(ValueError):
            await cache.fetch("", AsyncLoader("x"), 60)
        with pytest.raises(ValueError):
            await cache.fetch("cats", AsyncLoader("x"), -5)
        with pytest.raises(ValueError):
            await cache.invalidate("")


class TestAsyncSingleFlight:

    @pytest.mark.asyncio
    async def test_concurrent_tasks_share_one_load(self, cache):
        gate = asyncio.Event()
        loader = AsyncLoader(["Tom"], gate=gate)
        callers = 10

        tasks = [asyncio.create_task(cache.fetch("cats", loader, 60)) for _ in range(callers)]
        await wait_for_condition(lambda: cache.stats.coalesced_waits == callers - 1)
        gate.set()
        results = await asyncio.gather(*tasks)

        assert loader.calls == 1
        assert all(result is results[0] for result in results)
        assert not cache.in_flight("cats")

    @pytest.mark.asyncio
    async def test_failure_reaches_every_waiter(self, cache, backend):
        gate = asyncio.Event()
        error = ConnectionError("database down")
        loader = AsyncLoader(gate=gate, error=error)

        tasks = [asyncio.create_task(cache.fetch("cats", loader, 60)) for _ in range(4)]
        await wait_for_condition(lambda: cache.stats.coalesced_waits == 3)
        gate.set()
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        assert all(isinstance(o, LoaderFailed) for o in outcomes)
        assert all(o.original is error for o in outcomes)
        assert await backend.get("cats") is None
        assert await cache.fetch("cats", AsyncLoader("ok"), 60) == "ok"

    @pytest.mark.asyncio
    async def test_waiter_timeout_leaves_owner_running(self, cache, backend):
        gate = asyncio.Event()
        loader = AsyncLoader("value", gate=gate)

        owner = asyncio.create_task(cache.fetch("cats", loader, 60))
        await wait_for_condition(lambda: cache.in_flight("cats"))

        with pytest.raises(FetchTimeout):
            await cache.fetch("cats", loader, 60, timeout=0.01)

        gate.set()
        assert await owner == "value"
        assert await backend.get("cats") == b'"value"'
        assert cache.stats.wait_timeouts == 1

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_load(self, cache):
        gate = asyncio.Event()
        loader = AsyncLoader("value", gate=gate)

        owner = asyncio.create_task(cache.fetch("cats", loader, 60))
        await wait_for_condition(lambda: cache.in_flight("cats"))
        waiter = asyncio.create_task(cache.fetch("cats", loader, 60))
        await wait_for_condition(lambda: cache.stats.coalesced_waits == 1)

        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        gate.set()
        assert await owner == "value"

    @pytest.mark.asyncio
    async def test_cancelled_owner_wakes_waiters(self, cache):
        gate = asyncio.Event()
        loader = AsyncLoader("value", gate=gate)

        owner = asyncio.create_task(cache.fetch("cats", loader, 60))
        await wait_for_condition(lambda: cache.in_flight("cats"))
        waiter = asyncio.create_task(cache.fetch("cats", loader, 60))
        await wait_for_condition(lambda: cache.stats.coalesced_waits == 1)

        owner.cancel()
        with pytest.raises(asyncio.CancelledError):
            await owner

        with pytest.raises(LoaderFailed) as exc_info:
            await waiter
        assert isinstance(exc_info.value.original, asyncio.CancelledError)
        assert not cache.in_flight("cats")


class TestAsyncInvalidation:

    @pytest.mark.asyncio
    async def test_invalidate_forces_reload(self, cache):
        loader = AsyncLoader(factory=lambda n: n)

        assert await cache.fetch("cats", loader, 60) == 1
        await cache.invalidate("cats")
        assert await cache.fetch("cats", loader, 60) == 2

    @pytest.mark.asyncio
    async def test_invalidate_missing_key_is_noop(self, cache):
        await cache.invalidate("nothing-here")
        assert cache.stats.invalidations == 1

    @pytest.mark.asyncio
    async def test_invalidate_during_load_suppresses_store(self, cache, backend):
        gate = asyncio.Event()
        stale = AsyncLoader("stale", gate=gate)

        owner = asyncio.create_task(cache.fetch("cats", stale, 60))
        await wait_for_condition(lambda: cache.in_flight("cats"))

        await cache.invalidate("cats")
        assert not cache.in_flight("cats")
        assert await cache.fetch("cats", AsyncLoader("fresh"), 60) == "fresh"

        gate.set()
        assert await owner == "stale"
        assert await backend.get("cats") == b'"fresh"'
        assert cache.stats.suppressed_stores == 1

    @pytest.mark.asyncio
    async def test_fetch_after_invalidate_does_not_join_stale_load(self, cache):
        gate = asyncio.Event()
        stale = AsyncLoader("stale", gate=gate)
        fresh = AsyncLoader("fresh")

        owner = asyncio.create_task(cache.fetch("cats", stale, 60))
        await wait_for_condition(lambda: cache.in_flight("cats"))
        await cache.invalidate("cats")

        assert await cache.fetch("cats", fresh, 60) == "fresh"
        assert fresh.calls == 1
        assert not owner.done()

        gate.set()
        assert await owner == "stale"
        assert await cache.fetch("cats", AsyncLoader("unused"), 60) == "fresh"

    @pytest.mark.asyncio
    async def test_invalidate_during_backend_write_deletes_entry(self, clock):
        class GatedSetBackend(AsyncInMemoryBackend):
            def __init__(self, clock):
                super().__init__(clock=clock)
                self.entered = asyncio.Event()
                self.release = asyncio.Event()

            async def set(self, key, value, ttl):
                self.entered.set()
                await self.release.wait()
                await super().set(key, value, ttl)

        backend = GatedSetBackend(clock)
        cache = AsyncReadThroughCache(backend, CacheSettings())

        owner = asyncio.create_task(cache.fetch("cats", AsyncLoader("stale"), 60))
        await asyncio.wait_for(backend.entered.wait(), timeout=2)

        await cache.invalidate("cats")
        backend.release.set()

        assert await owner == "stale"
        assert await backend.get("cats") is None
        assert cache.stats.suppressed_stores == 1

    @pytest.mark.asyncio
    async def test_last_writer_wins(self, backend):
        settings = CacheSettings(invalidation_policy=InvalidationPolicy.LAST_WRITER_WINS)
        cache = AsyncReadThroughCache(backend, settings)
        gate = asyncio.Event()

        owner = asyncio.create_task(cache.fetch("cats", AsyncLoader("loaded", gate=gate), 60))
        await wait_for_condition(lambda: cache.in_flight("cats"))

        await cache.invalidate("cats")
        assert cache.in_flight("cats")

        gate.set()
        await owner
        assert await backend.get("cats") == b'"loaded"'


class TestAsyncBackendFailures:

    @pytest.mark.asyncio
    async def test_get_failure_surfaces(self, clock):
        class DownBackend(AsyncInMemoryBackend):
            async def get(self, key):
                raise BackendUnavailable("get", key, "connection refused")

        cache = AsyncReadThroughCache(DownBackend(clock=clock), CacheSettings())
        loader = AsyncLoader("x")

        with pytest.raises(BackendUnavailable):
            await cache.fetch("cats", loader, 60)
        assert loader.calls == 0
        assert cache.stats.backend_errors == 1

    @pytest.mark.asyncio
    async def test_set_failure_reaches_waiters_and_clears_marker(self, clock):
        class ReadOnlyBackend(AsyncInMemoryBackend):
            async def set(self, key, value, ttl):
                raise BackendUnavailable("set", key, "connection refused")

        cache = AsyncReadThroughCache(ReadOnlyBackend(clock=clock), CacheSettings())
        gate = asyncio.Event()
        loader = AsyncLoader("x", gate=gate)

        tasks = [asyncio.create_task(cache.fetch("cats", loader, 60)) for _ in range(2)]
        await wait_for_condition(lambda: cache.stats.coalesced_waits == 1)
        assert cache.get_stats()["in_flight_waiters"] == 1
        gate.set()
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        assert all(isinstance(o, BackendUnavailable) for o in outcomes)
        assert loader.calls == 1
        assert not cache.in_flight("cats")
        assert cache.get_stats()["in_flight_waiters"] == 0

    @pytest.mark.asyncio
    async def test_key_prefix_namespaces_backend_keys(self, backend):
        cache = AsyncReadThroughCache(backend, CacheSettings(key_prefix="shop"))

        await cache.fetch("cats", AsyncLoader(["Tom"]), 60)
        assert await backend.get("shop:cats") == b'["Tom"]'

        await cache.invalidate("cats")
        assert await backend.get("shop:cats") is None
