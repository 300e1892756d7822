"""
Test the stale-while-revalidate cache.
"""

import asyncio

import pytest

from holder_rewards.cache import SWRCache
from tests.fakes import FakeClock


class CountingFetcher:
    def __init__(self, values=None):
        self.values = list(values or [])
        self.calls = 0
        self.gate = None
        self.error = None

    async def __call__(self):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.values.pop(0) if self.values else f"value-{self.calls}"


def test_hard_ttl_must_cover_ttl():
    with pytest.raises(ValueError):
        SWRCache("bad", ttl=10, hard_ttl=5)


@pytest.mark.asyncio
async def test_fresh_hit_does_not_fetch():
    clock = FakeClock()
    cache = SWRCache("test", ttl=60, hard_ttl=600, clock=clock)
    fetcher = CountingFetcher(["a"])

    assert await cache.get_or_fetch("k", fetcher) == "a"
    clock.advance(59)
    assert await cache.get_or_fetch("k", fetcher) == "a"

    assert fetcher.calls == 1
    assert cache.stats.hits == 1
    assert cache.stats.misses == 1


@pytest.mark.asyncio
async def test_stale_value_returned_while_refreshing():
    clock = FakeClock()
    cache = SWRCache("test", ttl=60, hard_ttl=600, clock=clock)
    fetcher = CountingFetcher(["old", "new"])

    await cache.get_or_fetch("k", fetcher)
    clock.advance(120)

    assert await cache.get_or_fetch("k", fetcher) == "old"
    assert cache.is_fetching("k")

    # Let the background refresh finish
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    assert cache.get("k") == "new"
    assert cache.stats.stale_hits == 1
    assert cache.stats.background_refreshes == 1


@pytest.mark.asyncio
async def test_failed_background_refresh_keeps_stale_value():
    clock = FakeClock()
    cache = SWRCache("test", ttl=60, hard_ttl=600, clock=clock)
    fetcher = CountingFetcher(["old"])

    await cache.get_or_fetch("k", fetcher)
    clock.advance(120)
    fetcher.error = RuntimeError("upstream down")

    assert await cache.get_or_fetch("k", fetcher) == "old"
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    assert cache.get_stale("k") == "old"
    assert cache.stats.fetch_errors == 1


@pytest.mark.asyncio
async def test_hard_expired_value_is_refetched():
    clock = FakeClock()
    cache = SWRCache("test", ttl=60, hard_ttl=600, clock=clock)
    fetcher = CountingFetcher(["old", "new"])

    await cache.get_or_fetch("k", fetcher)
    clock.advance(600)

    assert cache.get_stale("k") is None
    assert await cache.get_or_fetch("k", fetcher) == "new"
    assert fetcher.calls == 2


@pytest.mark.asyncio
async def test_hard_expired_fetch_error_propagates():
    clock = FakeClock()
    cache = SWRCache("test", ttl=60, hard_ttl=600, clock=clock)
    fetcher = CountingFetcher(["old"])

    await cache.get_or_fetch("k", fetcher)
    clock.advance(700)
    fetcher.error = RuntimeError("upstream down")

    with pytest.raises(RuntimeError):
        await cache.get_or_fetch("k", fetcher)


@pytest.mark.asyncio
async def test_concurrent_misses_share_one_fetch():
    cache = SWRCache("test", ttl=60, hard_ttl=600, clock=FakeClock())
    fetcher = CountingFetcher(["shared"])
    fetcher.gate = asyncio.Event()

    waiters = [asyncio.create_task(cache.get_or_fetch("k", fetcher)) for _ in range(5)]
    await asyncio.sleep(0)
    fetcher.gate.set()
    results = await asyncio.gather(*waiters)

    assert results == ["shared"] * 5
    assert fetcher.calls == 1
    assert cache.stats.deduplicated == 4
    assert not cache.is_fetching("k")


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_cancel_shared_fetch():
    cache = SWRCache("test", ttl=60, hard_ttl=600, clock=FakeClock())
    fetcher = CountingFetcher(["shared"])
    fetcher.gate = asyncio.Event()

    first = asyncio.create_task(cache.fetch("k", fetcher))
    second = asyncio.create_task(cache.fetch("k", fetcher))
    await asyncio.sleep(0)
    first.cancel()
    fetcher.gate.set()

    assert await second == "shared"
    assert cache.get("k") == "shared"


def test_invalidate_and_stats():
    cache = SWRCache("test", ttl=60, hard_ttl=600, clock=FakeClock())
    cache.set("a", 1)
    cache.set("b", 2)
    cache.invalidate("a")

    stats = cache.get_stats()

    assert stats["name"] == "test"
    assert stats["entries"] == 1
    assert cache.is_stale("a")
    assert not cache.is_stale("b")
