"""Unit tests for the command discovery cache."""

import asyncio

import pytest

from dispatchhub.core.cache import CommandCache, CommandCacheEntry, command_cache_key


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _fetcher(result: list[str], calls: list[int]):
    async def fetch() -> list[str]:
        calls.append(1)
        return list(result)

    return fetch


@pytest.mark.unit
def test_cache_key_joins_directory_and_executable():
    assert command_cache_key("/work/repo", "claude") == "/work/repo:claude"


@pytest.mark.unit
def test_entry_freshness():
    entry = CommandCacheEntry(commands=("help",), fetched_at=10.0)
    assert entry.is_fresh(14.9, 5.0)
    assert not entry.is_fresh(15.0, 5.0)
    assert entry.is_fresh(1_000_000.0, -1)


@pytest.mark.unit
async def test_ttl_controls_refetch():
    clock = FakeClock(0.0)
    cache = CommandCache(ttl_seconds=5, clock=clock)
    calls: list[int] = []
    fetch = _fetcher(["help", "clear"], calls)

    first = await cache.get_or_fetch("k", fetch)
    assert first.commands == ["help", "clear"]
    assert first.from_cache is False
    assert cache.fetch_count == 1

    clock.now = 0.1
    second = await cache.get_or_fetch("k", fetch)
    assert second.from_cache is True
    assert cache.fetch_count == 1

    clock.now = 6.0
    third = await cache.get_or_fetch("k", fetch)
    assert third.from_cache is False
    assert cache.fetch_count == 2
    assert len(calls) == 2


@pytest.mark.unit
async def test_keys_are_independent():
    cache = CommandCache(ttl_seconds=60, clock=FakeClock())
    calls: list[int] = []

    await cache.get_or_fetch(command_cache_key("/a", "claude"), _fetcher(["a"], calls))
    lookup = await cache.get_or_fetch(command_cache_key("/b", "claude"), _fetcher(["b"], calls))

    assert lookup.commands == ["b"]
    assert cache.fetch_count == 2
    assert len(cache) == 2


@pytest.mark.unit
async def test_concurrent_misses_share_one_fetch():
    cache = CommandCache(ttl_seconds=60, clock=FakeClock())
    release = asyncio.Event()
    calls: list[int] = []

    async def slow_fetch() -> list[str]:
        calls.append(1)
        await release.wait()
        return ["compact"]

    first = asyncio.create_task(cache.get_or_fetch("k", slow_fetch))
    second = asyncio.create_task(cache.get_or_fetch("k", slow_fetch))
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    release.set()

    results = await asyncio.gather(first, second)

    assert len(calls) == 1
    assert cache.fetch_count == 1
    assert [r.commands for r in results] == [["compact"], ["compact"]]
    assert all(r.from_cache is False for r in results)


@pytest.mark.unit
async def test_failed_fetch_stores_nothing():
    cache = CommandCache(ttl_seconds=60, clock=FakeClock())

    async def broken() -> list[str]:
        raise RuntimeError("cli missing")

    with pytest.raises(RuntimeError, match="cli missing"):
        await cache.get_or_fetch("k", broken)

    assert cache.peek("k") is None
    assert len(cache) == 0

    calls: list[int] = []
    lookup = await cache.get_or_fetch("k", _fetcher(["help"], calls))
    assert lookup.commands == ["help"]
    assert cache.fetch_count == 2


@pytest.mark.unit
async def test_joiners_see_leader_failure():
    cache = CommandCache(ttl_seconds=60, clock=FakeClock())
    release = asyncio.Event()

    async def failing() -> list[str]:
        await release.wait()
        raise RuntimeError("discovery timed out")

    leader = asyncio.create_task(cache.get_or_fetch("k", failing))
    await asyncio.sleep(0)
    joiner = asyncio.create_task(cache.get_or_fetch("k", failing))
    await asyncio.sleep(0)
    release.set()

    results = await asyncio.gather(leader, joiner, return_exceptions=True)
    assert all(isinstance(r, RuntimeError) for r in results)
    assert cache.fetch_count == 1


@pytest.mark.unit
async def test_cancelled_leader_does_not_cancel_joiners():
    cache = CommandCache(ttl_seconds=60, clock=FakeClock())
    release = asyncio.Event()

    async def slow_fetch() -> list[str]:
        await release.wait()
        return ["compact"]

    leader = asyncio.create_task(cache.get_or_fetch("k", slow_fetch))
    await asyncio.sleep(0)
    joiner = asyncio.create_task(cache.get_or_fetch("k", slow_fetch))
    await asyncio.sleep(0)

    leader.cancel()
    with pytest.raises(asyncio.CancelledError):
        await leader
    release.set()

    lookup = await asyncio.wait_for(joiner, timeout=1.0)
    assert lookup.commands == ["compact"]
    assert cache.peek("k") == ["compact"]
    assert cache.fetch_count == 1


@pytest.mark.unit
async def test_peek_and_invalidate():
    clock = FakeClock(0.0)
    cache = CommandCache(ttl_seconds=5, clock=clock)
    await cache.get_or_fetch("k", _fetcher(["help"], []))

    assert cache.peek("k") == ["help"]
    clock.now = 10.0
    assert cache.peek("k") is None

    clock.now = 0.0
    cache.invalidate("k")
    assert cache.peek("k") is None
