from __future__ import annotations

import asyncio

import pytest

from comms_sync.infrastructure.cache.store import CacheStore
from tests.conftest import settle


class GatedFetcher:
    def __init__(self, *values: object) -> None:
        self.values = list(values)
        self.calls = 0
        self.gate = asyncio.Event()
        self.gate.set()

    async def __call__(self) -> object:
        self.calls += 1
        await self.gate.wait()
        return self.values.pop(0) if len(self.values) > 1 else self.values[0]


def test_set_and_get():
    cache = CacheStore()
    cache.set(("a",), 1)
    assert cache.get(("a",)) == 1
    assert cache.get(("missing",), "default") == "default"
    assert cache.is_stale(("a",)) is False
    assert cache.is_stale(("missing",)) is True


def test_invalidate_without_source_keeps_value_readable():
    cache = CacheStore()
    cache.set(("a",), 1)

    assert cache.invalidate(("a",)) is None
    assert cache.get(("a",)) == 1
    assert cache.is_stale(("a",)) is True


@pytest.mark.asyncio
async def test_stale_value_served_while_revalidating():
    cache = CacheStore()
    fetcher = GatedFetcher("fresh")
    cache.register(("k",), fetcher)
    cache.set(("k",), "old")

    fetcher.gate.clear()
    task = cache.invalidate(("k",))
    assert task is not None
    assert await cache.fetch(("k",)) == "old"
    assert cache.is_fetching(("k",))

    fetcher.gate.set()
    await task
    assert cache.get(("k",)) == "fresh"
    assert cache.is_stale(("k",)) is False
    assert fetcher.calls == 1


@pytest.mark.asyncio
async def test_fetch_of_missing_key_waits_for_source():
    cache = CacheStore()
    cache.register(("k",), GatedFetcher({"x": 1}))

    assert await cache.fetch(("k",)) == {"x": 1}


@pytest.mark.asyncio
async def test_refetch_without_source_raises():
    cache = CacheStore()
    with pytest.raises(KeyError):
        await cache.refetch(("nothing",))


@pytest.mark.asyncio
async def test_concurrent_refetches_share_one_request():
    cache = CacheStore()
    fetcher = GatedFetcher("v")
    fetcher.gate.clear()
    cache.register(("k",), fetcher)

    first = asyncio.create_task(cache.refetch(("k",)))
    second = asyncio.create_task(cache.refetch(("k",)))
    cache.invalidate(("k",))
    await settle()
    fetcher.gate.set()

    assert await first == "v"
    assert await second == "v"
    assert fetcher.calls == 1


@pytest.mark.asyncio
async def test_cancelled_awaiter_does_not_cancel_shared_fetch():
    cache = CacheStore()
    fetcher = GatedFetcher("v")
    fetcher.gate.clear()
    cache.register(("k",), fetcher)

    doomed = asyncio.create_task(cache.refetch(("k",)))
    survivor = asyncio.create_task(cache.refetch(("k",)))
    await settle()
    doomed.cancel()
    await settle()
    fetcher.gate.set()

    assert await survivor == "v"
    assert cache.get(("k",)) == "v"


@pytest.mark.asyncio
async def test_result_discarded_when_source_unregistered_in_flight():
    cache = CacheStore()
    fetcher = GatedFetcher("late")
    fetcher.gate.clear()
    registration = cache.register(("k",), fetcher)
    cache.set(("k",), "current")

    task = cache.invalidate(("k",))
    await settle()
    cache.unregister(registration)
    fetcher.gate.set()
    await task

    assert cache.get(("k",)) == "current"


@pytest.mark.asyncio
async def test_result_discarded_when_source_replaced_in_flight():
    cache = CacheStore()
    old = GatedFetcher("from-old")
    old.gate.clear()
    cache.register(("k",), old)

    task = cache.invalidate(("k",))
    await settle()
    cache.register(("k",), GatedFetcher("from-new"))
    old.gate.set()
    await task

    assert cache.get(("k",)) is None


@pytest.mark.asyncio
async def test_merge_folds_fetched_into_current():
    cache = CacheStore()
    cache.set(("k",), [1, 2])
    cache.register(("k",), GatedFetcher([3]), merge=lambda current, fetched: [*(current or []), *fetched])

    assert await cache.refetch(("k",)) == [1, 2, 3]


@pytest.mark.asyncio
async def test_failed_refetch_keeps_last_value():
    cache = CacheStore()

    async def boom() -> object:
        raise RuntimeError("down")

    cache.register(("k",), boom)
    cache.set(("k",), "kept")

    with pytest.raises(RuntimeError):
        await cache.refetch(("k",))
    assert cache.get(("k",)) == "kept"
    assert not cache.is_fetching(("k",))


def test_optimistic_set_leaves_stale_flag():
    cache = CacheStore()
    cache.set(("k",), [1])
    cache.invalidate(("k",))

    cache.optimistic_set(("k",), lambda v: [*v, 2])

    assert cache.get(("k",)) == [1, 2]
    assert cache.is_stale(("k",)) is True


def test_optimistic_set_on_empty_key():
    cache = CacheStore()

    value = cache.optimistic_set(("k",), lambda v: (v or 0) + 1)

    assert value == 1
    assert cache.is_stale(("k",)) is True


def test_prefix_invalidation_matches_whole_elements():
    cache = CacheStore()
    cache.set(("thread-messages", 7), "seven")
    cache.set(("thread-messages", 8), "eight")
    cache.set(("thread-messages", 78), "seventy-eight")
    cache.set(("leads", "mine"), "leads")

    cache.invalidate_prefix(("thread-messages", 7))

    assert cache.is_stale(("thread-messages", 7))
    assert not cache.is_stale(("thread-messages", 8))
    assert not cache.is_stale(("thread-messages", 78))
    assert not cache.is_stale(("leads", "mine"))


def test_listeners_see_every_write_and_can_unsubscribe():
    cache = CacheStore()
    seen: list[tuple[tuple, object]] = []
    everything: list[tuple] = []

    unsubscribe = cache.subscribe(("k",), lambda key, value: seen.append((key, value)))
    cache.watch(lambda key, _value: everything.append(key))

    cache.set(("k",), 1)
    cache.optimistic_set(("k",), lambda v: v + 1)
    cache.set(("other",), 0)
    unsubscribe()
    cache.set(("k",), 3)

    assert seen == [(("k",), 1), (("k",), 2)]
    assert everything == [("k",), ("k",), ("other",), ("k",)]


def test_failing_listener_does_not_block_write():
    cache = CacheStore()
    calls: list[object] = []

    def broken(_key, _value):
        raise ValueError("listener bug")

    cache.subscribe(("k",), broken)
    cache.subscribe(("k",), lambda _key, value: calls.append(value))

    cache.set(("k",), "v")

    assert cache.get(("k",)) == "v"
    assert calls == ["v"]


def test_entry_versions_and_drop():
    cache = CacheStore()
    cache.set(("k",), "a")
    cache.optimistic_set(("k",), lambda v: v + "b")

    entry = cache.entry(("k",))
    assert entry is not None
    assert entry.value == "ab"
    assert entry.version == 2

    cache.drop(("k",))
    assert cache.entry(("k",)) is None
    assert cache.get(("k",)) is None


@pytest.mark.asyncio
async def test_invalidation_listeners_hear_keys_and_prefixes_even_when_uncached():
    cache = CacheStore()
    heard: list[tuple] = []
    written: list[tuple] = []
    cache.watch(lambda key, _value: written.append(key))
    unwatch = cache.watch_invalidations(heard.append)
    cache.set(("leads", "mine"), ["lead"])
    cache.register(("k",), GatedFetcher("v"))

    cache.invalidate_prefix(("leads",))
    cache.invalidate_prefix(("unread-badges",))
    await cache.invalidate(("k",))
    unwatch()
    cache.invalidate(("late",))

    assert heard == [("leads",), ("unread-badges",), ("k",)]
    assert cache.is_stale(("leads", "mine"))
    assert cache.get(("leads", "mine")) == ["lead"]
    assert written == [("leads", "mine"), ("k",)]
