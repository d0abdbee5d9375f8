"""Session-lifetime keyed store of server-derived state.

Single writer per key: every synchronizer reads and writes its keys only
through this API, and presentation surfaces observe the same values via
listeners.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from comms_sync.domain.value_objects.cache_keys import CacheKey

logger = logging.getLogger(__name__)

Fetcher = Callable[[], Awaitable[Any]]
Merge = Callable[[Any, Any], Any]
Listener = Callable[[CacheKey, Any], None]
InvalidationListener = Callable[[CacheKey], None]


@dataclass(slots=True)
class CacheEntry:
    value: Any
    stale: bool = False
    version: int = 0


@dataclass(eq=False, slots=True)
class Registration:
    """Where a key's fresh value comes from. Identity matters, not equality."""

    key: CacheKey
    fetcher: Fetcher
    merge: Merge | None = None


@dataclass(slots=True)
class _Listeners:
    by_key: dict[CacheKey, list[Listener]] = field(default_factory=dict)
    every: list[Listener] = field(default_factory=list)
    invalidated: list[InvalidationListener] = field(default_factory=list)


class CacheStore:
    def __init__(self) -> None:
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._sources: dict[CacheKey, Registration] = {}
        self._inflight: dict[CacheKey, asyncio.Task[Any]] = {}
        self._listeners = _Listeners()

    # -- reads -------------------------------------------------------------

    def get(self, key: CacheKey, default: Any = None) -> Any:
        entry = self._entries.get(key)
        return default if entry is None else entry.value

    def entry(self, key: CacheKey) -> CacheEntry | None:
        return self._entries.get(key)

    def is_stale(self, key: CacheKey) -> bool:
        entry = self._entries.get(key)
        return entry is None or entry.stale

    def is_fetching(self, key: CacheKey) -> bool:
        return key in self._inflight

    # -- writes ------------------------------------------------------------

    def set(self, key: CacheKey, value: Any) -> None:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = CacheEntry(value=value)
        else:
            entry.value = value
            entry.stale = False
        entry.version += 1
        self._notify(key, value)

    def optimistic_set(self, key: CacheKey, updater: Callable[[Any], Any]) -> Any:
        """Apply ``updater`` to the current value now; a later refetch reconciles it.

        The stale flag is left untouched: an optimistic value is not server truth.
        """
        entry = self._entries.get(key)
        value = updater(None if entry is None else entry.value)
        if entry is None:
            entry = self._entries[key] = CacheEntry(value=value, stale=True)
        else:
            entry.value = value
        entry.version += 1
        self._notify(key, value)
        return value

    def drop(self, key: CacheKey) -> None:
        self._entries.pop(key, None)

    # -- invalidation ------------------------------------------------------

    def invalidate(self, key: CacheKey) -> asyncio.Task[Any] | None:
        """Flag ``key`` stale, keeping the last good value readable.

        With a registered source the refetch starts right away, joining one
        already in flight. Invalidation listeners hear about it even when
        nothing is cached under ``key``.
        """
        task = self._mark_stale(key)
        self._notify_invalidated(key)
        return task

    def invalidate_prefix(self, prefix: CacheKey) -> None:
        """Invalidate every key starting with ``prefix``; listeners get the prefix once."""
        n = len(prefix)
        for key in [k for k in self._entries if k[:n] == prefix]:
            self._mark_stale(key)
        self._notify_invalidated(prefix)

    def _mark_stale(self, key: CacheKey) -> asyncio.Task[Any] | None:
        entry = self._entries.get(key)
        if entry is not None:
            entry.stale = True
        if key in self._sources:
            return self._start_refetch(key)
        return None

    # -- refetch -----------------------------------------------------------

    def register(self, key: CacheKey, fetcher: Fetcher, merge: Merge | None = None) -> Registration:
        registration = Registration(key=key, fetcher=fetcher, merge=merge)
        self._sources[key] = registration
        return registration

    def unregister(self, registration: Registration) -> None:
        if self._sources.get(registration.key) is registration:
            del self._sources[registration.key]

    async def refetch(self, key: CacheKey) -> Any:
        if key not in self._sources:
            raise KeyError(f"No source registered for {key!r}")
        # Shielded so that cancelling one awaiter (a closing poll loop) does
        # not cancel the fetch other awaiters share.
        return await asyncio.shield(self._start_refetch(key))

    async def fetch(self, key: CacheKey) -> Any:
        """Stale-while-revalidate read."""
        entry = self._entries.get(key)
        if entry is None:
            return await self.refetch(key)
        if entry.stale and key in self._sources:
            self._start_refetch(key)
        return entry.value

    def _start_refetch(self, key: CacheKey) -> asyncio.Task[Any]:
        task = self._inflight.get(key)
        if task is None:
            source = self._sources[key]
            task = asyncio.create_task(self._run(source), name=f"cache-refetch-{key[0]}")
            task.add_done_callback(self._log_failure)
            self._inflight[key] = task
        return task

    async def _run(self, source: Registration) -> Any:
        key = source.key
        try:
            fetched = await source.fetcher()
        finally:
            self._inflight.pop(key, None)

        if self._sources.get(key) is not source:
            logger.debug("Discarding refetch of %r: source was replaced or removed", key)
            return self.get(key)

        current = self.get(key)
        value = source.merge(current, fetched) if source.merge is not None else fetched
        self.set(key, value)
        return value

    @staticmethod
    def _log_failure(task: asyncio.Task[Any]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Cache refetch failed: %s", exc)

    # -- listeners ---------------------------------------------------------

    def subscribe(self, key: CacheKey, listener: Listener) -> Callable[[], None]:
        listeners = self._listeners.by_key.setdefault(key, [])
        listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in listeners:
                listeners.remove(listener)

        return _unsubscribe

    def watch(self, listener: Listener) -> Callable[[], None]:
        """Observe every write to every key."""
        self._listeners.every.append(listener)

        def _unwatch() -> None:
            if listener in self._listeners.every:
                self._listeners.every.remove(listener)

        return _unwatch

    def watch_invalidations(self, listener: InvalidationListener) -> Callable[[], None]:
        """Observe every ``invalidate`` key and ``invalidate_prefix`` prefix."""
        self._listeners.invalidated.append(listener)

        def _unwatch() -> None:
            if listener in self._listeners.invalidated:
                self._listeners.invalidated.remove(listener)

        return _unwatch

    def _notify_invalidated(self, key: CacheKey) -> None:
        for listener in list(self._listeners.invalidated):
            try:
                listener(key)
            except Exception:
                logger.exception("Invalidation listener failed for %r", key)

    def _notify(self, key: CacheKey, value: Any) -> None:
        for listener in [*self._listeners.by_key.get(key, ()), *self._listeners.every]:
            try:
                listener(key, value)
            except Exception:
                logger.exception("Cache listener failed for %r", key)
