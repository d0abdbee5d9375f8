"""Common lifecycle of a synchronized cache key.

A feed registers itself as the key's source in the cache store, polls it on
a fixed interval while active, and folds every fetch into the cached value
through its ``_merge``. Pushes only ever shorten the wait: they trigger the
same coalesced refresh the poll timer does.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable

from comms_sync.application.exceptions import AuthExpired, TransportError
from comms_sync.domain.value_objects.cache_keys import CacheKey
from comms_sync.infrastructure.cache.store import CacheStore, Registration

logger = logging.getLogger(__name__)

AuthExpiredHandler = Callable[[AuthExpired], None]


def _log_auth_expired(exc: AuthExpired) -> None:
    logger.warning("Credential rejected: %s", exc.detail)


class LiveFeed(ABC):
    name = "feed"

    def __init__(
        self,
        cache: CacheStore,
        key: CacheKey,
        *,
        poll_interval: float,
        on_auth_expired: AuthExpiredHandler | None = None,
    ) -> None:
        self._cache = cache
        self._key = key
        self._poll_interval = poll_interval
        self._on_auth_expired = on_auth_expired or _log_auth_expired
        self._registration: Registration | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._generation = 0

    @property
    def key(self) -> CacheKey:
        return self._key

    @property
    def active(self) -> bool:
        return self._registration is not None

    @abstractmethod
    async def _fetch(self) -> Any:
        ...

    @abstractmethod
    def _merge(self, current: Any, fetched: Any) -> Any:
        ...

    def _activate(self) -> int:
        self._generation += 1
        self._registration = self._cache.register(self._key, self._fetch, self._merge)
        return self._generation

    async def _deactivate(self) -> None:
        # Bumping the generation is what discards results still in flight.
        self._generation += 1
        if self._registration is not None:
            self._cache.unregister(self._registration)
            self._registration = None
        await self._stop_polling()

    def _is_current(self, generation: int) -> bool:
        return self.active and generation == self._generation

    def _start_polling(self) -> None:
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.create_task(
                self._poll_loop(self._generation), name=f"{self.name}-poll",
            )

    async def _stop_polling(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _poll_loop(self, generation: int) -> None:
        while True:
            await asyncio.sleep(self._poll_interval)
            if not self._is_current(generation):
                return
            try:
                await self.refresh()
            except AuthExpired:
                return
            except Exception:
                logger.exception("%s poll tick failed", self.name)

    async def refresh(self) -> bool:
        """Refetch now, joining a fetch already in flight. False when it failed."""
        if not self.active:
            return False
        try:
            await self._cache.refetch(self._key)
        except AuthExpired as exc:
            self._on_auth_expired(exc)
            raise
        except TransportError as exc:
            logger.warning("%s refresh failed: %s", self.name, exc.detail)
            return False
        return True
