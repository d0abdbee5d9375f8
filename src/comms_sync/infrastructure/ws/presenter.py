"""Presenter that streams UI effects to the connected shells."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict
from typing import Any

from comms_sync.application.dto.toast import Toast
from comms_sync.domain.value_objects.cache_keys import CacheKey, render
from comms_sync.domain.value_objects.enums import ChannelState, CueKind
from comms_sync.infrastructure.ws.manager import UiConnectionManager

logger = logging.getLogger(__name__)


class EventStreamPresenter:
    """Implements application.ports.presenter.Presenter.

    Synchronizers call it synchronously; events are queued and a background
    task fans them out to the UI connections.
    """

    def __init__(self, manager: UiConnectionManager) -> None:
        self._manager = manager
        self._queue: asyncio.Queue[tuple[str, dict[str, Any]]] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        self._task = asyncio.create_task(self._pump(), name="ui-event-pump")
        logger.info("UI event stream started")

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("UI event stream stopped")

    def _emit(self, event_type: str, data: dict[str, Any]) -> None:
        self._queue.put_nowait((event_type, data))

    async def _pump(self) -> None:
        while True:
            event_type, data = await self._queue.get()
            try:
                await self._manager.broadcast(event_type, data)
            except Exception:
                logger.exception("Error streaming %s event", event_type)

    # -- Presenter -----------------------------------------------------------

    def play_cue(self, kind: CueKind) -> None:
        self._emit("cue", {"kind": kind.value})

    def show_toast(self, toast: Toast) -> None:
        self._emit("toast", asdict(toast))

    def redirect_to_login(self, reason: str) -> None:
        self._emit("auth_expired", {"reason": reason})

    # -- observers -----------------------------------------------------------

    def cache_updated(self, key: CacheKey, _value: Any) -> None:
        self._emit("cache.updated", {"key": render(key)})

    def cache_invalidated(self, key: CacheKey) -> None:
        self._emit("cache.invalidated", {"key": render(key)})

    def channel_state_changed(self, state: ChannelState) -> None:
        self._emit("channel.state", {"state": state.value})
