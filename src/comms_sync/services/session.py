"""One signed-in user's synchronization session."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import TYPE_CHECKING, Any, AsyncIterator

from comms_sync.application.dto.principal import Principal
from comms_sync.application.exceptions import AuthExpired, NotFoundError
from comms_sync.application.ports.clock import Clock, SystemClock
from comms_sync.application.ports.presenter import Presenter
from comms_sync.application.ports.transport import Transport
from comms_sync.domain.entities.notification import Notification
from comms_sync.domain.value_objects.ids import ThreadKey
from comms_sync.infrastructure.cache.store import CacheStore
from comms_sync.services.cues import CueGate
from comms_sync.services.notification_sync import NotificationSynchronizer
from comms_sync.services.thread_sync import ThreadSynchronizer

if TYPE_CHECKING:
    from comms_sync.config import Settings

logger = logging.getLogger(__name__)

NEW_MESSAGE_TYPE = "new_message"


class SyncSession:
    """Owns the cache, the notification channel and every thread synchronizer.

    Used as an async context manager; leaving it closes every open thread and
    stops the channel loop. The first ``AuthExpired`` from any component
    redirects to login once and halts all polling and reconnecting.
    """

    def __init__(
        self,
        transport: Transport,
        principal: Principal,
        presenter: Presenter,
        *,
        cache: CacheStore | None = None,
        clock: Clock | None = None,
        thread_poll_interval: float = 3.0,
        notification_refresh_interval: float = 30.0,
        reconnect_base_delay: float = 1.0,
        reconnect_max_delay: float = 30.0,
        reconnect_max_attempts: int = 10,
        reconnect_stable_seconds: float = 10.0,
        match_window_seconds: float = 10.0,
        cue_cooldown_seconds: float = 2.0,
    ) -> None:
        self._transport = transport
        self._principal = principal
        self._presenter = presenter
        self._cache = cache or CacheStore()
        self._clock = clock or SystemClock()
        self._thread_poll_interval = thread_poll_interval
        self._match_window = timedelta(seconds=match_window_seconds)
        self._cues = CueGate(presenter, self._clock, timedelta(seconds=cue_cooldown_seconds))

        self._threads: dict[ThreadKey, ThreadSynchronizer] = {}
        self._auth_expired = False
        self._closed = False
        self._halt_task: asyncio.Task[None] | None = None

        self._notifications = NotificationSynchronizer(
            cache=self._cache,
            transport=transport,
            presenter=presenter,
            cues=self._cues,
            refresh_interval=notification_refresh_interval,
            reconnect_base_delay=reconnect_base_delay,
            reconnect_max_delay=reconnect_max_delay,
            reconnect_max_attempts=reconnect_max_attempts,
            stable_connection_seconds=reconnect_stable_seconds,
            on_auth_expired=self._handle_auth_expired,
        )
        self._notifications.add_event_listener(self._route_message_hint)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: Transport,
        principal: Principal,
        presenter: Presenter,
        **kwargs: Any,
    ) -> SyncSession:
        return cls(
            transport,
            principal,
            presenter,
            thread_poll_interval=settings.THREAD_POLL_INTERVAL,
            notification_refresh_interval=settings.NOTIFICATION_REFRESH_INTERVAL,
            reconnect_base_delay=settings.RECONNECT_BASE_DELAY,
            reconnect_max_delay=settings.RECONNECT_MAX_DELAY,
            reconnect_max_attempts=settings.RECONNECT_MAX_ATTEMPTS,
            reconnect_stable_seconds=settings.RECONNECT_STABLE_SECONDS,
            match_window_seconds=settings.OPTIMISTIC_MATCH_WINDOW_SECONDS,
            cue_cooldown_seconds=settings.CUE_COOLDOWN_SECONDS,
            **kwargs,
        )

    @property
    def cache(self) -> CacheStore:
        return self._cache

    @property
    def principal(self) -> Principal:
        return self._principal

    @property
    def notifications(self) -> NotificationSynchronizer:
        return self._notifications

    @property
    def auth_expired(self) -> bool:
        return self._auth_expired

    def open_threads(self) -> list[ThreadSynchronizer]:
        return [t for t in self._threads.values() if t.active]

    # -- lifecycle -----------------------------------------------------------

    async def __aenter__(self) -> SyncSession:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def start(self) -> None:
        logger.info("Starting sync session for user %d", self._principal.user_id)
        await self._notifications.start()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        for thread in list(self._threads.values()):
            await thread.close()
        await self._notifications.stop()
        logger.info("Sync session for user %d closed", self._principal.user_id)

    # -- threads -------------------------------------------------------------

    def thread(self, lead_id: int, counterparty_id: int) -> ThreadSynchronizer:
        """The synchronizer of a thread opened earlier in this session."""
        if self._auth_expired:
            raise AuthExpired("Session expired, sign in again")
        sync = self._threads.get(ThreadKey(lead_id, counterparty_id))
        if sync is None:
            raise NotFoundError(f"Thread {lead_id}:{counterparty_id} was never opened")
        return sync

    async def open(self, lead_id: int, counterparty_id: int) -> ThreadSynchronizer:
        """Open a thread, creating its synchronizer on first use.

        Synchronizers are kept after close so a reopen keeps the read watermark.
        """
        if self._auth_expired:
            raise AuthExpired("Session expired, sign in again")
        key = ThreadKey(lead_id, counterparty_id)
        sync = self._threads.get(key)
        if sync is None:
            sync = self._threads[key] = ThreadSynchronizer(
                key,
                cache=self._cache,
                transport=self._transport,
                principal=self._principal,
                presenter=self._presenter,
                cues=self._cues,
                clock=self._clock,
                poll_interval=self._thread_poll_interval,
                match_window=self._match_window,
                on_auth_expired=self._handle_auth_expired,
            )
        await sync.open()
        return sync

    @asynccontextmanager
    async def open_thread(self, lead_id: int, counterparty_id: int) -> AsyncIterator[ThreadSynchronizer]:
        sync = await self.open(lead_id, counterparty_id)
        try:
            yield sync
        finally:
            await sync.close()

    def _route_message_hint(self, notification: Notification) -> None:
        if notification.type != NEW_MESSAGE_TYPE or not notification.metadata:
            return
        lead_id = notification.metadata.get("lead_id", notification.metadata.get("leadId"))
        try:
            lead_id = int(lead_id)
        except (TypeError, ValueError):
            return
        for key, sync in self._threads.items():
            if key.lead_id == lead_id:
                sync.poke()

    # -- auth ----------------------------------------------------------------

    def _handle_auth_expired(self, exc: AuthExpired) -> None:
        if self._auth_expired:
            return
        self._auth_expired = True
        logger.warning("Credential expired, halting sync: %s", exc.detail)
        self._presenter.redirect_to_login(exc.detail or "Session expired")
        self._halt_task = asyncio.create_task(self.aclose(), name="sync-session-halt")
