"""Platform-wide notifications: push channel, periodic re-sync, read state."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from pydantic import ValidationError as PayloadError

from comms_sync.application.dto.toast import Toast
from comms_sync.application.exceptions import (
    AuthExpired,
    ChannelClosed,
    NotFoundError,
    ReconciliationConflict,
    TransportError,
)
from comms_sync.application.ports.presenter import Presenter
from comms_sync.application.ports.transport import Transport
from comms_sync.domain.entities.notification import Notification
from comms_sync.domain.value_objects import cache_keys
from comms_sync.domain.value_objects.enums import ChannelState, Severity, ToastVariant
from comms_sync.infrastructure.cache.store import CacheStore
from comms_sync.infrastructure.transport.mappers import (
    notification_from_payload,
    notifications_from_list,
    unwrap_frame,
)
from comms_sync.services.cues import CueGate, cue_for, error_toast
from comms_sync.services.live_feed import AuthExpiredHandler, LiveFeed
from comms_sync.services.notification_merge import (
    NotificationList,
    insert_pushed,
    merge_fetched,
    set_read,
    unread_count,
)

logger = logging.getLogger(__name__)

ChannelStateListener = Callable[[ChannelState], None]
NotificationListener = Callable[[Notification], None]


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Seconds to wait before reconnect ``attempt`` (1-based); the first retry is immediate."""
    if attempt <= 1:
        return 0.0
    return min(base * (2 ** (attempt - 2)), cap)


class NotificationSynchronizer(LiveFeed):
    name = "notifications"

    def __init__(
        self,
        *,
        cache: CacheStore,
        transport: Transport,
        presenter: Presenter,
        cues: CueGate,
        refresh_interval: float = 30.0,
        push_path: str = "/notifications",
        reconnect_base_delay: float = 1.0,
        reconnect_max_delay: float = 30.0,
        reconnect_max_attempts: int = 10,
        stable_connection_seconds: float = 10.0,
        on_auth_expired: AuthExpiredHandler | None = None,
    ) -> None:
        super().__init__(
            cache,
            cache_keys.notifications(),
            poll_interval=refresh_interval,
            on_auth_expired=on_auth_expired,
        )
        self._transport = transport
        self._presenter = presenter
        self._cues = cues
        self._push_path = push_path
        self._reconnect_base_delay = reconnect_base_delay
        self._reconnect_max_delay = reconnect_max_delay
        self._reconnect_max_attempts = reconnect_max_attempts
        self._stable_after = stable_connection_seconds

        self._running = False
        self._channel_state = ChannelState.DISCONNECTED
        self._channel_task: asyncio.Task[None] | None = None
        self._failed_attempts = 0
        self._exhaustion_reported = False
        self._state_listeners: list[ChannelStateListener] = []
        self._event_listeners: list[NotificationListener] = []
        # Ids that already had (or must never get) a cue and a toast.
        self._announced: set[int] = set()
        # Optimistic read flips awaiting the server.
        self._pending_reads: set[int] = set()
        # Preferences are read on demand only, never polled.
        self._cache.register(cache_keys.notification_preferences(), self._fetch_preferences)

    # -- state ---------------------------------------------------------------

    @property
    def channel_state(self) -> ChannelState:
        return self._channel_state

    @property
    def running(self) -> bool:
        return self._running

    def notifications(self) -> NotificationList:
        return self._cache.get(self._key, ())

    def unread_count(self) -> int:
        return unread_count(self.notifications())

    def find(self, notification_id: int) -> Notification | None:
        for notification in self.notifications():
            if notification.id == notification_id:
                return notification
        return None

    def add_state_listener(self, listener: ChannelStateListener) -> None:
        self._state_listeners.append(listener)

    def add_event_listener(self, listener: NotificationListener) -> None:
        self._event_listeners.append(listener)

    def _set_channel_state(self, state: ChannelState) -> None:
        if state == self._channel_state:
            return
        logger.info("Notification channel %s -> %s", self._channel_state, state)
        self._channel_state = state
        for listener in list(self._state_listeners):
            listener(state)

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._activate()
        self._start_polling()
        self._channel_task = asyncio.create_task(self._channel_loop(), name="notification-channel")
        logger.info("Notification synchronizer started")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        task, self._channel_task = self._channel_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._deactivate()
        self._set_channel_state(ChannelState.DISCONNECTED)
        logger.info("Notification synchronizer stopped")

    # -- source --------------------------------------------------------------

    async def _fetch(self) -> list[Notification]:
        raw = await self._transport.request("GET", "/notifications")
        return notifications_from_list(raw)

    def _merge(self, current: NotificationList | None, fetched: list[Notification]) -> NotificationList:
        for notification in fetched:
            # Anything the server list already has was missed, not new: no cue later.
            self._announced.add(notification.id)
            if notification.read:
                self._pending_reads.discard(notification.id)
        return merge_fetched(current, fetched)

    # -- push channel --------------------------------------------------------

    async def _channel_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while self._running:
            self._set_channel_state(ChannelState.CONNECTING)
            connected_at: float | None = None
            try:
                async with self._transport.open_push_channel(self._push_path) as channel:
                    self._set_channel_state(ChannelState.CONNECTED)
                    connected_at = loop.time()
                    try:
                        await self.refresh()
                    except AuthExpired:
                        # Already escalated by refresh().
                        self._set_channel_state(ChannelState.DISCONNECTED)
                        return
                    async for frame in channel:
                        self.ingest(frame)
                logger.info("Notification channel closed by server")
            except AuthExpired as exc:
                self._set_channel_state(ChannelState.DISCONNECTED)
                self._on_auth_expired(exc)
                return
            except TransportError as exc:
                logger.warning("Notification channel dropped: %s", exc.detail)
            except Exception:
                logger.exception("Notification channel loop error")

            self._set_channel_state(ChannelState.DISCONNECTED)
            # A channel that is accepted and dropped right away counts as a failed attempt.
            if connected_at is not None and loop.time() - connected_at >= self._stable_after:
                self._failed_attempts = 0
                self._exhaustion_reported = False
            self._failed_attempts += 1
            if self._failed_attempts > self._reconnect_max_attempts and not self._exhaustion_reported:
                self._exhaustion_reported = True
                exc = ChannelClosed(
                    f"Live notifications unavailable after {self._reconnect_max_attempts} attempts",
                )
                logger.error("%s", exc.detail)
                self._presenter.show_toast(error_toast("Connection lost", exc.detail))

            delay = backoff_delay(self._failed_attempts, self._reconnect_base_delay, self._reconnect_max_delay)
            if delay:
                await asyncio.sleep(delay)

    def ingest(self, frame: dict[str, Any]) -> Notification | None:
        """Handle one pushed frame; returns the notification if it was new."""
        try:
            notification = notification_from_payload(unwrap_frame(frame))
        except PayloadError:
            logger.warning("Ignoring malformed notification frame", exc_info=True)
            return None

        if notification.id in self._announced or self.find(notification.id) is not None:
            logger.debug("Duplicate push of notification %d ignored", notification.id)
            return None
        self._announced.add(notification.id)

        self._cache.optimistic_set(self._key, lambda current: insert_pushed(current, notification))
        self._cues.play(cue_for(notification.severity))
        self._presenter.show_toast(
            Toast(
                title=notification.title,
                description=notification.message,
                variant=ToastVariant.DESTRUCTIVE if notification.severity == Severity.CRITICAL else ToastVariant.DEFAULT,
                severity=notification.severity,
                link=notification.link,
            )
        )
        for listener in list(self._event_listeners):
            try:
                listener(notification)
            except Exception:
                logger.exception("Notification listener failed")
        return notification

    # -- read state ----------------------------------------------------------

    async def mark_as_read(self, notification_id: int) -> Notification:
        current = self.find(notification_id)
        if current is None:
            raise NotFoundError(f"Notification {notification_id} not found")
        if current.read:
            return current

        self._pending_reads.add(notification_id)
        self._cache.optimistic_set(self._key, lambda items: set_read(items, notification_id, True))
        try:
            await self._transport.request("PATCH", f"/notifications/{notification_id}/read")
        except AuthExpired as exc:
            self._revert_read(notification_id)
            self._on_auth_expired(exc)
            raise
        except TransportError as exc:
            self._revert_read(notification_id)
            logger.warning("Marking notification %d read failed: %s", notification_id, exc.detail)
            self._presenter.show_toast(error_toast("Failed to mark notification as read", exc.detail))
            raise
        self._pending_reads.discard(notification_id)
        return self.find(notification_id) or current.with_read(True)

    def _revert_read(self, notification_id: int) -> None:
        if notification_id not in self._pending_reads:
            # A fetch meanwhile showed it read on the server.
            return
        self._pending_reads.discard(notification_id)
        if self.find(notification_id) is None:
            conflict = ReconciliationConflict(
                f"Notification {notification_id} vanished before its read flag could be reverted",
            )
            logger.warning("%s", conflict.detail)
            return
        self._cache.optimistic_set(self._key, lambda items: set_read(items, notification_id, False))

    # -- preferences ---------------------------------------------------------

    async def _fetch_preferences(self) -> dict[str, Any]:
        raw = await self._transport.request("GET", "/notification-preferences")
        return raw if isinstance(raw, dict) else {}

    async def preferences(self) -> dict[str, Any]:
        try:
            return await self._cache.fetch(cache_keys.notification_preferences())
        except AuthExpired as exc:
            self._on_auth_expired(exc)
            raise

    async def update_preferences(self, changes: dict[str, Any]) -> dict[str, Any]:
        key = cache_keys.notification_preferences()
        previous = dict(await self.preferences())
        self._cache.optimistic_set(key, lambda current: {**(current or {}), **changes})
        try:
            raw = await self._transport.request("PATCH", "/notification-preferences", {**previous, **changes})
        except TransportError as exc:
            self._cache.optimistic_set(key, lambda _current: previous)
            if isinstance(exc, AuthExpired):
                self._on_auth_expired(exc)
            else:
                self._presenter.show_toast(error_toast("Failed to update preferences", exc.detail))
            raise
        value = raw if isinstance(raw, dict) else {**previous, **changes}
        self._cache.set(key, value)
        self._presenter.show_toast(Toast(title="Success", description="Notification preferences updated"))
        return value
