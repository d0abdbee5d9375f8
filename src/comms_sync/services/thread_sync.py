"""Per-conversation synchronization: timeline merge, send, cues and read receipts."""
from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any

from pydantic import ValidationError as PayloadError

from comms_sync.application.dto.principal import Principal
from comms_sync.application.exceptions import (
    AuthExpired,
    NotFoundError,
    ReconciliationConflict,
    TransportError,
    ValidationError,
)
from comms_sync.application.ports.clock import Clock
from comms_sync.application.ports.presenter import Presenter
from comms_sync.application.ports.transport import Transport
from comms_sync.domain.entities.message import Message
from comms_sync.domain.entities.timeline import Timeline, TimelineEntry
from comms_sync.domain.value_objects import cache_keys
from comms_sync.domain.value_objects.enums import CueKind, DeliveryState, ThreadState
from comms_sync.domain.value_objects.ids import ThreadKey
from comms_sync.infrastructure.cache.store import CacheStore
from comms_sync.infrastructure.transport.mappers import message_from_payload, messages_from_list
from comms_sync.services.cues import CueGate, error_toast
from comms_sync.services.live_feed import AuthExpiredHandler, LiveFeed
from comms_sync.services.timeline_merge import (
    confirm_entry,
    mark_incoming_read,
    merge_timeline,
    normalize,
    replace_entry,
)

logger = logging.getLogger(__name__)

OrderKey = tuple[datetime, int]


class ThreadSynchronizer(LiveFeed):
    """Keeps one thread's timeline in the cache while its dialog is open.

    ``closed -> loading -> live <-> refreshing -> closed``; a closed thread can
    be opened again and keeps its read watermark across openings.
    """

    name = "thread"

    def __init__(
        self,
        thread: ThreadKey,
        *,
        cache: CacheStore,
        transport: Transport,
        principal: Principal,
        presenter: Presenter,
        cues: CueGate,
        clock: Clock,
        poll_interval: float = 3.0,
        match_window: timedelta = timedelta(seconds=10),
        on_auth_expired: AuthExpiredHandler | None = None,
    ) -> None:
        super().__init__(
            cache,
            cache_keys.thread_messages(thread),
            poll_interval=poll_interval,
            on_auth_expired=on_auth_expired,
        )
        self._thread = thread
        self._transport = transport
        self._user_id = principal.user_id
        self._presenter = presenter
        self._cues = cues
        self._clock = clock
        self._match_window = match_window
        self._path = f"/threads/{thread.lead_id}/messages"

        self._state = ThreadState.CLOSED
        self._unsubscribe: Any = None
        self._seen_ids: set[int] = set()
        self._delivering: set[str] = set()
        # Read receipts: what the server confirmed, and what this viewing
        # session already asked for (successfully or not).
        self._read_watermark: OrderKey | None = None
        self._attempted_watermark: OrderKey | None = None
        self._background: set[asyncio.Task[Any]] = set()

    @property
    def thread(self) -> ThreadKey:
        return self._thread

    @property
    def state(self) -> ThreadState:
        return self._state

    @property
    def read_watermark(self) -> OrderKey | None:
        return self._read_watermark

    def timeline(self) -> Timeline:
        return self._cache.get(self._key, ())

    # -- source ------------------------------------------------------------

    async def _fetch(self) -> list[Message]:
        raw = await self._transport.request("GET", self._path)
        return [m for m in messages_from_list(raw, self._thread.lead_id) if self._belongs(m)]

    def _merge(self, current: Timeline | None, fetched: list[Message]) -> Timeline:
        return merge_timeline(current, fetched, window=self._match_window)

    def _belongs(self, message: Message) -> bool:
        return {message.sender_id, message.receiver_id} == {self._user_id, self._thread.counterparty_id}

    # -- lifecycle ---------------------------------------------------------

    async def open(self) -> Timeline:
        if self._state != ThreadState.CLOSED:
            return self.timeline()

        self._state = ThreadState.LOADING
        generation = self._activate()
        self._unsubscribe = self._cache.subscribe(self._key, self._on_timeline_changed)
        self._seen_ids.update(e.id for e in self.timeline() if e.id is not None)
        logger.info("Opening thread %s", self._thread)

        try:
            await self._cache.refetch(self._key)
        except AuthExpired as exc:
            await self.close()
            self._on_auth_expired(exc)
            raise
        except TransportError as exc:
            # Last known timeline stays on screen; the poll timer keeps trying.
            logger.warning("Initial load of thread %s failed: %s", self._thread, exc.detail)

        if not self._is_current(generation):
            return self.timeline()

        self._state = ThreadState.LIVE
        self._expire_orphans()
        self._attempted_watermark = self._read_watermark
        await self._mark_read_if_needed(generation)
        self._start_polling()
        return self.timeline()

    async def close(self) -> None:
        if self._state == ThreadState.CLOSED:
            return
        self._state = ThreadState.CLOSED
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        await self._deactivate()
        logger.info("Closed thread %s", self._thread)

    async def refresh(self) -> bool:
        if self._state not in (ThreadState.LIVE, ThreadState.REFRESHING):
            return False
        generation = self._generation
        self._state = ThreadState.REFRESHING
        try:
            ok = await super().refresh()
        finally:
            if self._is_current(generation):
                self._state = ThreadState.LIVE
        if ok and self._is_current(generation):
            await self._mark_read_if_needed(generation)
        return ok

    def poke(self) -> asyncio.Task[bool] | None:
        """Push hint that the server has something new for this thread."""
        if self._state != ThreadState.LIVE:
            return None
        task = asyncio.create_task(self.refresh(), name=f"thread-poke-{self._thread}")
        self._background.add(task)
        task.add_done_callback(self._reap)
        return task

    def _reap(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Poke of thread %s ended with %r", self._thread, task.exception())

    # -- cues --------------------------------------------------------------

    def _on_timeline_changed(self, _key: Any, timeline: Timeline) -> None:
        arrivals = [e for e in timeline if e.id is not None and e.id not in self._seen_ids]
        if not arrivals:
            return
        self._seen_ids.update(e.id for e in arrivals)
        if self._state in (ThreadState.LOADING, ThreadState.CLOSED):
            return
        newest = max(arrivals, key=lambda e: e.order_key)
        if newest.sender_id != self._user_id:
            self._cues.play(CueKind.RECEIVE)

    # -- read receipts -----------------------------------------------------

    def _unread_batch(self) -> OrderKey | None:
        watermark = self._attempted_watermark
        beyond = [
            e.order_key
            for e in self.timeline()
            if e.id is not None
            and e.sender_id != self._user_id
            and not e.read
            and (watermark is None or e.order_key > watermark)
        ]
        return max(beyond) if beyond else None

    async def _mark_read_if_needed(self, generation: int) -> bool:
        batch = self._unread_batch()
        if batch is None:
            return False
        # Claimed before the await so a concurrent tick cannot send the same batch.
        self._attempted_watermark = batch
        try:
            await self._transport.request("POST", f"{self._path}/read")
        except AuthExpired as exc:
            self._on_auth_expired(exc)
            return False
        except TransportError as exc:
            logger.warning("Marking thread %s read failed: %s", self._thread, exc.detail)
            self._presenter.show_toast(error_toast("Failed to mark messages as read", exc.detail))
            return False

        if self._read_watermark is None or batch > self._read_watermark:
            self._read_watermark = batch
        logger.debug("Thread %s read up to %s", self._thread, batch)
        if not self._is_current(generation):
            return True
        self._cache.optimistic_set(self._key, lambda tl: mark_incoming_read(tl, self._user_id))
        self._cache.invalidate_prefix(cache_keys.leads())
        return True

    # -- sending -----------------------------------------------------------

    async def send(self, body: str) -> TimelineEntry:
        text = body.strip()
        if not text:
            raise ValidationError("Message body is empty")
        if self._state == ThreadState.CLOSED:
            raise ValidationError(f"Thread {self._thread} is not open")

        entry = TimelineEntry.optimistic(
            uuid.uuid4().hex,
            lead_id=self._thread.lead_id,
            sender_id=self._user_id,
            receiver_id=self._thread.counterparty_id,
            body=text,
            created_at=self._clock.now(),
        )
        self._cache.optimistic_set(self._key, lambda tl: normalize((*(tl or ()), entry)))
        return await self._deliver(entry)

    async def retry(self, temp_key: str) -> TimelineEntry:
        entry = self._find(temp_key)
        if entry.state != DeliveryState.FAILED:
            raise ValidationError("Only failed messages can be retried")
        pending = entry.pending()
        self._cache.optimistic_set(self._key, lambda tl: replace_entry(tl, temp_key, pending))
        return await self._deliver(pending)

    def discard(self, temp_key: str) -> None:
        entry = self._find(temp_key)
        if entry.state != DeliveryState.FAILED:
            raise ValidationError("Only failed messages can be discarded")
        self._cache.optimistic_set(self._key, lambda tl: replace_entry(tl, temp_key, None))

    def _find(self, temp_key: str) -> TimelineEntry:
        for entry in self.timeline():
            if entry.key == temp_key and entry.is_optimistic:
                return entry
        raise NotFoundError(f"No unsent message {temp_key} in thread {self._thread}")

    async def _deliver(self, entry: TimelineEntry) -> TimelineEntry:
        generation = self._generation
        self._delivering.add(entry.key)
        try:
            raw = await self._transport.request(
                "POST",
                self._path,
                {
                    "receiverId": self._thread.counterparty_id,
                    "content": entry.body,
                    "clientToken": entry.client_token,
                },
            )
            message = message_from_payload(raw, self._thread.lead_id)
            if message.sender_id != self._user_id:
                raise ReconciliationConflict(
                    f"Server returned message {message.id} from user {message.sender_id} for our send",
                )
        except AuthExpired as exc:
            failed = self._fail(entry, exc.detail or "Session expired")
            self._on_auth_expired(exc)
            return failed
        except TransportError as exc:
            logger.warning("Send in thread %s failed: %s", self._thread, exc.detail)
            self._presenter.show_toast(error_toast("Failed to send message", exc.detail))
            return self._fail(entry, exc.detail or "Failed to send message")
        except (PayloadError, ReconciliationConflict) as exc:
            logger.error("Send in thread %s could not be reconciled: %s", self._thread, exc)
            return self._fail(entry, "Sent, but the server reply could not be matched")
        finally:
            self._delivering.discard(entry.key)

        confirmed = TimelineEntry.confirmed(message)
        if not self._is_current(generation):
            logger.debug("Discarding send result for closed thread %s", self._thread)
            return confirmed
        self._cache.optimistic_set(self._key, lambda tl: confirm_entry(tl, entry.key, message))
        self._cues.play(CueKind.SEND)
        return confirmed

    def _fail(self, entry: TimelineEntry, error: str) -> TimelineEntry:
        failed = entry.failed(error)
        # Written whenever the thread is open, including after a reopen.
        if self.active:
            self._cache.optimistic_set(self._key, lambda tl: replace_entry(tl, entry.key, failed))
        return failed

    def _expire_orphans(self) -> None:
        """Pending entries whose request finished while the thread was closed never got an answer."""
        orphans = [
            e for e in self.timeline()
            if e.state == DeliveryState.PENDING and e.key not in self._delivering
        ]
        for orphan in orphans:
            failed = orphan.failed("Delivery not confirmed")
            self._cache.optimistic_set(self._key, lambda tl, o=orphan, f=failed: replace_entry(tl, o.key, f))
