"""Shared test fixtures."""
from __future__ import annotations

import asyncio
import copy
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable

import pytest

from comms_sync.application.dto.principal import Principal
from comms_sync.application.dto.toast import Toast
from comms_sync.application.exceptions import ChannelClosed
from comms_sync.domain.value_objects.enums import CueKind
from comms_sync.infrastructure.cache.store import CacheStore
from comms_sync.services.cues import CueGate

ME = 42
OTHER = 7
LEAD = 100
T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


def message_payload(
    id: int,
    *,
    sender: int = OTHER,
    receiver: int = ME,
    body: str = "hello",
    created_at: datetime | None = None,
    read: bool = False,
    **extra: Any,
) -> dict[str, Any]:
    return {
        "id": id,
        "leadId": LEAD,
        "senderId": sender,
        "receiverId": receiver,
        "content": body,
        "createdAt": (created_at or at(id)).isoformat(),
        "read": read,
        **extra,
    }


def notification_payload(
    id: int,
    *,
    title: str = "Update",
    message: str = "Something happened",
    type: str = "general",
    severity: str | None = "info",
    created_at: datetime | None = None,
    read: bool = False,
    **extra: Any,
) -> dict[str, Any]:
    payload = {
        "id": id,
        "title": title,
        "message": message,
        "type": type,
        "createdAt": (created_at or at(id)).isoformat(),
        "read": read,
        **extra,
    }
    if severity is not None:
        payload["severity"] = severity
    return payload


async def eventually(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


async def settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeClock:
    def __init__(self, now: datetime = T0) -> None:
        self._now = now

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)


@dataclass
class RecordingPresenter:
    cues: list[CueKind] = field(default_factory=list)
    toasts: list[Toast] = field(default_factory=list)
    redirects: list[str] = field(default_factory=list)

    def play_cue(self, kind: CueKind) -> None:
        self.cues.append(kind)

    def show_toast(self, toast: Toast) -> None:
        self.toasts.append(toast)

    def redirect_to_login(self, reason: str) -> None:
        self.redirects.append(reason)


class FakePushChannel:
    _CLOSE = object()

    def __init__(self) -> None:
        self._frames: asyncio.Queue[Any] = asyncio.Queue()
        self.opened = asyncio.Event()

    def push(self, frame: dict[str, Any]) -> None:
        self._frames.put_nowait(frame)

    def close(self) -> None:
        self._frames.put_nowait(self._CLOSE)

    def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            frame = await self._frames.get()
            if frame is self._CLOSE:
                return
            yield frame


@dataclass
class FakeTransport:
    """Scripted transport.

    Each ``(method, path)`` has a queue of results; the last one is reused.
    A result that is an exception is raised, a callable is called with the
    request body. ``hold`` makes matching requests wait until released.
    """

    results: dict[tuple[str, str], list[Any]] = field(default_factory=dict)
    calls: list[tuple[str, str, Any]] = field(default_factory=list)
    channels: list[FakePushChannel | Exception] = field(default_factory=list)
    channel_opens: int = 0
    _holds: dict[tuple[str, str], asyncio.Event] = field(default_factory=dict)

    def on(self, method: str, path: str, *results: Any) -> FakeTransport:
        self.results.setdefault((method, path), []).extend(results)
        return self

    def reply(self, method: str, path: str, *results: Any) -> FakeTransport:
        """Replace whatever was scripted for ``(method, path)``."""
        self.results[(method, path)] = list(results)
        return self

    def hold(self, method: str, path: str) -> asyncio.Event:
        gate = asyncio.Event()
        self._holds[(method, path)] = gate
        return gate

    def calls_to(self, method: str, path: str) -> list[Any]:
        return [body for m, p, body in self.calls if m == method and p == path]

    async def request(self, method: str, path: str, body: Any | None = None) -> Any:
        self.calls.append((method, path, copy.deepcopy(body)))
        gate = self._holds.get((method, path))
        if gate is not None:
            await gate.wait()
        queue = self.results.get((method, path))
        if not queue:
            return None
        result = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(result, Exception):
            raise result
        if callable(result):
            return result(body)
        return copy.deepcopy(result)

    @asynccontextmanager
    async def open_push_channel(self, path: str) -> AsyncIterator[FakePushChannel]:
        self.channel_opens += 1
        if not self.channels:
            # Nothing scripted: stay "connecting" until cancelled.
            await asyncio.Event().wait()
        channel = self.channels.pop(0)
        if isinstance(channel, Exception):
            raise channel
        channel.opened.set()
        yield channel

    def refuse_channels(self, n: int) -> None:
        self.channels.extend(ChannelClosed("refused") for _ in range(n))


@pytest.fixture
def principal() -> Principal:
    return Principal(user_id=ME, token="token")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def presenter() -> RecordingPresenter:
    return RecordingPresenter()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def cache() -> CacheStore:
    return CacheStore()


@pytest.fixture
def cues(presenter: RecordingPresenter, clock: FakeClock) -> CueGate:
    return CueGate(presenter, clock, timedelta(seconds=2))
