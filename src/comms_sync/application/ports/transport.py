from __future__ import annotations

from typing import Any, AsyncContextManager, AsyncIterator, Protocol


class PushChannel(Protocol):
    def __aiter__(self) -> AsyncIterator[dict[str, Any]]: ...


class Transport(Protocol):
    """Outbound request/response plus the inbound push channel.

    Implementations raise ``AuthExpired`` / ``RequestFailed`` / ``ChannelClosed``
    and never retry or reconnect on their own.
    """

    async def request(self, method: str, path: str, body: Any | None = None) -> Any: ...

    def open_push_channel(self, path: str) -> AsyncContextManager[PushChannel]: ...
