"""aiohttp-backed transport: REST calls plus the receive-only push channel."""
from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import aiohttp

from comms_sync.application.context import correlation_id_ctx
from comms_sync.application.dto.principal import Principal
from comms_sync.application.exceptions import AuthExpired, ChannelClosed, RequestFailed
from comms_sync.application.ports.clock import Clock, SystemClock
from comms_sync.infrastructure.transport.serializer import decode_frame, serialize_body

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def _build_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}/{path.lstrip('/')}"


def _error_detail(raw: str, reason: str | None) -> str:
    text = raw.strip()
    if not text:
        return reason or "Request failed"
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return text
    if isinstance(payload, dict):
        for field in ("message", "detail", "error"):
            value = payload.get(field)
            if isinstance(value, str) and value:
                return value
    return text


class WebSocketPushChannel:
    """Iterates decoded JSON frames until the socket closes."""

    def __init__(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        self._ws = ws

    def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        return self._frames()

    async def _frames(self) -> AsyncIterator[dict[str, Any]]:
        async for msg in self._ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                frame = decode_frame(msg.data)
                if frame is not None:
                    yield frame
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning("Push channel error: %s", self._ws.exception())
                break


class HttpTransport:
    """Implements application.ports.transport.Transport."""

    def __init__(
        self,
        base_url: str,
        push_url: str,
        principal: Principal,
        *,
        session: aiohttp.ClientSession | None = None,
        clock: Clock | None = None,
        timeout_seconds: float = 15.0,
        push_connect_timeout: float = 10.0,
        heartbeat_seconds: float = 30.0,
    ) -> None:
        self._base_url = base_url
        self._push_url = push_url
        self._principal = principal
        self._session = session
        self._owns_session = session is None
        self._clock = clock or SystemClock()
        self._timeout_seconds = timeout_seconds
        self._push_connect_timeout = push_connect_timeout
        self._heartbeat_seconds = heartbeat_seconds

    async def __aenter__(self) -> HttpTransport:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout_seconds),
            )
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError("HttpTransport used outside of its async context")
        return self._session

    def _check_credential(self) -> None:
        if self._principal.is_expired(self._clock.now()):
            raise AuthExpired(f"Credential expired at {self._principal.expires_at:%Y-%m-%d %H:%M:%S}")

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": self._principal.authorization,
            "Accept": "application/json",
            "Cache-Control": "no-cache",
            REQUEST_ID_HEADER: correlation_id_ctx.get() or uuid.uuid4().hex,
        }

    async def request(self, method: str, path: str, body: Any | None = None) -> Any:
        self._check_credential()

        headers = self._headers()
        data: str | None = None
        if body is not None:
            headers["Content-Type"] = "application/json"
            data = serialize_body(body)

        start = time.perf_counter()
        try:
            async with self.session.request(
                method, _build_url(self._base_url, path), data=data, headers=headers,
            ) as resp:
                status = resp.status
                reason = resp.reason
                raw = await resp.text()
        except asyncio.TimeoutError as exc:
            raise RequestFailed(f"{method} {path} timed out") from exc
        except aiohttp.ClientError as exc:
            raise RequestFailed(f"{method} {path} failed: {exc}") from exc

        elapsed_ms = (time.perf_counter() - start) * 1000
        if status == 401:
            logger.warning("%s %s %s %.1fms", method, path, status, elapsed_ms)
            raise AuthExpired(_error_detail(raw, reason))
        if not 200 <= status < 300:
            logger.warning("%s %s %s %.1fms", method, path, status, elapsed_ms)
            raise RequestFailed(_error_detail(raw, reason), status=status)
        logger.debug("%s %s %s %.1fms", method, path, status, elapsed_ms)

        if not raw.strip():
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise RequestFailed(f"{method} {path} returned invalid JSON", status=status) from exc

    @asynccontextmanager
    async def open_push_channel(self, path: str) -> AsyncIterator[WebSocketPushChannel]:
        self._check_credential()
        url = _build_url(self._push_url, path)

        async def _connect() -> aiohttp.ClientWebSocketResponse:
            # Upgrade requests cannot carry custom auth headers, hence the query param.
            return await self.session.ws_connect(
                url,
                params={"token": self._principal.token},
                headers={REQUEST_ID_HEADER: uuid.uuid4().hex},
                heartbeat=self._heartbeat_seconds,
            )

        try:
            ws = await asyncio.wait_for(_connect(), timeout=self._push_connect_timeout)
        except asyncio.TimeoutError as exc:
            raise ChannelClosed(
                f"Push channel did not open within {self._push_connect_timeout:.0f}s",
            ) from exc
        except aiohttp.WSServerHandshakeError as exc:
            if exc.status == 401:
                raise AuthExpired("Push channel rejected the credential") from exc
            raise ChannelClosed(f"Push handshake failed with status {exc.status}") from exc
        except aiohttp.ClientError as exc:
            raise ChannelClosed(f"Push connect failed: {exc}") from exc

        logger.info("Push channel open: %s", path)
        try:
            yield WebSocketPushChannel(ws)
        finally:
            await ws.close()
            logger.info("Push channel closed: %s (code=%s)", path, ws.close_code)
