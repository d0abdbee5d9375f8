from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from aiohttp import WSCloseCode, web
from aiohttp.test_utils import TestServer

from comms_sync.application.context import correlation_id_ctx
from comms_sync.application.dto.principal import Principal
from comms_sync.application.exceptions import AuthExpired, ChannelClosed, RequestFailed
from comms_sync.infrastructure.transport.http_transport import HttpTransport
from tests.conftest import ME, message_payload, notification_payload

SEEN = web.AppKey("seen", list)


def _build_app() -> web.Application:
    app = web.Application()
    app[SEEN] = []

    async def messages(request: web.Request) -> web.Response:
        app[SEEN].append(dict(request.headers))
        return web.json_response([message_payload(1)])

    async def echo(request: web.Request) -> web.Response:
        app[SEEN].append(dict(request.headers))
        return web.json_response({"received": await request.json()})

    async def empty(_request: web.Request) -> web.Response:
        return web.Response(status=204)

    async def unauthorized(_request: web.Request) -> web.Response:
        return web.json_response({"message": "Token expired"}, status=401)

    async def broken(_request: web.Request) -> web.Response:
        return web.json_response({"detail": "database unavailable"}, status=500)

    async def plain(_request: web.Request) -> web.Response:
        return web.Response(text="maintenance window", status=503)

    async def bare(_request: web.Request) -> web.Response:
        return web.Response(status=404)

    async def not_json(_request: web.Request) -> web.Response:
        return web.Response(text="<html>oops</html>", content_type="text/html")

    async def push(request: web.Request) -> web.WebSocketResponse:
        app[SEEN].append({"token": request.query.get("token")})
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        await ws.send_json(notification_payload(1))
        await ws.send_str("not json at all")
        await ws.send_str("[1, 2, 3]")
        await ws.send_json(notification_payload(2))
        await ws.close(code=WSCloseCode.GOING_AWAY)
        return ws

    async def reject(_request: web.Request) -> web.Response:
        return web.Response(status=401)

    async def forbidden(_request: web.Request) -> web.Response:
        return web.Response(status=403)

    async def slow(request: web.Request) -> web.WebSocketResponse:
        await asyncio.sleep(1)
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        return ws

    app.router.add_get("/api/threads/100/messages", messages)
    app.router.add_post("/api/echo", echo)
    app.router.add_get("/api/empty", empty)
    app.router.add_get("/api/unauthorized", unauthorized)
    app.router.add_get("/api/broken", broken)
    app.router.add_get("/api/plain", plain)
    app.router.add_get("/api/bare", bare)
    app.router.add_get("/api/not-json", not_json)
    app.router.add_get("/ws/notifications", push)
    app.router.add_get("/ws/reject", reject)
    app.router.add_get("/ws/forbidden", forbidden)
    app.router.add_get("/ws/slow", slow)
    return app


@pytest_asyncio.fixture
async def server():
    srv = TestServer(_build_app())
    await srv.start_server()
    yield srv
    await srv.close()


def _transport(server: TestServer, principal: Principal, **kwargs) -> HttpTransport:
    return HttpTransport(
        str(server.make_url("/api")),
        str(server.make_url("/ws")),
        principal,
        **kwargs,
    )


@pytest.fixture
def principal() -> Principal:
    return Principal(user_id=ME, token="secret-token")


@pytest.mark.asyncio
async def test_get_decodes_json_and_sends_credentials(server, principal):
    async with _transport(server, principal) as transport:
        result = await transport.request("GET", "/threads/100/messages")

    assert result[0]["id"] == 1
    headers = server.app[SEEN][0]
    assert headers["Authorization"] == "Bearer secret-token"
    assert headers["X-Request-ID"]


@pytest.mark.asyncio
async def test_post_serializes_body_and_propagates_correlation_id(server, principal):
    token = correlation_id_ctx.set("req-123")
    try:
        async with _transport(server, principal) as transport:
            result = await transport.request("POST", "/echo", {"content": "hi", "receiverId": 7})
    finally:
        correlation_id_ctx.reset(token)

    assert result == {"received": {"content": "hi", "receiverId": 7}}
    assert server.app[SEEN][0]["X-Request-ID"] == "req-123"


@pytest.mark.asyncio
async def test_empty_body_returns_none(server, principal):
    async with _transport(server, principal) as transport:
        assert await transport.request("GET", "/empty") is None


@pytest.mark.asyncio
async def test_401_raises_auth_expired_with_server_message(server, principal):
    async with _transport(server, principal) as transport:
        with pytest.raises(AuthExpired) as exc_info:
            await transport.request("GET", "/unauthorized")

    assert exc_info.value.detail == "Token expired"


@pytest.mark.asyncio
async def test_structured_error_detail(server, principal):
    async with _transport(server, principal) as transport:
        with pytest.raises(RequestFailed) as exc_info:
            await transport.request("GET", "/broken")

    assert exc_info.value.status == 500
    assert exc_info.value.detail == "database unavailable"


@pytest.mark.asyncio
async def test_text_error_detail(server, principal):
    async with _transport(server, principal) as transport:
        with pytest.raises(RequestFailed) as exc_info:
            await transport.request("GET", "/plain")

    assert exc_info.value.status == 503
    assert exc_info.value.detail == "maintenance window"


@pytest.mark.asyncio
async def test_reason_phrase_when_body_empty(server, principal):
    async with _transport(server, principal) as transport:
        with pytest.raises(RequestFailed) as exc_info:
            await transport.request("GET", "/bare")

    assert exc_info.value.status == 404
    assert exc_info.value.detail == "Not Found"


@pytest.mark.asyncio
async def test_invalid_json_is_a_request_failure(server, principal):
    async with _transport(server, principal) as transport:
        with pytest.raises(RequestFailed):
            await transport.request("GET", "/not-json")


@pytest.mark.asyncio
async def test_connection_error_has_no_status(principal):
    async with HttpTransport("http://127.0.0.1:1", "ws://127.0.0.1:1", principal) as transport:
        with pytest.raises(RequestFailed) as exc_info:
            await transport.request("GET", "/anything")

    assert exc_info.value.status is None


@pytest.mark.asyncio
async def test_expired_credential_never_hits_the_network(server):
    expired = Principal(
        user_id=ME,
        token="old",
        expires_at=datetime.now(timezone.utc) - timedelta(minutes=1),
    )
    async with _transport(server, expired) as transport:
        with pytest.raises(AuthExpired):
            await transport.request("GET", "/threads/100/messages")
        with pytest.raises(AuthExpired):
            async with transport.open_push_channel("/notifications"):
                pass

    assert server.app[SEEN] == []


@pytest.mark.asyncio
async def test_push_channel_yields_json_objects_until_close(server, principal):
    async with _transport(server, principal) as transport:
        async with transport.open_push_channel("/notifications") as channel:
            frames = [frame async for frame in channel]

    assert [f["id"] for f in frames] == [1, 2]
    assert server.app[SEEN] == [{"token": "secret-token"}]


@pytest.mark.asyncio
async def test_push_handshake_401_is_auth_expired(server, principal):
    async with _transport(server, principal) as transport:
        with pytest.raises(AuthExpired):
            async with transport.open_push_channel("/reject"):
                pass


@pytest.mark.asyncio
async def test_push_handshake_other_failure_is_channel_closed(server, principal):
    async with _transport(server, principal) as transport:
        with pytest.raises(ChannelClosed):
            async with transport.open_push_channel("/forbidden"):
                pass


@pytest.mark.asyncio
async def test_push_connect_timeout(server, principal):
    async with _transport(server, principal, push_connect_timeout=0.05) as transport:
        with pytest.raises(ChannelClosed):
            async with transport.open_push_channel("/slow"):
                pass
