from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from comms_sync.config import settings
from comms_sync.infrastructure.ws.manager import UiConnectionManager
from comms_sync.infrastructure.ws.protocol import WsInbound, WsOutbound
from comms_sync.services.session import SyncSession

logger = logging.getLogger(__name__)
router = APIRouter(tags=["websocket"])


@router.websocket("/ws/events")
async def ws_events(websocket: WebSocket) -> None:
    manager: UiConnectionManager = websocket.app.state.ui_manager
    await manager.connect(websocket)

    heartbeat_task = asyncio.create_task(_heartbeat(websocket), name="ui-ws-heartbeat")
    try:
        await _read_loop(websocket)
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("UI WS error")
    finally:
        heartbeat_task.cancel()
        manager.disconnect(websocket)


async def _heartbeat(ws: WebSocket) -> None:
    interval = settings.UI_HEARTBEAT_SECONDS
    try:
        while True:
            await asyncio.sleep(interval)
            await ws.send_text(WsOutbound(type="pong", data={}).model_dump_json())
    except asyncio.CancelledError:
        pass
    except Exception:
        logger.debug("UI heartbeat stopped", exc_info=True)


async def _read_loop(ws: WebSocket) -> None:
    while True:
        raw = await ws.receive_text()
        try:
            msg = WsInbound.model_validate_json(raw)
        except Exception:
            await ws.send_text(
                WsOutbound(type="error", data={"code": "invalid_payload"}).model_dump_json()
            )
            continue

        if msg.type == "ping":
            await ws.send_text(WsOutbound(type="pong", data={}).model_dump_json())

        elif msg.type == "focus":
            await _handle_focus(ws)

        else:
            await ws.send_text(
                WsOutbound(type="error", data={"code": "unknown_type", "type": msg.type}).model_dump_json()
            )


async def _handle_focus(ws: WebSocket) -> None:
    """Window regained focus: re-sync notifications and every open thread now."""
    session: SyncSession | None = getattr(ws.app.state, "session", None)
    if session is None or session.auth_expired:
        await ws.send_text(
            WsOutbound(type="error", data={"code": "no_session"}).model_dump_json()
        )
        return
    for sync in session.open_threads():
        sync.poke()
    try:
        await session.notifications.refresh()
    except Exception:
        logger.debug("Focus refresh failed", exc_info=True)
