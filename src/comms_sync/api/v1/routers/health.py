from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

router = APIRouter(tags=["health"])


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(request: Request) -> JSONResponse:
    session = getattr(request.app.state, "session", None)
    if session is None:
        return JSONResponse(
            status_code=503,
            content={"status": "unavailable", "errors": ["no signed-in session"]},
        )
    if session.auth_expired:
        return JSONResponse(
            status_code=503,
            content={"status": "unavailable", "errors": ["credential expired"]},
        )
    return JSONResponse(
        content={"status": "ready", "channel_state": session.notifications.channel_state.value},
    )
