"""FastAPI dependency injection helpers."""
from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request

from comms_sync.application.exceptions import AuthExpired
from comms_sync.services.session import SyncSession


async def get_session(request: Request) -> SyncSession:
    session: SyncSession | None = getattr(request.app.state, "session", None)
    if session is None or session.auth_expired:
        raise AuthExpired("No signed-in session")
    return session


SessionDep = Annotated[SyncSession, Depends(get_session)]
