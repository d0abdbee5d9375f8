from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from comms_sync.api.middleware.correlation_id import CorrelationIdMiddleware
from comms_sync.api.v1.routers import health, notifications, threads, ws
from comms_sync.application.exceptions import (
    AuthExpired,
    NotFoundError,
    ReconciliationConflict,
    RequestFailed,
    TransportError,
    ValidationError,
)
from comms_sync.config import settings
from comms_sync.infrastructure.auth.token_reader import read_principal
from comms_sync.infrastructure.transport.http_transport import HttpTransport
from comms_sync.infrastructure.ws.manager import UiConnectionManager
from comms_sync.infrastructure.ws.presenter import EventStreamPresenter
from comms_sync.services.session import SyncSession

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Startup / shutdown lifecycle."""
    manager = UiConnectionManager()
    presenter = EventStreamPresenter(manager)
    await presenter.start()
    app.state.ui_manager = manager
    app.state.presenter = presenter
    app.state.session = None

    try:
        principal = read_principal(settings.API_TOKEN, settings.USER_ID)
    except AuthExpired as exc:
        logger.error("Not signed in: %s", exc.detail)
        presenter.redirect_to_login(exc.detail)
        yield
        await presenter.stop()
        return

    async with HttpTransport(
        settings.API_BASE_URL,
        settings.PUSH_URL,
        principal,
        timeout_seconds=settings.HTTP_TIMEOUT_SECONDS,
        push_connect_timeout=settings.PUSH_CONNECT_TIMEOUT,
        heartbeat_seconds=settings.PUSH_HEARTBEAT_SECONDS,
    ) as transport:
        session = SyncSession.from_settings(settings, transport, principal, presenter)
        unwatch = session.cache.watch(presenter.cache_updated)
        unwatch_invalidations = session.cache.watch_invalidations(presenter.cache_invalidated)
        session.notifications.add_state_listener(presenter.channel_state_changed)
        async with session:
            app.state.session = session
            logger.info("Sync agent ready for user %d", principal.user_id)
            yield
        unwatch()
        unwatch_invalidations()

    await presenter.stop()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Marketplace Comms Sync",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(CorrelationIdMiddleware)

    _register_exception_handlers(app)

    app.include_router(health.router)
    app.include_router(threads.router)
    app.include_router(notifications.router)
    app.include_router(ws.router)

    return app


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AuthExpired)
    async def _auth_expired(_req: Request, exc: AuthExpired) -> JSONResponse:
        return JSONResponse(status_code=401, content={"detail": exc.detail})

    @app.exception_handler(NotFoundError)
    async def _not_found(_req: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": exc.detail})

    @app.exception_handler(ReconciliationConflict)
    async def _conflict(_req: Request, exc: ReconciliationConflict) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": exc.detail})

    @app.exception_handler(ValidationError)
    async def _validation(_req: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": exc.detail})

    @app.exception_handler(RequestFailed)
    async def _upstream(_req: Request, exc: RequestFailed) -> JSONResponse:
        return JSONResponse(
            status_code=502,
            content={"detail": exc.detail, "upstream_status": exc.status},
        )

    @app.exception_handler(TransportError)
    async def _transport(_req: Request, exc: TransportError) -> JSONResponse:
        return JSONResponse(status_code=503, content={"detail": exc.detail})
