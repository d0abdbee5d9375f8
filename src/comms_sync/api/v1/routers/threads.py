from __future__ import annotations

from fastapi import APIRouter, Response

from comms_sync.api.deps import SessionDep
from comms_sync.api.v1.schemas.timeline import (
    SendMessageRequest,
    ThreadResponse,
    TimelineEntryResponse,
)
from comms_sync.services.thread_sync import ThreadSynchronizer

router = APIRouter(prefix="/api/v1/threads", tags=["threads"])


def _view(sync: ThreadSynchronizer) -> ThreadResponse:
    return ThreadResponse(
        lead_id=sync.thread.lead_id,
        counterparty_id=sync.thread.counterparty_id,
        state=sync.state,
        entries=[TimelineEntryResponse.model_validate(e, from_attributes=True) for e in sync.timeline()],
    )


@router.post("/{lead_id}/{counterparty_id}/open", response_model=ThreadResponse)
async def open_thread(lead_id: int, counterparty_id: int, session: SessionDep) -> ThreadResponse:
    sync = await session.open(lead_id, counterparty_id)
    return _view(sync)


@router.post("/{lead_id}/{counterparty_id}/close", response_model=ThreadResponse)
async def close_thread(lead_id: int, counterparty_id: int, session: SessionDep) -> ThreadResponse:
    sync = session.thread(lead_id, counterparty_id)
    await sync.close()
    return _view(sync)


@router.post("/{lead_id}/{counterparty_id}/refresh", response_model=ThreadResponse)
async def refresh_thread(lead_id: int, counterparty_id: int, session: SessionDep) -> ThreadResponse:
    sync = session.thread(lead_id, counterparty_id)
    await sync.refresh()
    return _view(sync)


@router.get("/{lead_id}/{counterparty_id}/timeline", response_model=ThreadResponse)
async def get_timeline(lead_id: int, counterparty_id: int, session: SessionDep) -> ThreadResponse:
    return _view(session.thread(lead_id, counterparty_id))


@router.post(
    "/{lead_id}/{counterparty_id}/messages",
    response_model=TimelineEntryResponse,
    status_code=201,
)
async def send_message(
    lead_id: int,
    counterparty_id: int,
    body: SendMessageRequest,
    session: SessionDep,
) -> TimelineEntryResponse:
    entry = await session.thread(lead_id, counterparty_id).send(body.body)
    return TimelineEntryResponse.model_validate(entry, from_attributes=True)


@router.post(
    "/{lead_id}/{counterparty_id}/messages/{temp_key}/retry",
    response_model=TimelineEntryResponse,
)
async def retry_message(
    lead_id: int,
    counterparty_id: int,
    temp_key: str,
    session: SessionDep,
) -> TimelineEntryResponse:
    entry = await session.thread(lead_id, counterparty_id).retry(temp_key)
    return TimelineEntryResponse.model_validate(entry, from_attributes=True)


@router.delete("/{lead_id}/{counterparty_id}/messages/{temp_key}", status_code=204)
async def discard_message(
    lead_id: int,
    counterparty_id: int,
    temp_key: str,
    session: SessionDep,
) -> Response:
    session.thread(lead_id, counterparty_id).discard(temp_key)
    return Response(status_code=204)
