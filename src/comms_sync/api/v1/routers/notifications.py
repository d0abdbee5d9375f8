from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body

from comms_sync.api.deps import SessionDep
from comms_sync.api.v1.schemas.notification import NotificationListResponse, NotificationResponse
from comms_sync.services.notification_sync import NotificationSynchronizer

router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])


def _view(sync: NotificationSynchronizer) -> NotificationListResponse:
    return NotificationListResponse(
        items=[NotificationResponse.model_validate(n, from_attributes=True) for n in sync.notifications()],
        unread_count=sync.unread_count(),
        channel_state=sync.channel_state,
    )


@router.get("", response_model=NotificationListResponse)
async def list_notifications(session: SessionDep) -> NotificationListResponse:
    return _view(session.notifications)


@router.post("/refresh", response_model=NotificationListResponse)
async def refresh_notifications(session: SessionDep) -> NotificationListResponse:
    await session.notifications.refresh()
    return _view(session.notifications)


@router.get("/preferences")
async def get_preferences(session: SessionDep) -> dict[str, Any]:
    return await session.notifications.preferences()


@router.patch("/preferences")
async def update_preferences(
    session: SessionDep,
    changes: dict[str, Any] = Body(...),
) -> dict[str, Any]:
    return await session.notifications.update_preferences(changes)


@router.post("/{notification_id}/read", response_model=NotificationResponse)
async def mark_read(notification_id: int, session: SessionDep) -> NotificationResponse:
    notification = await session.notifications.mark_as_read(notification_id)
    return NotificationResponse.model_validate(notification, from_attributes=True)
