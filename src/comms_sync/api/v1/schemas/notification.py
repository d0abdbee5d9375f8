from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel

from comms_sync.domain.value_objects.enums import ChannelState, Severity


class NotificationResponse(BaseModel):
    id: int
    title: str
    message: str
    type: str
    severity: Severity
    link: str | None = None
    metadata: dict[str, Any] | None = None
    read: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class NotificationListResponse(BaseModel):
    items: list[NotificationResponse]
    unread_count: int
    channel_state: ChannelState
