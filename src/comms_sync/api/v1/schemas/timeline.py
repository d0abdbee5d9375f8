from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from comms_sync.domain.value_objects.enums import DeliveryState, ThreadState


class SendMessageRequest(BaseModel):
    body: str


class TimelineEntryResponse(BaseModel):
    key: str
    id: int | None
    lead_id: int
    sender_id: int
    receiver_id: int
    body: str
    created_at: datetime
    read: bool
    state: DeliveryState
    error: str | None = None

    model_config = {"from_attributes": True}


class ThreadResponse(BaseModel):
    lead_id: int
    counterparty_id: int
    state: ThreadState
    entries: list[TimelineEntryResponse]
