from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime

from comms_sync.domain.entities.message import Message
from comms_sync.domain.value_objects.enums import DeliveryState

TEMP_KEY_PREFIX = "tmp:"


@dataclass(frozen=True, slots=True)
class TimelineEntry:
    """One rendered row of a thread: a confirmed message or an optimistic one."""

    key: str
    id: int | None
    lead_id: int
    sender_id: int
    receiver_id: int
    body: str
    created_at: datetime
    read: bool = False
    state: DeliveryState = DeliveryState.CONFIRMED
    client_token: str | None = None
    error: str | None = None

    @classmethod
    def confirmed(cls, message: Message) -> TimelineEntry:
        return cls(
            key=f"m:{message.id}",
            id=message.id,
            lead_id=message.lead_id,
            sender_id=message.sender_id,
            receiver_id=message.receiver_id,
            body=message.body,
            created_at=message.created_at,
            read=message.read,
            client_token=message.client_token,
        )

    @classmethod
    def optimistic(
        cls,
        client_token: str,
        *,
        lead_id: int,
        sender_id: int,
        receiver_id: int,
        body: str,
        created_at: datetime,
    ) -> TimelineEntry:
        return cls(
            key=f"{TEMP_KEY_PREFIX}{client_token}",
            id=None,
            lead_id=lead_id,
            sender_id=sender_id,
            receiver_id=receiver_id,
            body=body,
            created_at=created_at,
            state=DeliveryState.PENDING,
            client_token=client_token,
        )

    @property
    def is_optimistic(self) -> bool:
        return self.id is None

    @property
    def order_key(self) -> tuple[datetime, int]:
        return (self.created_at, self.id if self.id is not None else -1)

    def failed(self, error: str) -> TimelineEntry:
        return replace(self, state=DeliveryState.FAILED, error=error)

    def pending(self) -> TimelineEntry:
        return replace(self, state=DeliveryState.PENDING, error=None)

    def mark_read(self) -> TimelineEntry:
        return self if self.read else replace(self, read=True)


Timeline = tuple[TimelineEntry, ...]
