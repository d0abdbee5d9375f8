from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True, slots=True)
class Message:
    id: int
    lead_id: int
    sender_id: int
    receiver_id: int
    body: str
    created_at: datetime
    read: bool = False
    client_token: str | None = None
