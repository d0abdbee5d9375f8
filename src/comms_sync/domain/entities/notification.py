from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

from comms_sync.domain.value_objects.enums import Severity


@dataclass(frozen=True, slots=True)
class Notification:
    id: int
    title: str
    message: str
    type: str
    severity: Severity
    created_at: datetime
    read: bool = False
    link: str | None = None
    metadata: dict[str, Any] | None = None

    @property
    def order_key(self) -> tuple[datetime, int]:
        return (self.created_at, self.id)

    def with_read(self, read: bool) -> Notification:
        return self if self.read == read else replace(self, read=read)
