"""Wire shapes of the marketplace server.

The server is not consistent about casing and sometimes nests the parties
(``sender: {id, username}``), so every field accepts its known aliases.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from comms_sync.domain.value_objects.enums import Severity


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class MessagePayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    lead_id: int | None = Field(
        None, validation_alias=AliasChoices("leadId", "lead_id", "threadId", "thread_id"),
    )
    sender_id: int = Field(validation_alias=AliasChoices("senderId", "sender_id"))
    receiver_id: int = Field(validation_alias=AliasChoices("receiverId", "receiver_id"))
    body: str = Field(validation_alias=AliasChoices("body", "content"))
    created_at: datetime = Field(validation_alias=AliasChoices("createdAt", "created_at"))
    read: bool = False
    client_token: str | None = Field(
        None, validation_alias=AliasChoices("clientToken", "client_token"),
    )

    @model_validator(mode="before")
    @classmethod
    def _flatten_parties(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for role in ("sender", "receiver"):
            nested = data.get(role)
            if isinstance(nested, dict) and "id" in nested:
                data.setdefault(f"{role}_id", nested["id"])
        return data

    @field_validator("created_at")
    @classmethod
    def _tz(cls, value: datetime) -> datetime:
        return _aware(value)


class NotificationPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    title: str
    message: str = ""
    type: str = "general"
    severity: Severity = Severity.INFO
    link: str | None = None
    metadata: dict[str, Any] | None = None
    read: bool = False
    created_at: datetime = Field(validation_alias=AliasChoices("createdAt", "created_at"))

    @model_validator(mode="before")
    @classmethod
    def _normalize_severity(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        severity = data.get("severity")
        if severity is None and isinstance(data.get("metadata"), dict):
            severity = data["metadata"].get("severity")
        if severity not in {s.value for s in Severity}:
            severity = Severity.INFO.value
        data["severity"] = severity
        return data

    @field_validator("created_at")
    @classmethod
    def _tz(cls, value: datetime) -> datetime:
        return _aware(value)
