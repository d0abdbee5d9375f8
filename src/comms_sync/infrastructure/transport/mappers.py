from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError as PayloadError

from comms_sync.domain.entities.message import Message
from comms_sync.domain.entities.notification import Notification
from comms_sync.infrastructure.transport.payloads import MessagePayload, NotificationPayload

logger = logging.getLogger(__name__)


def message_from_payload(raw: Any, lead_id: int) -> Message:
    p = MessagePayload.model_validate(raw)
    return Message(
        id=p.id,
        lead_id=p.lead_id if p.lead_id is not None else lead_id,
        sender_id=p.sender_id,
        receiver_id=p.receiver_id,
        body=p.body,
        created_at=p.created_at,
        read=p.read,
        client_token=p.client_token,
    )


def notification_from_payload(raw: Any) -> Notification:
    p = NotificationPayload.model_validate(raw)
    return Notification(
        id=p.id,
        title=p.title,
        message=p.message,
        type=p.type,
        severity=p.severity,
        created_at=p.created_at,
        read=p.read,
        link=p.link,
        metadata=p.metadata,
    )


def messages_from_list(raw: Any, lead_id: int) -> list[Message]:
    """Map a message list, skipping rows the server sent malformed."""
    out: list[Message] = []
    for item in _as_list(raw, "messages"):
        try:
            out.append(message_from_payload(item, lead_id))
        except PayloadError:
            logger.warning("Skipping malformed message row for lead %d", lead_id, exc_info=True)
    return out


def notifications_from_list(raw: Any) -> list[Notification]:
    out: list[Notification] = []
    for item in _as_list(raw, "notifications"):
        try:
            out.append(notification_from_payload(item))
        except PayloadError:
            logger.warning("Skipping malformed notification row", exc_info=True)
    return out


def unwrap_frame(frame: dict[str, Any]) -> dict[str, Any]:
    """Accept both bare notification frames and ``{"event", "data"}`` envelopes."""
    if "id" not in frame and isinstance(frame.get("data"), dict):
        return frame["data"]
    return frame


def _as_list(raw: Any, name: str) -> list[Any]:
    if raw is None:
        return []
    if isinstance(raw, dict):
        raw = raw.get(name, raw.get("items", []))
    if not isinstance(raw, list):
        logger.warning("Expected a list of %s, got %s", name, type(raw).__name__)
        return []
    return raw
