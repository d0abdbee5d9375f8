from __future__ import annotations

from enum import StrEnum


class Severity(StrEnum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class DeliveryState(StrEnum):
    CONFIRMED = "confirmed"
    PENDING = "pending"
    FAILED = "failed"


class ThreadState(StrEnum):
    CLOSED = "closed"
    LOADING = "loading"
    LIVE = "live"
    REFRESHING = "refreshing"


class ChannelState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class CueKind(StrEnum):
    SEND = "send"
    RECEIVE = "receive"
    NOTIFY = "notify"
    CRITICAL = "critical"


class ToastVariant(StrEnum):
    DEFAULT = "default"
    DESTRUCTIVE = "destructive"
