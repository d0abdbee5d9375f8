"""Structured cache keys.

Keys are tuples so that prefix invalidation works on whole elements:
``("thread-messages", ThreadKey(7, 3))`` never collides with lead 8.
"""
from __future__ import annotations

from typing import Any

from comms_sync.domain.value_objects.ids import ThreadKey

CacheKey = tuple[Any, ...]

THREAD_MESSAGES = "thread-messages"
NOTIFICATIONS = "notifications"
NOTIFICATION_PREFERENCES = "notification-preferences"
LEADS = "leads"


def thread_messages(thread: ThreadKey) -> CacheKey:
    return (THREAD_MESSAGES, thread)


def notifications() -> CacheKey:
    return (NOTIFICATIONS,)


def notification_preferences() -> CacheKey:
    return (NOTIFICATION_PREFERENCES,)


def leads() -> CacheKey:
    """Prefix of every lead list / unread badge key owned by the list views."""
    return (LEADS,)


def render(key: CacheKey) -> list[str]:
    return [str(part) for part in key]
