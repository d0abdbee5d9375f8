from __future__ import annotations

from typing import Iterable, Sequence

from comms_sync.domain.entities.notification import Notification

NotificationList = tuple[Notification, ...]


def _ordered(items: Iterable[Notification]) -> NotificationList:
    return tuple(sorted(items, key=lambda n: n.order_key, reverse=True))


def insert_pushed(current: Sequence[Notification] | None, pushed: Notification) -> NotificationList:
    """Add a pushed notification unless its id is already known.

    Push delivery is at-least-once, so a repeat is ignored entirely.
    """
    current = tuple(current or ())
    if any(n.id == pushed.id for n in current):
        return current
    return _ordered((*current, pushed))


def merge_fetched(current: Sequence[Notification] | None, fetched: Sequence[Notification]) -> NotificationList:
    """Fold a full server list into the cached one, keyed by id.

    The server record wins for content and may mark an item read; it never
    turns a locally read item back to unread. Items the server list does not
    (yet) contain are kept.
    """
    by_id = {n.id: n for n in current or ()}
    for item in fetched:
        known = by_id.get(item.id)
        by_id[item.id] = item.with_read(True) if known is not None and known.read else item
    return _ordered(by_id.values())


def set_read(current: Sequence[Notification] | None, notification_id: int, read: bool) -> NotificationList:
    return tuple(n.with_read(read) if n.id == notification_id else n for n in current or ())


def unread_count(items: Sequence[Notification] | None) -> int:
    return sum(1 for n in items or () if not n.read)
