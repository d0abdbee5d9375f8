"""Reconciliation of polled messages with the cached timeline."""
from __future__ import annotations

from dataclasses import replace
from datetime import timedelta
from typing import Iterable, Sequence

from comms_sync.domain.entities.message import Message
from comms_sync.domain.entities.timeline import Timeline, TimelineEntry


def normalize(entries: Iterable[TimelineEntry]) -> Timeline:
    """Confirmed entries ordered by (created_at, id), optimistic ones pinned after them.

    Duplicate ids collapse into one entry; ``read`` only ever moves to True.
    """
    confirmed: dict[int, TimelineEntry] = {}
    optimistic: list[TimelineEntry] = []
    seen_keys: set[str] = set()
    for entry in entries:
        if entry.id is None:
            if entry.key not in seen_keys:
                seen_keys.add(entry.key)
                optimistic.append(entry)
            continue
        previous = confirmed.get(entry.id)
        if previous is not None and previous.read and not entry.read:
            entry = replace(entry, read=True)
        confirmed[entry.id] = entry
    ordered = sorted(confirmed.values(), key=lambda e: e.order_key)
    ordered.extend(sorted(optimistic, key=lambda e: e.created_at))
    return tuple(ordered)


def match_optimistic(
    entry: TimelineEntry,
    candidates: Sequence[Message],
    *,
    window: timedelta,
) -> Message | None:
    """Find the server message an optimistic entry became.

    The correlation token is authoritative when the server echoes it; the
    sender/body/time-window heuristic is only a fallback.
    """
    if entry.client_token is not None:
        for message in candidates:
            if message.client_token == entry.client_token:
                return message
    best: Message | None = None
    for message in candidates:
        if message.client_token is not None and message.client_token != entry.client_token:
            continue
        if message.sender_id != entry.sender_id or message.body != entry.body:
            continue
        if abs(message.created_at - entry.created_at) > window:
            continue
        # Prefer the closest timestamp when two identical sends are in flight.
        if best is None or abs(message.created_at - entry.created_at) < abs(best.created_at - entry.created_at):
            best = message
    return best


def merge_timeline(
    current: Sequence[TimelineEntry] | None,
    server: Sequence[Message],
    *,
    window: timedelta,
) -> Timeline:
    """Union of the server list, known confirmed entries and unmatched optimistic ones.

    Confirmed entries absent from ``server`` are kept: a poll issued before a
    send completed must not make the sent message vanish and reappear.
    """
    current = current or ()
    known_ids = {e.id for e in current if e.id is not None}
    # Only messages new to this timeline may satisfy an optimistic entry.
    unclaimed = [m for m in server if m.id not in known_ids]

    kept_optimistic: list[TimelineEntry] = []
    for entry in current:
        if entry.id is not None:
            continue
        match = match_optimistic(entry, unclaimed, window=window)
        if match is None:
            kept_optimistic.append(entry)
        else:
            unclaimed.remove(match)

    merged: list[TimelineEntry] = [e for e in current if e.id is not None]
    merged.extend(TimelineEntry.confirmed(m) for m in server)
    merged.extend(kept_optimistic)
    return normalize(merged)


def confirm_entry(current: Sequence[TimelineEntry] | None, temp_key: str, message: Message) -> Timeline:
    """Replace the optimistic entry ``temp_key`` with its confirmed message, in place.

    If a poll already brought the message in, the optimistic entry is simply
    dropped so the message is never shown twice.
    """
    current = current or ()
    confirmed = TimelineEntry.confirmed(message)
    already_known = any(e.id == message.id for e in current)
    out: list[TimelineEntry] = []
    placed = already_known
    for entry in current:
        if entry.key == temp_key:
            if not placed:
                out.append(confirmed)
                placed = True
            continue
        out.append(entry)
    if not placed:
        out.append(confirmed)
    return normalize(out)


def replace_entry(current: Sequence[TimelineEntry] | None, key: str, entry: TimelineEntry | None) -> Timeline:
    """Swap (or, with ``entry=None``, remove) the entry stored under ``key``."""
    out = []
    for existing in current or ():
        if existing.key == key:
            if entry is not None:
                out.append(entry)
            continue
        out.append(existing)
    return normalize(out)


def mark_incoming_read(current: Sequence[TimelineEntry] | None, user_id: int) -> Timeline:
    return normalize(
        e.mark_read() if e.id is not None and e.sender_id != user_id else e
        for e in current or ()
    )
