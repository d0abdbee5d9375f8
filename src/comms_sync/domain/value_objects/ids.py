from __future__ import annotations

from typing import NamedTuple


class ThreadKey(NamedTuple):
    """A thread is every message between the current user and one counterparty on a lead."""

    lead_id: int
    counterparty_id: int

    def __str__(self) -> str:
        return f"{self.lead_id}:{self.counterparty_id}"
