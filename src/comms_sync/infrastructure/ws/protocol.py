"""UI event stream envelope models."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel


class WsInbound(BaseModel):
    """UI shell → agent."""

    type: str  # ping | focus
    data: dict[str, Any] = {}


class WsOutbound(BaseModel):
    """Agent → UI shell."""

    type: str  # cue | toast | auth_expired | cache.updated | channel.state | error | pong
    data: dict[str, Any] = {}
