from __future__ import annotations

import json
import logging
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

logger = logging.getLogger(__name__)


class _Encoder(json.JSONEncoder):
    def default(self, o: object) -> Any:
        if isinstance(o, UUID):
            return str(o)
        if isinstance(o, datetime):
            return o.isoformat()
        if isinstance(o, Enum):
            return o.value
        return super().default(o)


def serialize_body(payload: Any) -> str:
    return json.dumps(payload, cls=_Encoder)


def decode_frame(raw: str | bytes) -> dict[str, Any] | None:
    """Decode one push frame; ``None`` for anything that is not a JSON object."""
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("Dropping non-JSON push frame (%d bytes)", len(raw))
        return None
    if not isinstance(data, dict):
        logger.warning("Dropping push frame that is not an object: %s", type(data).__name__)
        return None
    return data
