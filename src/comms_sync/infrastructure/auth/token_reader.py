from __future__ import annotations

import logging
from datetime import datetime, timezone

import jwt

from comms_sync.application.dto.principal import Principal
from comms_sync.application.exceptions import AuthExpired

logger = logging.getLogger(__name__)


def read_principal(token: str, user_id: int | None = None) -> Principal:
    """Build the principal from the bearer credential.

    The signature is the server's business; here the JWT is only read for
    ``sub`` and ``exp``. Opaque (non-JWT) credentials need an explicit
    ``user_id``.
    """
    if not token:
        raise AuthExpired("No credential configured")

    try:
        payload = jwt.decode(
            token,
            options={"verify_signature": False, "verify_exp": False},
        )
    except jwt.DecodeError:
        if user_id is None:
            raise AuthExpired("Credential is not a JWT and no USER_ID was given") from None
        logger.debug("Opaque credential, using configured user id %d", user_id)
        return Principal(user_id=user_id, token=token)

    sub = payload.get("sub", user_id)
    if sub is None:
        raise AuthExpired("Credential carries no subject")

    exp = payload.get("exp")
    expires_at = datetime.fromtimestamp(exp, tz=timezone.utc) if isinstance(exp, (int, float)) else None
    return Principal(user_id=int(sub), token=token, expires_at=expires_at)
