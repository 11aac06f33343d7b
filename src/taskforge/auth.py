"""Step-scoped credentials.

A step token is an HS256 JWT carrying the ``step_id`` plus ``iat``/``nbf``/``exp``.
It is handed to the agent container and presented back on task-mutating API
calls, which are then checked against the step's leases.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

import jwt

from taskforge.errors import Unauthorized

log = logging.getLogger(__name__)

ALGORITHM = "HS256"


def mint_step_token(
    secret: str, step_id: int, *, ttl_hours: int = 24, now: datetime | None = None
) -> str:
    if not secret:
        raise ValueError("A step secret is required to mint step tokens")
    issued = now or datetime.now(UTC)
    claims = {
        "step_id": step_id,
        "iat": issued,
        "nbf": issued,
        "exp": issued + timedelta(hours=ttl_hours),
    }
    return jwt.encode(claims, secret, algorithm=ALGORITHM)


def verify_step_token(secret: str, token: str) -> int:
    """Return the step ID in *token*; raise Unauthorized when it is invalid or expired."""
    if not secret:
        raise Unauthorized("Step tokens are not configured for this project")
    try:
        claims = jwt.decode(
            token, secret, algorithms=[ALGORITHM], options={"require": ["exp", "iat"]}
        )
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Step token has expired") from None
    except jwt.InvalidTokenError as exc:
        log.debug("Rejected step token: %s", exc)
        raise Unauthorized("Invalid step token") from None

    step_id = claims.get("step_id")
    if isinstance(step_id, bool) or not isinstance(step_id, int):
        raise Unauthorized("Step token carries no step_id")
    return step_id
