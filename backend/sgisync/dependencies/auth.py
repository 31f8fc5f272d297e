"""FastAPI dependencies that expose the *current user*.

Both the REST routes and the WebSocket handshake authenticate with the same
HS256 bearer token.  There is no development bypass: a missing or invalid
credential is always rejected.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from fastapi import Depends
from fastapi import HTTPException
from fastapi import Request
from fastapi import status
from jose import JWTError
from jose import jwt
from sqlalchemy.orm import Session

from sgisync.config import Settings
from sgisync.config import get_settings
from sgisync.crud import crud
from sgisync.database import get_db
from sgisync.utils.time import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthenticatedUser:
    """Identity attached to a request or a socket after a successful handshake."""

    user_id: str
    role: str

    @property
    def user_topic(self) -> str:
        return f"user:{self.user_id}"

    @property
    def role_topic(self) -> str:
        return f"role:{self.role}"


# ---------------------------------------------------------------------------
# Token helpers
# ---------------------------------------------------------------------------


def issue_access_token(
    user_id: str,
    role: str,
    *,
    settings: Settings | None = None,
    expires_delta: timedelta | None = None,
) -> str:
    """Return a signed access token for *user_id*."""

    settings = settings or get_settings()
    expiry = utc_now() + (expires_delta or timedelta(minutes=settings.access_token_minutes))
    payload: dict[str, Any] = {
        "sub": str(user_id),
        "role": str(role),
        "exp": int(expiry.timestamp()),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str, *, settings: Settings | None = None) -> dict[str, Any] | None:
    """Return the verified claims of *token* or ``None`` when it is rejected."""

    settings = settings or get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        logger.debug("Rejected access token: %s", exc)
        return None


def strip_bearer(value: str | None) -> str | None:
    """``"Bearer abc"`` -> ``"abc"``; plain tokens pass through unchanged."""

    if not value:
        return None
    value = value.strip()
    if value.lower().startswith("bearer "):
        value = value[7:].strip()
    return value or None


def verify_credential(token: str | None, db: Session, *, settings: Settings | None = None) -> AuthenticatedUser | None:
    """Return the identity behind *token*, or ``None`` when it must be refused.

    The token must verify, name a user that exists and is active.  The role
    is read from the database so a demoted user cannot keep joining the old
    ``role:`` group with a stale token.
    """

    token = strip_bearer(token)
    if token is None:
        return None

    claims = decode_access_token(token, settings=settings)
    if claims is None:
        return None

    user_id = claims.get("sub") or claims.get("userId")
    if not user_id:
        return None

    user = crud.get_user(db, str(user_id))
    if user is None or not user.is_active:
        return None

    role = getattr(user.role, "value", user.role) or claims.get("role")
    return AuthenticatedUser(user_id=str(user.id), role=str(role))


# ---------------------------------------------------------------------------
# Public dependencies
# ---------------------------------------------------------------------------


def get_current_user(request: Request, db: Session = Depends(get_db)) -> AuthenticatedUser:
    """Return the authenticated identity or raise **401**."""

    settings = getattr(request.app.state, "settings", None)
    user = verify_credential(request.headers.get("Authorization"), db, settings=settings)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


__all__ = [
    "AuthenticatedUser",
    "issue_access_token",
    "decode_access_token",
    "verify_credential",
    "get_current_user",
]
