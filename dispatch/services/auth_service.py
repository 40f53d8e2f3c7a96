"""
Bearer token handling.

Tokens are issued by the account service; the dispatch API only needs to
decode them into a ``Principal``.  ``create_access_token`` is kept for
operators, the tracking simulator and tests.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt

from dispatch.core.config import settings
from dispatch.models.user import UserRole


@dataclass(frozen=True)
class Principal:
    """The authenticated caller of an operation."""

    user_id: uuid.UUID
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @property
    def is_technician(self) -> bool:
        return self.role == UserRole.TECHNICIAN


# ---------------------------------------------------------------------------
# JWT token generation
# ---------------------------------------------------------------------------


def create_access_token(
    user_id: uuid.UUID,
    role: UserRole = UserRole.CLIENT,
) -> tuple[str, datetime]:
    """Create a short-lived access token.

    Returns:
        Tuple of (token_string, expiration_datetime).
    """
    expires_at = datetime.now(timezone.utc) + timedelta(
        minutes=settings.access_token_expire_minutes
    )
    payload = {
        "sub": str(user_id),
        "role": role.value,
        "type": "access",
        "exp": expires_at,
        "iat": datetime.now(timezone.utc),
        "jti": str(uuid.uuid4()),
    }
    token = jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return token, expires_at


def decode_token(token: str) -> dict:
    """Decode and verify a JWT token.

    Raises:
        jwt.ExpiredSignatureError: If the token has expired.
        jwt.InvalidTokenError: If the token is otherwise invalid.
    """
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[settings.jwt_algorithm],
    )


def principal_from_token(token: str) -> Principal:
    """Decode an access token into the caller's identity.

    Raises:
        ValueError: If the token is invalid, expired, or malformed.
    """
    try:
        payload = decode_token(token)
    except jwt.ExpiredSignatureError:
        raise ValueError("Access token has expired.")
    except jwt.InvalidTokenError:
        raise ValueError("Invalid access token.")

    if payload.get("type") != "access":
        raise ValueError("Invalid token type. Expected an access token.")

    user_id_str = payload.get("sub")
    if user_id_str is None:
        raise ValueError("Invalid token: missing subject.")

    try:
        user_id = uuid.UUID(user_id_str)
    except (ValueError, AttributeError):
        raise ValueError("Invalid token: malformed subject.")

    try:
        role = UserRole(payload.get("role", UserRole.CLIENT.value))
    except ValueError:
        raise ValueError("Invalid token: unknown role.")

    return Principal(user_id=user_id, role=role)
