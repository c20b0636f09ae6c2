"""
Security utilities for host-issued JWT access tokens.

The host platform authenticates users and signs short-lived tokens whose
``sub`` is the host user id and whose ``roles`` claim lists host role names.
"""
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Optional

from jose import JWTError, jwt

from mentorsub.core.config import settings


@dataclass(frozen=True)
class Principal:
    """The acting user, as asserted by the host platform."""

    user_id: int
    roles: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return any(role in self.roles for role in settings.admin_role_names_list)


def create_access_token(
    user_id: int,
    roles: Optional[list[str]] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a JWT access token.

    Used by the host integration and by tests; production tokens are minted
    by the host with the shared SECRET_KEY.
    """
    expire = datetime.now(UTC) + (expires_delta or timedelta(minutes=30))
    to_encode = {
        "sub": str(user_id),
        "roles": list(roles or []),
        "exp": expire,
        "type": "access",
    }
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_token(token: str) -> Optional[dict]:
    """
    Decode and verify a JWT token.

    Args:
        token: JWT token string

    Returns:
        Decoded token payload or None if invalid
    """
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        return payload
    except JWTError:
        return None


def principal_from_payload(payload: dict) -> Optional[Principal]:
    """Build a Principal from a decoded access token, or None if malformed."""
    if payload.get("type", "access") != "access":
        return None
    try:
        user_id = int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        return None
    roles = payload.get("roles") or []
    if not isinstance(roles, list):
        return None
    return Principal(user_id=user_id, roles=frozenset(str(role) for role in roles))
