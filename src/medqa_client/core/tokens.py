"""Helpers for inspecting access tokens issued by the auth service."""
from __future__ import annotations

import time
from typing import Any

from jose import JWTError, jwt


def token_claims(access_token: str) -> dict[str, Any]:
    """Return the unverified claims of an access token.

    The client never holds the signing secret; claims are only used to
    schedule refreshes, the service remains the authority on validity.

    Returns:
        The decoded claims, or an empty dict when the token is not a JWT.
    """
    try:
        return jwt.get_unverified_claims(access_token)
    except JWTError:
        return {}


def token_expiry(access_token: str) -> int | None:
    """Return the `exp` claim of an access token, if present."""
    exp = token_claims(access_token).get("exp")
    if exp is None:
        return None
    try:
        return int(exp)
    except (TypeError, ValueError):
        return None


def is_expiring(expires_at: int | None, margin_seconds: int, *, now: float | None = None) -> bool:
    """Return True if a token expiring at `expires_at` needs a refresh."""
    if expires_at is None:
        return False
    current = time.time() if now is None else now
    return expires_at - margin_seconds <= current
