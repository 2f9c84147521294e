"""Session-related schemas: identities, auth events and session state."""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from .profile import Profile


class AuthEvent(str, Enum):
    """Auth-change events delivered by the remote store's event stream."""

    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"
    # The stored refresh credential was rejected by the service.
    CREDENTIAL_INVALID = "CREDENTIAL_INVALID"


class Identity(BaseModel):
    """Authenticated principal issued by the auth service."""

    id: str = Field(..., min_length=1, description="Opaque identity id")
    email: str = Field(..., description="Account email address")
    user_metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Metadata stored with the account at sign-up",
    )

    model_config = ConfigDict(frozen=True)


class SessionUnknown(BaseModel):
    """No determination has been made yet."""

    status: Literal["unknown"] = "unknown"

    model_config = ConfigDict(frozen=True)


class SessionAnonymous(BaseModel):
    """Nobody is signed in."""

    status: Literal["anonymous"] = "anonymous"

    model_config = ConfigDict(frozen=True)


class SessionAuthenticated(BaseModel):
    """A signed-in identity together with its profile."""

    status: Literal["authenticated"] = "authenticated"
    identity: Identity
    profile: Profile

    model_config = ConfigDict(frozen=True)


SessionState = Annotated[
    SessionUnknown | SessionAnonymous | SessionAuthenticated,
    Field(discriminator="status"),
]


class StoredSession(BaseModel):
    """Token pair persisted between client runs."""

    access_token: str
    refresh_token: str
    expires_at: int | None = Field(None, description="Access token expiry (epoch seconds)")
    identity: Identity

    model_config = ConfigDict(frozen=True)
