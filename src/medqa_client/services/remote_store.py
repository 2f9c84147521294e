"""Interface of the hosted data/auth service consumed by the client core."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any, Protocol

from medqa_client.schemas.profile import Profile, ProfileCreate, ProfileUpdate
from medqa_client.schemas.question import AttachedFile, EntityKind, VoteToggleResult
from medqa_client.schemas.session import AuthEvent, Identity

AuthListener = Callable[[AuthEvent, Identity | None], None]
Unsubscribe = Callable[[], None]


class RemoteStore(Protocol):
    """Authentication, row storage and object storage operations.

    Failures are raised as `RemoteStoreError` subclasses.
    """

    async def get_current_session(self) -> Identity | None:
        """Return the identity of the stored session, if any.

        Raises:
            SessionCorruptionError: The stored credential is invalid.
        """

    def subscribe_auth_events(self, callback: AuthListener) -> Unsubscribe:
        """Register a synchronous listener for auth-change events."""

    async def sign_in(self, email: str, secret: str) -> Identity:
        """Sign in with email and password."""

    async def sign_up(self, email: str, secret: str, metadata: Mapping[str, Any]) -> Identity | None:
        """Register an account; returns None when email confirmation is pending."""

    async def sign_out(self) -> None:
        """End the current session."""

    async def get_profile(self, identity_id: str) -> Profile | None:
        """Fetch a profile row, or None if it does not exist."""

    async def create_profile(self, fields: ProfileCreate) -> Profile:
        """Insert a profile row.

        Raises:
            ProfileConflictError: A row with the same id already exists.
        """

    async def update_profile(self, identity_id: str, changes: ProfileUpdate) -> None:
        """Apply a partial update to a profile row."""

    async def toggle_vote(self, kind: EntityKind, entity_id: str) -> VoteToggleResult:
        """Flip the caller's vote record for an entity."""

    async def upload_file(self, file: AttachedFile, owner_id: str) -> str:
        """Upload an image and return its persisted reference."""

    async def delete_file(self, reference: str) -> None:
        """Remove a previously uploaded image."""

    async def update_entity(
        self, kind: EntityKind, entity_id: str, fields: Mapping[str, Any]
    ) -> None:
        """Update an entity row with the given fields."""
