"""Get-or-create mapping from an authenticated identity to its profile."""
from __future__ import annotations

import logging

from medqa_client.schemas.profile import (
    DoctorSignup,
    PatientSignup,
    Profile,
    ProfileCreate,
    parse_signup_metadata,
)
from medqa_client.schemas.session import Identity
from medqa_client.services.errors import (
    ProfileConflictError,
    ProfileUnavailableError,
    RemoteStoreError,
)
from medqa_client.services.remote_store import RemoteStore

logger = logging.getLogger(__name__)


class ProfileProvisioner:
    """Ensure every authenticated identity has a profile row.

    Safe to call concurrently for the same identity: a losing insert hits the
    remote uniqueness constraint and falls back to reading the winner's row.
    """

    def __init__(self, store: RemoteStore) -> None:
        self._store = store

    async def ensure_profile(
        self,
        identity: Identity,
        signup_metadata: PatientSignup | DoctorSignup | None = None,
    ) -> Profile:
        """Return the identity's profile, creating it on first use.

        Args:
            identity: Authenticated identity whose profile is needed.
            signup_metadata: Role metadata to seed a new profile with. When
                omitted it is read back from `identity.user_metadata`.

        Raises:
            ProfileUnavailableError: The profile could neither be fetched nor created.
        """
        try:
            existing = await self._store.get_profile(identity.id)
        except RemoteStoreError as exc:
            logger.error("Error loading profile for %s: %s", identity.id, exc)
            raise ProfileUnavailableError(f"Failed to load profile: {exc}") from exc

        if existing is not None:
            return existing

        logger.info("Creating new profile for user %s", identity.id)
        signup = signup_metadata or parse_signup_metadata(identity.user_metadata)
        fields = ProfileCreate.from_signup(
            identity_id=identity.id,
            email=identity.email,
            user_metadata=identity.user_metadata,
            signup=signup,
        )

        try:
            return await self._store.create_profile(fields)
        except ProfileConflictError:
            logger.info("Profile for %s already exists, fetching", identity.id)
        except RemoteStoreError as exc:
            logger.error("Error creating profile for %s: %s", identity.id, exc)
            raise ProfileUnavailableError(f"Failed to create profile: {exc}") from exc

        try:
            winner = await self._store.get_profile(identity.id)
        except RemoteStoreError as exc:
            logger.error("Failed to fetch existing profile for %s: %s", identity.id, exc)
            raise ProfileUnavailableError(f"Failed to fetch existing profile: {exc}") from exc
        if winner is None:
            raise ProfileUnavailableError("Profile creation conflicted but no profile was found")
        return winner
