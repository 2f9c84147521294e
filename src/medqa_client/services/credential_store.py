"""Persistence of the signed-in session in the local credential database."""
from __future__ import annotations

import logging
from collections.abc import Callable

from sqlalchemy.orm import Session

from medqa_client.core.settings import settings
from medqa_client.db.session import SessionLocal, create_tables
from medqa_client.models import StoredCredential
from medqa_client.schemas.session import Identity, StoredSession

logger = logging.getLogger(__name__)

__all__ = ["CredentialStore"]


class CredentialStore:
    """Load, save and clear the stored session for one remote service."""

    def __init__(
        self,
        session_factory: Callable[[], Session] | None = None,
        storage_key: str | None = None,
    ) -> None:
        if session_factory is None:
            create_tables()
        self._session_factory = session_factory or SessionLocal
        self.storage_key = storage_key or settings.remote_url.rstrip("/")

    def load(self) -> StoredSession | None:
        """Return the stored session, or None when nobody is signed in."""
        with self._session_factory() as db:
            row = db.get(StoredCredential, self.storage_key)
            if row is None:
                return None
            return StoredSession(
                access_token=row.access_token,
                refresh_token=row.refresh_token,
                expires_at=row.expires_at,
                identity=Identity(
                    id=row.user_id,
                    email=row.email,
                    user_metadata=dict(row.user_metadata or {}),
                ),
            )

    def save(self, stored: StoredSession) -> None:
        """Insert or replace the stored session."""
        with self._session_factory() as db:
            row = db.get(StoredCredential, self.storage_key)
            if row is None:
                row = StoredCredential(storage_key=self.storage_key)
                db.add(row)
            row.user_id = stored.identity.id
            row.email = stored.identity.email
            row.user_metadata = dict(stored.identity.user_metadata)
            row.access_token = stored.access_token
            row.refresh_token = stored.refresh_token
            row.expires_at = stored.expires_at
            db.commit()
        logger.debug("Stored session for user %s", stored.identity.id)

    def clear(self) -> None:
        """Forget the stored session."""
        with self._session_factory() as db:
            row = db.get(StoredCredential, self.storage_key)
            if row is not None:
                db.delete(row)
                db.commit()
