# src/medqa_client/models/credential.py
"""Model persisting the signed-in session between client runs."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, BigInteger, DateTime, Text
from sqlalchemy.orm import Mapped, mapped_column

from medqa_client.db.session import Base
from medqa_client.db.time import utcnow


class StoredCredential(Base):
    """Access/refresh token pair issued by the auth service.

    One row per remote service URL; a missing row means nobody is signed in.
    """

    __tablename__ = "stored_credential"

    storage_key: Mapped[str] = mapped_column(Text, primary_key=True)
    user_id: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str] = mapped_column(Text, nullable=False)
    user_metadata: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str] = mapped_column(Text, nullable=False)
    # Epoch seconds; NULL when the service reported no expiry.
    expires_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
