"""Database session configuration for the local credential cache."""

from __future__ import annotations

from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

from medqa_client.core.settings import settings


class Base(DeclarativeBase):
    """Declarative base shared by all ORM models."""


# Ensure model modules are imported so that metadata is populated when create_all runs.
import medqa_client.models  # noqa: E402,F401


def _engine_options(database_url: str) -> dict[str, Any]:
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        return {"pool_pre_ping": True}
    options: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
    if url.database in (None, "", ":memory:"):
        # A private in-memory database only lives as long as its connection.
        options["poolclass"] = StaticPool
    return options


engine = create_engine(
    settings.credential_database_url,
    echo=settings.sql_debug,
    **_engine_options(settings.credential_database_url),
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def create_tables() -> None:
    """Create the credential tables if they do not exist yet."""
    Base.metadata.create_all(bind=engine)
