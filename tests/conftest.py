# tests/conftest.py
from __future__ import annotations

import asyncio
import os
from collections.abc import Callable, Generator, Iterator, Mapping
from itertools import count
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("CREDENTIAL_DATABASE_URL", "sqlite://")
os.environ.setdefault("REMOTE_STORE_URL", "http://medqa.test")
os.environ.setdefault("REMOTE_STORE_ANON_KEY", "anon-test-key")

from medqa_client.db.session import Base
from medqa_client.schemas.profile import Profile, ProfileCreate, ProfileUpdate
from medqa_client.schemas.question import AttachedFile, EntityKind, VoteToggleResult
from medqa_client.schemas.session import AuthEvent, Identity
from medqa_client.services.credential_store import CredentialStore
from medqa_client.services.errors import (
    CredentialError,
    ProfileConflictError,
    RemoteStoreError,
)
from medqa_client.services.remote_store import AuthListener, Unsubscribe

TEST_DB_URL = "sqlite://"

_IDENTITY_COUNTER = count(1)


class FakeRemoteStore:
    """In-memory RemoteStore with gates for interleaving tests.

    A gate is an `asyncio.Event`; while it is set to an unset event the
    matching operation suspends until the test releases it.
    """

    def __init__(self) -> None:
        self.listeners: list[AuthListener] = []
        self.accounts: dict[str, tuple[str, Identity]] = {}
        self.current: Identity | None = None
        self.probe_gate: asyncio.Event | None = None
        self.probe_error: Exception | None = None
        self.sign_out_error: Exception | None = None
        self.sign_out_calls = 0
        self.confirmation_required = False

        self.profiles: dict[str, Profile] = {}
        self.profile_gate: asyncio.Event | None = None
        self.get_profile_error: Exception | None = None
        self.create_profile_error: Exception | None = None
        self.get_profile_calls = 0
        self.create_profile_calls = 0
        self.created_profiles: list[ProfileCreate] = []
        self.profile_updates: list[tuple[str, dict[str, Any]]] = []
        self.update_profile_error: Exception | None = None

        self.votes: set[tuple[str, str]] = set()
        self.counts: dict[str, int] = {}
        self.toggle_gate: asyncio.Event | None = None
        self.toggle_error: Exception | None = None
        self.toggle_calls = 0
        self.report_counts = True

        self.uploaded: dict[str, bytes] = {}
        self.deleted: list[str] = []
        self.delete_failures: set[str] = set()
        self.upload_failures_after: int | None = None
        self.entity_updates: list[tuple[EntityKind, str, dict[str, Any]]] = []
        self.update_entity_error: Exception | None = None
        self._upload_counter = count(1)

    # --- helpers used by tests ---

    def register(self, email: str, secret: str = "secret", **metadata: Any) -> Identity:
        identity = Identity(
            id=f"user-{next(_IDENTITY_COUNTER)}",
            email=email,
            user_metadata=metadata,
        )
        self.accounts[email] = (secret, identity)
        return identity

    def emit(self, event: AuthEvent, identity: Identity | None) -> None:
        for listener in list(self.listeners):
            listener(event, identity)

    async def _wait(self, gate: asyncio.Event | None) -> None:
        if gate is not None:
            await gate.wait()
        await asyncio.sleep(0)

    # --- RemoteStore interface ---

    async def get_current_session(self) -> Identity | None:
        await self._wait(self.probe_gate)
        if self.probe_error is not None:
            raise self.probe_error
        return self.current

    def subscribe_auth_events(self, callback: AuthListener) -> Unsubscribe:
        self.listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self.listeners:
                self.listeners.remove(callback)

        return unsubscribe

    async def sign_in(self, email: str, secret: str) -> Identity:
        await asyncio.sleep(0)
        account = self.accounts.get(email)
        if account is None or account[0] != secret:
            raise CredentialError("Invalid login credentials")
        self.current = account[1]
        self.emit(AuthEvent.SIGNED_IN, self.current)
        return self.current

    async def sign_up(self, email: str, secret: str, metadata: Mapping[str, Any]) -> Identity | None:
        await asyncio.sleep(0)
        if email in self.accounts:
            raise CredentialError("User already registered")
        identity = self.register(email, secret, **dict(metadata))
        if self.confirmation_required:
            return None
        self.current = identity
        self.emit(AuthEvent.SIGNED_IN, identity)
        return identity

    async def sign_out(self) -> None:
        self.sign_out_calls += 1
        await asyncio.sleep(0)
        if self.sign_out_error is not None:
            raise self.sign_out_error
        self.current = None
        self.emit(AuthEvent.SIGNED_OUT, None)

    async def get_profile(self, identity_id: str) -> Profile | None:
        self.get_profile_calls += 1
        await self._wait(self.profile_gate)
        if self.get_profile_error is not None:
            raise self.get_profile_error
        return self.profiles.get(identity_id)

    async def create_profile(self, fields: ProfileCreate) -> Profile:
        self.create_profile_calls += 1
        await asyncio.sleep(0)
        if self.create_profile_error is not None:
            raise self.create_profile_error
        if fields.id in self.profiles:
            raise ProfileConflictError('duplicate key value violates unique constraint "profiles_pkey"')
        self.created_profiles.append(fields)
        profile = Profile.model_validate(fields.model_dump())
        self.profiles[fields.id] = profile
        return profile

    async def update_profile(self, identity_id: str, changes: ProfileUpdate) -> None:
        await asyncio.sleep(0)
        if self.update_profile_error is not None:
            raise self.update_profile_error
        data = changes.model_dump(exclude_unset=True)
        self.profile_updates.append((identity_id, data))
        self.profiles[identity_id] = self.profiles[identity_id].model_copy(update=data)

    async def toggle_vote(self, kind: EntityKind, entity_id: str) -> VoteToggleResult:
        self.toggle_calls += 1
        await self._wait(self.toggle_gate)
        if self.toggle_error is not None:
            raise self.toggle_error
        voter = self.current.id if self.current else "nobody"
        key = (entity_id, voter)
        if key in self.votes:
            self.votes.remove(key)
            self.counts[entity_id] = self.counts.get(entity_id, 1) - 1
        else:
            self.votes.add(key)
            self.counts[entity_id] = self.counts.get(entity_id, 0) + 1
        if not self.report_counts:
            return VoteToggleResult()
        return VoteToggleResult(authoritative_count=self.counts[entity_id])

    async def upload_file(self, file: AttachedFile, owner_id: str) -> str:
        await asyncio.sleep(0)
        index = next(self._upload_counter)
        if self.upload_failures_after is not None and len(self.uploaded) >= self.upload_failures_after:
            raise RemoteStoreError("Failed to upload image: storage quota exceeded")
        reference = f"https://cdn.test/question_images/{owner_id}/{index}.{file.extension}"
        self.uploaded[reference] = file.data
        return reference

    async def delete_file(self, reference: str) -> None:
        await asyncio.sleep(0)
        if reference in self.delete_failures:
            raise RemoteStoreError("Failed to delete image")
        self.deleted.append(reference)

    async def update_entity(
        self, kind: EntityKind, entity_id: str, fields: Mapping[str, Any]
    ) -> None:
        await asyncio.sleep(0)
        if self.update_entity_error is not None:
            raise self.update_entity_error
        self.entity_updates.append((kind, entity_id, dict(fields)))


@pytest.fixture()
def store() -> FakeRemoteStore:
    return FakeRemoteStore()


@pytest.fixture()
def make_identity() -> Callable[..., Identity]:
    """Return a factory for identities not registered with any store."""

    def _make(email: str = "someone@example.com", **metadata: Any) -> Identity:
        return Identity(id=f"user-{next(_IDENTITY_COUNTER)}", email=email, user_metadata=metadata)

    return _make


@pytest.fixture(scope="session")
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> Iterator[Callable[[], Session]]:
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    try:
        yield factory
    finally:
        # Ensure each test sees a clean database even if commits occurred.
        with engine.begin() as cleanup_conn:
            for table in reversed(Base.metadata.sorted_tables):
                cleanup_conn.execute(table.delete())


@pytest.fixture()
def credential_store(session_factory: Callable[[], Session]) -> CredentialStore:
    return CredentialStore(session_factory=session_factory, storage_key="http://medqa.test")


async def _settle(rounds: int = 25) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture()
def settle() -> Callable[..., Any]:
    """Return a coroutine function that lets pending tasks and callbacks run."""
    return _settle


class StubSession:
    """Minimal viewer source for driving the mutation coordinator."""

    def __init__(self, viewer: Identity | None = None) -> None:
        self.viewer = viewer
        self._listeners: list[Callable[[Any], None]] = []

    def subscribe(self, listener: Callable[[Any], None]) -> Unsubscribe:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def switch(self, viewer: Identity | None) -> None:
        self.viewer = viewer
        for listener in list(self._listeners):
            listener(None)


@pytest.fixture()
def viewer(store: FakeRemoteStore) -> Identity:
    identity = store.register("viewer@example.com")
    store.current = identity
    return identity


@pytest.fixture()
def session(viewer: Identity) -> StubSession:
    return StubSession(viewer)
