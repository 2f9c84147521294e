"""HTTP client for the hosted data/auth service.

This module provides the RemoteStoreClient class, the production
implementation of the `RemoteStore` interface. It includes:

- Password sign-in, sign-up, sign-out and refresh-token handling
- Persistence of the token pair through `CredentialStore`
- An in-process auth event stream delivered synchronously to subscribers
- Profile, vote and question row operations
- Question image upload and deletion in object storage
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import httpx

from medqa_client.core.settings import settings
from medqa_client.core.tokens import is_expiring, token_expiry
from medqa_client.db.time import epoch_seconds, utc_timestamp
from medqa_client.schemas.profile import Profile, ProfileCreate, ProfileUpdate
from medqa_client.schemas.question import AttachedFile, EntityKind, VoteToggleResult
from medqa_client.schemas.session import AuthEvent, Identity, StoredSession
from medqa_client.services.credential_store import CredentialStore
from medqa_client.services.errors import (
    CredentialError,
    ProfileConflictError,
    RemoteStoreError,
    SessionCorruptionError,
)
from medqa_client.services.remote_store import AuthListener, Unsubscribe

# Configure logger for this module
logger = logging.getLogger(__name__)

# HTTP status codes
HTTP_OK = 200
HTTP_CREATED = 201
HTTP_NO_CONTENT = 204
HTTP_BAD_REQUEST = 400
HTTP_UNAUTHORIZED = 401
HTTP_CONFLICT = 409
HTTP_UNPROCESSABLE_ENTITY = 422

UNIQUE_VIOLATION_CODE = "23505"
INVALID_REFRESH_MARKERS = ("Invalid Refresh Token", "Refresh Token Not Found")

_VOTE_TABLES: dict[EntityKind, tuple[str, str]] = {
    EntityKind.QUESTION: ("question_upvotes", "question_id"),
    EntityKind.ANSWER: ("answer_upvotes", "answer_id"),
}
_ENTITY_TABLES: dict[EntityKind, str] = {
    EntityKind.QUESTION: "questions",
    EntityKind.ANSWER: "answers",
}


@dataclass(frozen=True)
class RemoteStoreConfig:
    """Immutable configuration for remote store operations."""

    base_url: str
    anon_key: str
    timeout_seconds: float
    refresh_margin_seconds: int
    image_bucket: str
    cache_control_seconds: int


def load_remote_config() -> RemoteStoreConfig:
    """Build configuration object from global settings."""

    return RemoteStoreConfig(
        base_url=settings.remote_url.rstrip("/"),
        anon_key=settings.remote_anon_key,
        timeout_seconds=float(settings.remote_http_timeout_seconds),
        refresh_margin_seconds=settings.token_refresh_margin_seconds,
        image_bucket=settings.question_image_bucket,
        cache_control_seconds=settings.image_cache_control_seconds,
    )


def _error_message(response: httpx.Response) -> str:
    """Extract a human-readable message from an error response."""
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, Mapping):
        for key in ("error_description", "msg", "message", "error"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    return f"HTTP {response.status_code}"


def _error_code(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, Mapping):
        code = body.get("code")
        return str(code) if code is not None else None
    return None


def _json_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise RemoteStoreError(f"Malformed response body (HTTP {response.status_code})") from exc


def _identity_from_user(user: Mapping[str, Any]) -> Identity:
    return Identity(
        id=str(user["id"]),
        email=str(user.get("email") or ""),
        user_metadata=dict(user.get("user_metadata") or {}),
    )


class RemoteStoreClient:
    """HTTP client wrapper for the hosted data/auth service."""

    def __init__(
        self,
        config: RemoteStoreConfig | None = None,
        credentials: CredentialStore | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or load_remote_config()
        self._credentials = credentials or CredentialStore(storage_key=self.config.base_url)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()
        self._refresh_lock = asyncio.Lock()
        self._listeners: list[AuthListener] = []

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    base_url=self.config.base_url,
                    timeout=httpx.Timeout(self.config.timeout_seconds),
                    transport=self._transport,
                )
        return self._client

    @dataclass
    class RequestParams:
        """Parameters for HTTP requests."""
        method: str
        path: str
        json_data: Any | None = None
        content: bytes | None = None
        params: Mapping[str, Any] | None = None
        headers: dict[str, str] | None = None
        access_token: str | None = None

    async def _request(self, params: RequestParams) -> httpx.Response:
        client = await self._ensure_client()
        headers = {
            "apikey": self.config.anon_key,
            "Authorization": f"Bearer {params.access_token or self.config.anon_key}",
        }
        if params.headers:
            headers.update(params.headers)

        try:
            return await client.request(
                params.method,
                params.path,
                json=params.json_data,
                content=params.content,
                params=params.params,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise RemoteStoreError(f"Request {params.method} {params.path} failed: {exc}") from exc

    async def _authorized(self, params: RequestParams) -> httpx.Response:
        """Send a request on behalf of the signed-in user."""
        params.access_token = await self._access_token()
        return await self._request(params)

    # --- Auth event stream ----------------------------------------------------------

    def subscribe_auth_events(self, callback: AuthListener) -> Unsubscribe:
        """Register a synchronous listener for auth-change events."""
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _emit(self, event: AuthEvent, identity: Identity | None) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, identity)
            except Exception:
                logger.exception("Auth listener failed for %s", event.value)

    # --- Session handling -----------------------------------------------------------

    def _store_session(self, payload: Mapping[str, Any]) -> Identity:
        try:
            access_token = str(payload["access_token"])
            expires_at = payload.get("expires_at")
            if expires_at is None and payload.get("expires_in") is not None:
                expires_at = epoch_seconds() + int(payload["expires_in"])
            if expires_at is None:
                expires_at = token_expiry(access_token)
            stored = StoredSession(
                access_token=access_token,
                refresh_token=str(payload["refresh_token"]),
                expires_at=int(expires_at) if expires_at is not None else None,
                identity=_identity_from_user(payload["user"]),
            )
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise RemoteStoreError(f"Malformed session payload: {exc!r}") from exc

        self._credentials.save(stored)
        return stored.identity

    async def _refresh(self, stored: StoredSession) -> StoredSession:
        response = await self._request(
            self.RequestParams(
                method="POST",
                path="/auth/v1/token",
                params={"grant_type": "refresh_token"},
                json_data={"refresh_token": stored.refresh_token},
            )
        )
        if response.status_code != HTTP_OK:
            message = _error_message(response)
            if response.status_code in (HTTP_BAD_REQUEST, HTTP_UNAUTHORIZED) or any(
                marker in message for marker in INVALID_REFRESH_MARKERS
            ):
                raise SessionCorruptionError(message)
            raise RemoteStoreError(f"Unexpected response ({response.status_code}) refreshing token")

        identity = self._store_session(_json_body(response))
        refreshed = self._credentials.load()
        if refreshed is None:  # pragma: no cover - store cleared concurrently
            raise SessionCorruptionError("Stored session disappeared during refresh")
        self._emit(AuthEvent.TOKEN_REFRESHED, identity)
        return refreshed

    async def _valid_session(self) -> StoredSession | None:
        async with self._refresh_lock:
            stored = self._credentials.load()
            if stored is None:
                return None
            if is_expiring(stored.expires_at, self.config.refresh_margin_seconds):
                logger.info("Refreshing access token for %s", stored.identity.id)
                stored = await self._refresh(stored)
            return stored

    async def _access_token(self) -> str:
        try:
            stored = await self._valid_session()
        except SessionCorruptionError:
            self._emit(AuthEvent.CREDENTIAL_INVALID, None)
            raise
        if stored is None:
            raise CredentialError("User not authenticated")
        return stored.access_token

    def _current_user_id(self) -> str:
        stored = self._credentials.load()
        if stored is None:
            raise CredentialError("User not authenticated")
        return stored.identity.id

    async def get_current_session(self) -> Identity | None:
        """Return the stored session's identity, refreshing an expiring token.

        Raises:
            SessionCorruptionError: The refresh credential was rejected.
        """
        stored = await self._valid_session()
        return stored.identity if stored else None

    async def sign_in(self, email: str, secret: str) -> Identity:
        """Sign in with email and password."""
        response = await self._request(
            self.RequestParams(
                method="POST",
                path="/auth/v1/token",
                params={"grant_type": "password"},
                json_data={"email": email, "password": secret},
            )
        )
        if response.status_code in (HTTP_BAD_REQUEST, HTTP_UNAUTHORIZED, HTTP_UNPROCESSABLE_ENTITY):
            raise CredentialError(_error_message(response))
        if response.status_code != HTTP_OK:
            raise RemoteStoreError(f"Unexpected response ({response.status_code}) when signing in")

        identity = self._store_session(_json_body(response))
        self._emit(AuthEvent.SIGNED_IN, identity)
        return identity

    async def sign_up(
        self, email: str, secret: str, metadata: Mapping[str, Any]
    ) -> Identity | None:
        """Register an account; returns None when email confirmation is pending."""
        response = await self._request(
            self.RequestParams(
                method="POST",
                path="/auth/v1/signup",
                json_data={"email": email, "password": secret, "data": dict(metadata)},
            )
        )
        if response.status_code in (HTTP_BAD_REQUEST, HTTP_UNPROCESSABLE_ENTITY):
            raise CredentialError(_error_message(response))
        if response.status_code not in (HTTP_OK, HTTP_CREATED):
            raise RemoteStoreError(f"Unexpected response ({response.status_code}) when signing up")

        body = _json_body(response)
        if not body.get("access_token"):
            return None
        identity = self._store_session(body)
        self._emit(AuthEvent.SIGNED_IN, identity)
        return identity

    async def sign_out(self) -> None:
        """Revoke the session remotely and always forget it locally."""
        stored = self._credentials.load()
        if stored is not None:
            try:
                response = await self._request(
                    self.RequestParams(
                        method="POST",
                        path="/auth/v1/logout",
                        access_token=stored.access_token,
                    )
                )
                if response.status_code not in (HTTP_OK, HTTP_NO_CONTENT, HTTP_UNAUTHORIZED):
                    logger.warning("Logout returned %s", response.status_code)
            except RemoteStoreError as exc:
                logger.warning("Logout request failed: %s", exc)
        self._credentials.clear()
        self._emit(AuthEvent.SIGNED_OUT, None)

    # --- Profiles -------------------------------------------------------------------

    async def get_profile(self, identity_id: str) -> Profile | None:
        """Fetch a profile row, or None if it does not exist."""
        response = await self._authorized(
            self.RequestParams(
                method="GET",
                path="/rest/v1/profiles",
                params={"id": f"eq.{identity_id}", "select": "*"},
            )
        )
        if response.status_code != HTTP_OK:
            raise RemoteStoreError(f"Error loading profile: {_error_message(response)}")
        rows = _json_body(response)
        return Profile.model_validate(rows[0]) if rows else None

    async def create_profile(self, fields: ProfileCreate) -> Profile:
        """Insert a profile row.

        Raises:
            ProfileConflictError: A row with the same id already exists.
        """
        response = await self._authorized(
            self.RequestParams(
                method="POST",
                path="/rest/v1/profiles",
                json_data=fields.model_dump(mode="json"),
                headers={"Prefer": "return=representation"},
            )
        )
        if response.status_code == HTTP_CONFLICT or _error_code(response) == UNIQUE_VIOLATION_CODE:
            raise ProfileConflictError(_error_message(response))
        if response.status_code not in (HTTP_OK, HTTP_CREATED):
            raise RemoteStoreError(f"Error creating profile: {_error_message(response)}")
        rows = _json_body(response)
        row = rows[0] if isinstance(rows, list) else rows
        return Profile.model_validate(row)

    async def update_profile(self, identity_id: str, changes: ProfileUpdate) -> None:
        """Apply a partial update to a profile row."""
        payload = changes.model_dump(exclude_unset=True)
        payload["updated_at"] = utc_timestamp()
        response = await self._authorized(
            self.RequestParams(
                method="PATCH",
                path="/rest/v1/profiles",
                params={"id": f"eq.{identity_id}"},
                json_data=payload,
            )
        )
        if response.status_code not in (HTTP_OK, HTTP_NO_CONTENT):
            raise RemoteStoreError(f"Error updating profile: {_error_message(response)}")

    # --- Votes ----------------------------------------------------------------------

    async def toggle_vote(self, kind: EntityKind, entity_id: str) -> VoteToggleResult:
        """Remove the caller's vote record if present, otherwise insert one."""
        table, column = _VOTE_TABLES[kind]
        user_id = self._current_user_id()
        match = {column: f"eq.{entity_id}", "user_id": f"eq.{user_id}"}

        existing = await self._authorized(
            self.RequestParams(
                method="GET", path=f"/rest/v1/{table}", params={**match, "select": "id"}
            )
        )
        if existing.status_code != HTTP_OK:
            raise RemoteStoreError(_error_message(existing))

        if _json_body(existing):
            response = await self._authorized(
                self.RequestParams(method="DELETE", path=f"/rest/v1/{table}", params=match)
            )
        else:
            response = await self._authorized(
                self.RequestParams(
                    method="POST",
                    path=f"/rest/v1/{table}",
                    json_data={column: entity_id, "user_id": user_id},
                )
            )
        if response.status_code not in (HTTP_OK, HTTP_CREATED, HTTP_NO_CONTENT):
            raise RemoteStoreError(_error_message(response))

        return VoteToggleResult(authoritative_count=await self._fetch_upvotes(kind, entity_id))

    async def _fetch_upvotes(self, kind: EntityKind, entity_id: str) -> int | None:
        # The toggle already succeeded; a failed count read only loses the count.
        try:
            response = await self._authorized(
                self.RequestParams(
                    method="GET",
                    path=f"/rest/v1/{_ENTITY_TABLES[kind]}",
                    params={"id": f"eq.{entity_id}", "select": "upvotes"},
                )
            )
        except RemoteStoreError as exc:
            logger.warning("Error fetching updated upvote count: %s", exc)
            return None
        if response.status_code != HTTP_OK:
            logger.warning("Error fetching updated upvote count: %s", response.status_code)
            return None
        try:
            return max(int(response.json()[0]["upvotes"]), 0)
        except (IndexError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Malformed upvote count for %s: %r", entity_id, exc)
            return None

    # --- Entities and storage -------------------------------------------------------

    async def update_entity(
        self, kind: EntityKind, entity_id: str, fields: Mapping[str, Any]
    ) -> None:
        """Update an entity row with the given fields."""
        payload = dict(fields)
        payload["updated_at"] = utc_timestamp()
        response = await self._authorized(
            self.RequestParams(
                method="PATCH",
                path=f"/rest/v1/{_ENTITY_TABLES[kind]}",
                params={"id": f"eq.{entity_id}"},
                json_data=payload,
            )
        )
        if response.status_code not in (HTTP_OK, HTTP_NO_CONTENT):
            raise RemoteStoreError(f"Error updating {kind.value}: {_error_message(response)}")

    def public_url(self, object_path: str) -> str:
        return f"{self.config.base_url}/storage/v1/object/public/{self.config.image_bucket}/{object_path}"

    def object_path(self, reference: str) -> str | None:
        """Return the bucket-relative path of a public image URL."""
        parts = reference.split("/")
        if self.config.image_bucket not in parts:
            return None
        return "/".join(parts[parts.index(self.config.image_bucket) + 1:]) or None

    async def upload_file(self, file: AttachedFile, owner_id: str) -> str:
        """Upload an image under `<owner>/<uuid>.<ext>` and return its public URL."""
        object_path = f"{owner_id}/{uuid.uuid4()}.{file.extension}"
        response = await self._authorized(
            self.RequestParams(
                method="POST",
                path=f"/storage/v1/object/{self.config.image_bucket}/{object_path}",
                content=file.data,
                headers={
                    "Content-Type": file.content_type,
                    "Cache-Control": str(self.config.cache_control_seconds),
                    "x-upsert": "false",
                },
            )
        )
        if response.status_code not in (HTTP_OK, HTTP_CREATED):
            raise RemoteStoreError(f"Failed to upload image: {_error_message(response)}")
        return self.public_url(object_path)

    async def delete_file(self, reference: str) -> None:
        """Remove an uploaded image; references outside the bucket are ignored."""
        object_path = self.object_path(reference)
        if object_path is None:
            logger.debug("Skipping deletion of foreign image reference %s", reference)
            return
        response = await self._authorized(
            self.RequestParams(
                method="DELETE",
                path=f"/storage/v1/object/{self.config.image_bucket}",
                json_data={"prefixes": [object_path]},
            )
        )
        if response.status_code not in (HTTP_OK, HTTP_NO_CONTENT):
            raise RemoteStoreError(f"Failed to delete image: {_error_message(response)}")

    async def close(self) -> None:
        """Clean up underlying HTTP client resources."""

        async with self._client_lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None
