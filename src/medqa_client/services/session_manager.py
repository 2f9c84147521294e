"""Session lifecycle state machine.

`SessionManager` is the single source of truth for who is signed in. It
merges two independently arriving signals:

- the one-shot current-session probe issued by `start()`;
- the continuous auth-event stream of the remote store.

Every newly observed identity (or loss of identity) advances an epoch.
Profile loads are launched as tasks tagged with the epoch at launch and are
applied only if that epoch is still current, so a late profile for an
identity that has since changed or signed out is never applied.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine, Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from medqa_client.schemas.profile import (
    DoctorSignup,
    PatientSignup,
    Profile,
    ProfileUpdate,
    signup_metadata_payload,
    validate_signup_metadata,
)
from medqa_client.schemas.session import (
    AuthEvent,
    Identity,
    SessionAnonymous,
    SessionAuthenticated,
    SessionState,
    SessionUnknown,
)
from medqa_client.services.errors import (
    ErrorKind,
    OperationResult,
    RemoteStoreError,
    SessionCorruptionError,
)
from medqa_client.services.generation import Generation
from medqa_client.services.profile_provisioner import ProfileProvisioner
from medqa_client.services.remote_store import RemoteStore, Unsubscribe

logger = logging.getLogger(__name__)

SessionListener = Callable[[SessionState], None]

CONFIRM_EMAIL_MESSAGE = "Please check your email to confirm your account."

# Marker for "no signal has reported anything yet".
_NOT_OBSERVED = object()


@dataclass
class _ProfileLoad:
    """A pending provisioning task and the epoch it will be applied under."""

    identity: Identity
    epoch: int
    task: asyncio.Task[Profile]


class SessionManager:
    """Derive a race-free session state from the remote store's auth signals.

    Auth operations (`sign_in`, `sign_up`, `sign_out`) never change the state
    themselves; the resulting transition always arrives through the event
    stream. Until it lands, `resolving` is True.
    """

    def __init__(self, store: RemoteStore, provisioner: ProfileProvisioner | None = None) -> None:
        self._store = store
        self._provisioner = provisioner or ProfileProvisioner(store)
        self._state: SessionState = SessionUnknown()
        self._epoch = Generation()
        self._observed: Any = _NOT_OBSERVED
        self._identity: Identity | None = None
        self._loads: dict[str, _ProfileLoad] = {}
        self._failed_identity_id: str | None = None
        self._awaiting_transition = False
        self._listeners: list[SessionListener] = []
        self._published: tuple[SessionState, bool, str | None] | None = None
        self._background: set[asyncio.Task[None]] = set()
        self._unsubscribe: Unsubscribe | None = None
        self._closed = False
        self.last_error: OperationResult | None = None

    # --- Read side ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def epoch(self) -> int:
        return self._epoch.current

    @property
    def identity(self) -> Identity | None:
        """Most recently observed identity, which may still be loading its profile."""
        return self._identity

    @property
    def viewer(self) -> Identity | None:
        """Identity of the settled authenticated session, if it is still current."""
        state = self._state
        if isinstance(state, SessionAuthenticated) and state.identity.id == self._observed:
            return state.identity
        return None

    @property
    def profile(self) -> Profile | None:
        state = self._state
        return state.profile if isinstance(state, SessionAuthenticated) else None

    @property
    def is_authenticated(self) -> bool:
        return self.viewer is not None

    @property
    def resolving(self) -> bool:
        """True while an auth call or the current identity's profile load is pending."""
        return self._awaiting_transition or self._current_load() is not None

    @property
    def loading(self) -> bool:
        return isinstance(self._state, SessionUnknown) or self.resolving

    def subscribe(self, listener: SessionListener) -> Unsubscribe:
        """Call `listener` with the state whenever the state, `resolving` or `viewer` changes."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # --- Lifecycle ------------------------------------------------------------------

    async def start(self) -> None:
        """Subscribe to the auth event stream and run the startup probe."""
        if self._unsubscribe is not None or self._closed:
            return

        self._unsubscribe = self._store.subscribe_auth_events(self._on_auth_event)
        probe_epoch = self._epoch.current
        try:
            identity = await self._store.get_current_session()
        except SessionCorruptionError as exc:
            logger.warning("Invalid stored credential detected, clearing session: %s", exc)
            await self._force_sign_out()
            return
        except RemoteStoreError as exc:
            logger.error("Error getting session: %s", exc)
            if not self._closed and self._epoch.is_current(probe_epoch):
                self._observe(None, AuthEvent.INITIAL_SESSION)
            return

        if self._closed or not self._epoch.is_current(probe_epoch):
            logger.debug("Discarding startup probe result; the event stream reported first")
            return
        self._observe(identity, AuthEvent.INITIAL_SESSION)

    def close(self) -> None:
        """Detach from the event stream and discard every in-flight result."""
        self._closed = True
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._epoch.advance()
        for load in list(self._loads.values()):
            load.task.cancel()
        self._loads.clear()
        for task in list(self._background):
            task.cancel()
        self._listeners.clear()

    # --- Auth operations ------------------------------------------------------------

    async def sign_in(self, email: str, secret: str) -> OperationResult:
        """Sign in; the session transition arrives through the event stream."""
        self._begin_transition()
        try:
            await self._store.sign_in(email, secret)
        except RemoteStoreError as exc:
            logger.error("Signin error: %s", exc)
            self._end_transition()
            return OperationResult.from_exception(exc)
        logger.info("Signin successful")
        return OperationResult.ok()

    async def sign_up(
        self,
        email: str,
        secret: str,
        display_name: str,
        phone: str,
        metadata: PatientSignup | DoctorSignup | Mapping[str, Any] | None = None,
    ) -> OperationResult:
        """Register an account seeded with optional role metadata."""
        try:
            signup = validate_signup_metadata(metadata) if metadata is not None else None
        except ValidationError as exc:
            return OperationResult.failure(ErrorKind.VALIDATION, str(exc))

        payload = signup_metadata_payload(display_name, phone, signup)
        self._begin_transition()
        try:
            identity = await self._store.sign_up(email, secret, payload)
        except RemoteStoreError as exc:
            logger.error("Signup error: %s", exc)
            self._end_transition()
            return OperationResult.from_exception(exc)

        if identity is None:
            self._end_transition()
            return OperationResult.failure(ErrorKind.CONFIRMATION_REQUIRED, CONFIRM_EMAIL_MESSAGE)
        logger.info("Signup successful, user created: %s", identity.id)
        return OperationResult.ok()

    async def sign_out(self) -> OperationResult:
        """Sign out; the transition to anonymous arrives through the event stream."""
        self._begin_transition()
        try:
            await self._store.sign_out()
        except RemoteStoreError as exc:
            logger.error("Signout error: %s", exc)
            self._end_transition()
            return OperationResult.from_exception(exc)
        return OperationResult.ok()

    async def update_profile(self, changes: ProfileUpdate | Mapping[str, Any]) -> OperationResult:
        """Persist profile edits and apply them to the session if it is unchanged."""
        viewer = self.viewer
        if viewer is None:
            return OperationResult.failure(ErrorKind.NOT_AUTHENTICATED, "User not authenticated")
        try:
            update = (
                changes if isinstance(changes, ProfileUpdate) else ProfileUpdate.model_validate(changes)
            )
        except ValidationError as exc:
            return OperationResult.failure(ErrorKind.VALIDATION, str(exc))

        tag = self._epoch.current
        try:
            await self._store.update_profile(viewer.id, update)
        except RemoteStoreError as exc:
            logger.error("Error updating profile: %s", exc)
            return OperationResult.from_exception(exc)

        state = self._state
        if self._epoch.is_current(tag) and isinstance(state, SessionAuthenticated):
            profile = state.profile.model_copy(update=update.model_dump(exclude_unset=True))
            self._set_state(SessionAuthenticated(identity=state.identity, profile=profile))
        return OperationResult.ok()

    # --- Signal handling ------------------------------------------------------------

    def _on_auth_event(self, event: AuthEvent, identity: Identity | None) -> None:
        # Runs synchronously inside the store's emitter; must never await.
        if self._closed:
            return
        logger.info("Auth state change: %s %s", event.value, identity.id if identity else None)

        if event is AuthEvent.CREDENTIAL_INVALID:
            self._spawn(self._force_sign_out())
        elif event is AuthEvent.SIGNED_OUT or identity is None:
            self._observe(None, event)
        else:
            self._observe(identity, event)

    def _observe(self, identity: Identity | None, event: AuthEvent) -> None:
        self._awaiting_transition = False

        if identity is None:
            if self._observed is None and isinstance(self._state, SessionAnonymous):
                self._publish()
                return
            self._epoch.advance()
            self._observed = None
            self._identity = None
            self._failed_identity_id = None
            self._set_state(SessionAnonymous())
            return

        if self._observed == identity.id:
            retry = (
                event in (AuthEvent.SIGNED_IN, AuthEvent.INITIAL_SESSION)
                and self._failed_identity_id == identity.id
            )
            if not retry:
                self._publish()
                return

        self._epoch.advance()
        self._observed = identity.id
        self._identity = identity
        self._failed_identity_id = None
        self._launch_profile_load(identity)
        self._publish()

    async def _force_sign_out(self) -> None:
        # Invalidate loads for the corrupted identity before suspending.
        tag = self._epoch.advance()
        self._observed = _NOT_OBSERVED
        self._publish()
        try:
            await self._store.sign_out()
        except RemoteStoreError as exc:
            logger.warning("Forced sign-out did not reach the service: %s", exc)
        if not self._closed and self._epoch.is_current(tag):
            self._observe(None, AuthEvent.SIGNED_OUT)

    # --- Profile loading ------------------------------------------------------------

    def _launch_profile_load(self, identity: Identity) -> None:
        pending = self._loads.get(identity.id)
        if pending is not None and not pending.task.done():
            logger.debug("Profile load for %s already pending, retagging", identity.id)
            pending.epoch = self._epoch.current
            return

        logger.info("Loading profile for user: %s", identity.id)
        task = asyncio.create_task(self._provisioner.ensure_profile(identity))
        load = _ProfileLoad(identity=identity, epoch=self._epoch.current, task=task)
        self._loads[identity.id] = load
        task.add_done_callback(lambda _task, load=load: self._on_profile_loaded(load))

    def _on_profile_loaded(self, load: _ProfileLoad) -> None:
        if self._loads.get(load.identity.id) is load:
            del self._loads[load.identity.id]
        if load.task.cancelled():
            return

        exc = load.task.exception()
        if self._closed or not self._epoch.is_current(load.epoch):
            logger.debug("Discarding stale profile result for %s", load.identity.id)
            return

        if exc is not None:
            logger.error("Profile unavailable for %s: %s", load.identity.id, exc)
            self._failed_identity_id = load.identity.id
            self.last_error = OperationResult.from_exception(exc)
            self._set_state(SessionAnonymous())
            return

        self.last_error = None
        identity = self._identity or load.identity
        self._set_state(SessionAuthenticated(identity=identity, profile=load.task.result()))

    def _current_load(self) -> _ProfileLoad | None:
        if not isinstance(self._observed, str):
            return None
        load = self._loads.get(self._observed)
        if load is None or load.task.done() or not self._epoch.is_current(load.epoch):
            return None
        return load

    # --- Notification ---------------------------------------------------------------

    def _begin_transition(self) -> None:
        self._awaiting_transition = True
        self._publish()

    def _end_transition(self) -> None:
        self._awaiting_transition = False
        self._publish()

    def _set_state(self, state: SessionState) -> None:
        self._state = state
        self._publish()

    def _publish(self) -> None:
        # A viewer change with the same state and resolving flag is still a change.
        viewer = self.viewer
        snapshot = (self._state, self.resolving, viewer.id if viewer else None)
        if snapshot == self._published:
            return
        self._published = snapshot
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:
                logger.exception("Session listener failed")

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
