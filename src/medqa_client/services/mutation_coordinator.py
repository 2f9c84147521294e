"""Optimistic mutations on shared entities with reconciliation and rollback."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, TypeVar

from pydantic import ValidationError

from medqa_client.schemas.question import (
    AttachedFile,
    EditedContent,
    EntityKind,
    Question,
    VotableEntity,
    VoteToggleResult,
)
from medqa_client.schemas.session import Identity, SessionState
from medqa_client.services.errors import (
    ErrorKind,
    MedQAError,
    MutationConflictError,
    MutationResult,
    PartialPipelineError,
    RemoteStoreError,
    UnknownEntityError,
    classify,
)
from medqa_client.services.generation import Generation
from medqa_client.services.remote_store import RemoteStore, Unsubscribe

logger = logging.getLogger(__name__)

S = TypeVar("S")
R = TypeVar("R")


class MutationKind(str, Enum):
    """Kinds of mutation; at most one of each may be in flight per entity."""

    VOTE_TOGGLE = "vote_toggle"
    CONTENT_EDIT = "content_edit"


@dataclass
class PendingMutation:
    """In-memory record of a mutation awaiting its remote result."""

    target_id: str
    kind: MutationKind
    snapshot: Any
    in_flight: bool = True


@dataclass(frozen=True)
class VoteSnapshot:
    """Pre-toggle vote state restored on failure."""

    upvote_count: int
    viewer_has_voted: bool


class ViewerSource(Protocol):
    """What the coordinator needs from the session: the viewer and change notices."""

    @property
    def viewer(self) -> Identity | None: ...

    def subscribe(self, listener: Callable[[SessionState], None]) -> Unsubscribe: ...


class MutationCoordinator:
    """Apply local-first changes and reconcile them with the remote store.

    Entities are tracked per viewer: when the session's viewer changes the
    registry is reset and every in-flight result is discarded on arrival.
    """

    def __init__(self, store: RemoteStore, session: ViewerSource) -> None:
        self._store = store
        self._session = session
        self._entities: dict[str, VotableEntity] = {}
        self._pending: dict[tuple[str, MutationKind], PendingMutation] = {}
        self._generation = Generation()
        self._viewer_id = self._current_viewer_id()
        self._unsubscribe: Unsubscribe | None = session.subscribe(self._on_session_change)

    # --- Entity registry ------------------------------------------------------------

    def track(self, entity: VotableEntity) -> VotableEntity:
        """Register an entity loaded for the current viewer and return it."""
        self._entities[entity.id] = entity
        return entity

    def get(self, entity_id: str) -> VotableEntity:
        try:
            return self._entities[entity_id]
        except KeyError:
            raise UnknownEntityError(entity_id) from None

    def is_pending(self, entity_id: str, kind: MutationKind) -> bool:
        pending = self._pending.get((entity_id, kind))
        return pending is not None and pending.in_flight

    def reset(self) -> None:
        """Forget tracked entities and orphan every in-flight mutation."""
        self._generation.advance()
        self._entities.clear()
        self._pending.clear()

    def dispose(self) -> None:
        """Detach from the session; late results are discarded."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.reset()

    def _current_viewer_id(self) -> str | None:
        viewer = self._session.viewer
        return viewer.id if viewer else None

    def _on_session_change(self, _state: SessionState) -> None:
        viewer_id = self._current_viewer_id()
        if viewer_id != self._viewer_id:
            logger.debug("Viewer changed from %s to %s, resetting", self._viewer_id, viewer_id)
            self._viewer_id = viewer_id
            self.reset()

    # --- Generic engine -------------------------------------------------------------

    async def run_optimistic(
        self,
        target_id: str,
        kind: MutationKind,
        *,
        snapshot: Callable[[], S],
        apply: Callable[[], None],
        submit: Callable[[], Awaitable[R]],
        confirm: Callable[[R], None],
        rollback: Callable[[S], None],
    ) -> MutationResult:
        """Run one optimistic mutation.

        Args:
            target_id: Entity the mutation targets.
            kind: Mutation kind; a second call for the same pair while one is
                in flight is a no-op.
            snapshot: Captures the local state needed for rollback.
            apply: Applies the local change before the remote call.
            submit: Performs the remote call.
            confirm: Reconciles local state with the remote response.
            rollback: Restores the captured snapshot after a failure.

        Returns:
            APPLIED, SKIPPED, DISCARDED (owner went away mid-flight) or FAILED.
        """
        key = (target_id, kind)
        if key in self._pending:
            logger.debug("%s already in flight for %s, ignoring", kind.value, target_id)
            return MutationResult.skipped()

        record = PendingMutation(target_id=target_id, kind=kind, snapshot=snapshot())
        self._pending[key] = record
        tag = self._generation.current
        apply()

        try:
            response = await submit()
        except MedQAError as exc:
            if not self._generation.is_current(tag):
                return MutationResult.discarded()
            rollback(record.snapshot)
            logger.error("Failed %s on %s: %s", kind.value, target_id, exc)
            return MutationResult.failure(classify(exc), str(exc))
        except BaseException:
            # Cancellation and unexpected errors still restore the snapshot.
            if self._generation.is_current(tag):
                rollback(record.snapshot)
            raise
        finally:
            record.in_flight = False
            if self._pending.get(key) is record:
                del self._pending[key]

        if not self._generation.is_current(tag):
            logger.debug("Discarding %s result for %s", kind.value, target_id)
            return MutationResult.discarded()
        confirm(response)
        return MutationResult.applied()

    # --- Vote toggles ---------------------------------------------------------------

    async def toggle_vote(self, entity_id: str) -> MutationResult:
        """Flip the viewer's upvote on an entity, optimistically."""
        if self._session.viewer is None:
            return MutationResult.failure(ErrorKind.NOT_AUTHENTICATED, "User not authenticated")
        entity = self.get(entity_id)

        def take_snapshot() -> VoteSnapshot:
            return VoteSnapshot(entity.upvote_count, entity.viewer_has_voted)

        def apply() -> None:
            if entity.viewer_has_voted:
                entity.upvote_count = max(entity.upvote_count - 1, 0)
            else:
                entity.upvote_count += 1
            entity.viewer_has_voted = not entity.viewer_has_voted

        async def submit() -> VoteToggleResult:
            try:
                return await self._store.toggle_vote(entity.kind, entity.id)
            except RemoteStoreError as exc:
                raise MutationConflictError(str(exc)) from exc

        def confirm(result: VoteToggleResult) -> None:
            # Remote count wins; the flag stays as resolved locally.
            if result.authoritative_count is not None:
                entity.upvote_count = result.authoritative_count

        def rollback(snap: VoteSnapshot) -> None:
            entity.upvote_count = snap.upvote_count
            entity.viewer_has_voted = snap.viewer_has_voted

        return await self.run_optimistic(
            entity_id,
            MutationKind.VOTE_TOGGLE,
            snapshot=take_snapshot,
            apply=apply,
            submit=submit,
            confirm=confirm,
            rollback=rollback,
        )

    # --- Content edits --------------------------------------------------------------

    async def submit_content_edit(
        self,
        entity_id: str,
        content: EditedContent | Mapping[str, Any],
    ) -> MutationResult:
        """Validate and submit a question edit including its image delta.

        Local state changes only after the remote update succeeds.
        """
        viewer = self._session.viewer
        if viewer is None:
            return MutationResult.failure(ErrorKind.NOT_AUTHENTICATED, "User not authenticated")
        try:
            edit = (
                content
                if isinstance(content, EditedContent)
                else EditedContent.model_validate(content)
            )
        except ValidationError as exc:
            return MutationResult.failure(ErrorKind.VALIDATION, str(exc))

        tracked = self._entities.get(entity_id)
        if isinstance(tracked, Question) and tracked.author_id not in (None, viewer.id):
            return MutationResult.failure(
                ErrorKind.PERMISSION_DENIED, "You can only edit your own questions"
            )

        final_images: list[str] = []

        async def submit() -> list[str]:
            deleted = await self._delete_images(edit.images_to_delete)
            try:
                uploaded = await self._upload_images(edit.new_images, viewer.id)
            except RemoteStoreError as exc:
                if deleted:
                    raise PartialPipelineError(
                        f"Failed to upload image after removing {deleted} image(s): {exc}"
                    ) from exc
                raise MutationConflictError(f"Failed to upload image: {exc}") from exc

            images = edit.retained_images + uploaded
            try:
                await self._store.update_entity(
                    EntityKind.QUESTION, entity_id, edit.update_fields(images)
                )
            except RemoteStoreError as exc:
                raise MutationConflictError(str(exc)) from exc
            return images

        def confirm(images: list[str]) -> None:
            final_images.extend(images)
            question = self._entities.get(entity_id)
            if isinstance(question, Question):
                question.title = edit.title
                question.body = edit.body
                question.category = edit.category
                question.tags = list(edit.tags)
                question.is_anonymous = edit.is_anonymous
                question.is_public = edit.is_public
                question.image_urls = list(images)

        result = await self.run_optimistic(
            entity_id,
            MutationKind.CONTENT_EDIT,
            snapshot=lambda: None,
            apply=lambda: None,
            submit=submit,
            confirm=confirm,
            rollback=lambda _snap: None,
        )
        if result.success:
            return MutationResult.applied(final_images)
        return result

    async def _delete_images(self, references: list[str]) -> int:
        """Delete images best-effort; return how many deletions succeeded."""
        deleted = 0
        for reference in references:
            try:
                await self._store.delete_file(reference)
            except RemoteStoreError as exc:
                logger.warning("Error deleting image %s: %s", reference, exc)
                continue
            deleted += 1
        return deleted

    async def _upload_images(self, files: list[AttachedFile], owner_id: str) -> list[str]:
        """Upload files in attachment order, stopping at the first failure."""
        references: list[str] = []
        for file in files:
            references.append(await self._store.upload_file(file, owner_id))
        return references
