"""Error taxonomy and result values shared by the client services.

Services raise the exceptions below internally; public operations convert
them into `OperationResult`/`MutationResult` values so that no remote
failure goes unobserved by the caller.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class ErrorKind(str, Enum):
    """Classification attached to every reported failure."""

    CREDENTIAL = "credential"
    SESSION_CORRUPTION = "session_corruption"
    PROFILE_UNAVAILABLE = "profile_unavailable"
    MUTATION_CONFLICT = "mutation_conflict"
    PARTIAL_PIPELINE_FAILURE = "partial_pipeline_failure"
    VALIDATION = "validation"
    NOT_AUTHENTICATED = "not_authenticated"
    PERMISSION_DENIED = "permission_denied"
    CONFIRMATION_REQUIRED = "confirmation_required"
    REMOTE_UNAVAILABLE = "remote_unavailable"


class MedQAError(RuntimeError):
    """Base exception for client failures."""

    kind: ErrorKind = ErrorKind.REMOTE_UNAVAILABLE


class RemoteStoreError(MedQAError):
    """Raised when the remote service fails or answers unexpectedly."""


class CredentialError(RemoteStoreError):
    """Bad email/secret or duplicate registration."""

    kind = ErrorKind.CREDENTIAL


class SessionCorruptionError(RemoteStoreError):
    """The stored credential is expired or was rejected by the service."""

    kind = ErrorKind.SESSION_CORRUPTION


class ProfileConflictError(RemoteStoreError):
    """A profile row with the same id already exists."""

    kind = ErrorKind.MUTATION_CONFLICT


class ProfileUnavailableError(MedQAError):
    """A profile could neither be fetched nor created."""

    kind = ErrorKind.PROFILE_UNAVAILABLE


class MutationConflictError(MedQAError):
    """A remote toggle or update was rejected."""

    kind = ErrorKind.MUTATION_CONFLICT


class PartialPipelineError(MedQAError):
    """Image deletions went through but a later upload failed."""

    kind = ErrorKind.PARTIAL_PIPELINE_FAILURE


class UnknownEntityError(KeyError):
    """A mutation targeted an entity the coordinator does not track."""


def classify(exc: BaseException) -> ErrorKind:
    """Return the error kind for an exception raised by a service."""
    if isinstance(exc, MedQAError):
        return exc.kind
    return ErrorKind.REMOTE_UNAVAILABLE


@dataclass(frozen=True)
class OperationResult:
    """Outcome of a session or profile operation."""

    success: bool
    error: str | None = None
    kind: ErrorKind | None = None

    @classmethod
    def ok(cls) -> "OperationResult":
        return cls(success=True)

    @classmethod
    def failure(cls, kind: ErrorKind, error: str) -> "OperationResult":
        return cls(success=False, error=error, kind=kind)

    @classmethod
    def from_exception(cls, exc: BaseException) -> "OperationResult":
        return cls.failure(classify(exc), str(exc) or "An unexpected error occurred")


class MutationOutcome(str, Enum):
    """What happened to a mutation request."""

    APPLIED = "applied"
    SKIPPED = "skipped"  # another mutation for the same target was in flight
    DISCARDED = "discarded"  # the owner went away before the result arrived
    FAILED = "failed"


@dataclass(frozen=True)
class MutationResult:
    """Outcome of an optimistic mutation."""

    outcome: MutationOutcome
    error: str | None = None
    kind: ErrorKind | None = None
    image_urls: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.outcome is MutationOutcome.APPLIED

    @classmethod
    def applied(cls, image_urls: list[str] | None = None) -> "MutationResult":
        return cls(outcome=MutationOutcome.APPLIED, image_urls=list(image_urls or []))

    @classmethod
    def skipped(cls) -> "MutationResult":
        return cls(outcome=MutationOutcome.SKIPPED)

    @classmethod
    def discarded(cls) -> "MutationResult":
        return cls(outcome=MutationOutcome.DISCARDED)

    @classmethod
    def failure(cls, kind: ErrorKind, error: str) -> "MutationResult":
        return cls(outcome=MutationOutcome.FAILED, error=error, kind=kind)
