# src/medqa_client/schemas/__init__.py
"""
Pydantic schemas for session, profile and question data.

These schemas define the structure of client data for validation and serialization.
"""

from .profile import (
    DoctorSignup,
    PatientSignup,
    Profile,
    ProfileCreate,
    ProfileUpdate,
    SignupMetadata,
    UserRole,
)
from .question import (
    Answer,
    AttachedFile,
    EditedContent,
    EntityKind,
    Question,
    VotableEntity,
    VoteToggleResult,
)
from .session import (
    AuthEvent,
    Identity,
    SessionAnonymous,
    SessionAuthenticated,
    SessionState,
    SessionUnknown,
    StoredSession,
)

__all__ = [
    "DoctorSignup", "PatientSignup", "Profile", "ProfileCreate", "ProfileUpdate",
    "SignupMetadata", "UserRole",
    "Answer", "AttachedFile", "EditedContent", "EntityKind", "Question",
    "VotableEntity", "VoteToggleResult",
    "AuthEvent", "Identity", "SessionAnonymous", "SessionAuthenticated",
    "SessionState", "SessionUnknown", "StoredSession",
]
