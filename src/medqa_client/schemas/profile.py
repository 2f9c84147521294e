"""Profile and sign-up metadata schemas."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

DEFAULT_DISPLAY_NAME = "User"


class UserRole(str, Enum):
    """Application roles a profile can hold."""

    PATIENT = "patient"
    DOCTOR = "doctor"
    ADMIN = "admin"
    TESTING_CENTER = "testing_center"


class Profile(BaseModel):
    """Application-level user record keyed by identity id."""

    id: str
    email: str
    full_name: str | None = None
    phone: str | None = None
    avatar_url: str | None = None
    role: UserRole = UserRole.PATIENT
    is_verified: bool = False
    specialization: str | None = None
    bio: str | None = None
    affiliate_health_facility: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = ConfigDict(frozen=True, from_attributes=True, extra="ignore")

    @property
    def display_name(self) -> str:
        """Return the name shown in the UI."""
        return self.full_name or DEFAULT_DISPLAY_NAME


class PatientSignup(BaseModel):
    """Sign-up metadata for a patient account."""

    role: Literal["patient"] = "patient"


class DoctorSignup(BaseModel):
    """Sign-up metadata carrying the doctor-only fields."""

    role: Literal["doctor"] = "doctor"
    specialization: str = Field(..., min_length=1)
    license_number: str = Field(..., min_length=1)
    years_of_experience: int = Field(..., ge=0)
    affiliated_facility: str | None = None
    bio: str | None = None


SignupMetadata = Annotated[PatientSignup | DoctorSignup, Field(discriminator="role")]

_signup_adapter: TypeAdapter[PatientSignup | DoctorSignup] = TypeAdapter(SignupMetadata)


def parse_signup_metadata(raw: dict[str, Any] | None) -> PatientSignup | DoctorSignup:
    """Read sign-up metadata back from the account's stored metadata.

    Missing or malformed metadata falls back to a patient sign-up.
    """
    if not raw or raw.get("role", "patient") == "patient":
        return PatientSignup()
    try:
        return _signup_adapter.validate_python(raw)
    except ValidationError:
        return PatientSignup()


def signup_metadata_payload(
    display_name: str,
    phone: str,
    metadata: PatientSignup | DoctorSignup | None,
) -> dict[str, Any]:
    """Build the metadata mapping stored with a new account."""
    payload: dict[str, Any] = {"full_name": display_name, "phone": phone}
    if metadata is not None:
        payload.update(metadata.model_dump())
    return payload


class ProfileCreate(BaseModel):
    """Insert payload for a freshly provisioned profile."""

    id: str
    email: str
    full_name: str | None = None
    phone: str | None = None
    avatar_url: str | None = None
    role: UserRole = UserRole.PATIENT
    is_verified: bool = False
    specialization: str | None = None
    bio: str | None = None
    affiliate_health_facility: str | None = None

    @classmethod
    def from_signup(
        cls,
        *,
        identity_id: str,
        email: str,
        user_metadata: dict[str, Any],
        signup: PatientSignup | DoctorSignup,
    ) -> "ProfileCreate":
        """Seed a profile from the identity and its sign-up metadata.

        Verification is never self-asserted; it starts false for every role.
        """
        fields: dict[str, Any] = {
            "id": identity_id,
            "email": email,
            "full_name": user_metadata.get("full_name") or None,
            "phone": user_metadata.get("phone") or None,
            "role": UserRole(signup.role),
        }
        if isinstance(signup, DoctorSignup):
            fields["specialization"] = signup.specialization
            fields["bio"] = signup.bio
            fields["affiliate_health_facility"] = signup.affiliated_facility
        return cls(**fields)


class ProfileUpdate(BaseModel):
    """Partial update of the editable profile fields."""

    full_name: str | None = Field(None, min_length=1, max_length=100)
    phone: str | None = None
    bio: str | None = None
    specialization: str | None = None
    affiliate_health_facility: str | None = None

    @model_validator(mode="after")
    def _require_changes(self) -> "ProfileUpdate":
        if not self.model_fields_set:
            raise ValueError("Profile update must change at least one field")
        return self


def validate_signup_metadata(raw: Any) -> PatientSignup | DoctorSignup:
    """Validate caller-supplied sign-up metadata at the boundary.

    Raises:
        ValidationError: The metadata does not match either sign-up shape.
    """
    if isinstance(raw, (PatientSignup, DoctorSignup)):
        return raw
    return _signup_adapter.validate_python(raw)
