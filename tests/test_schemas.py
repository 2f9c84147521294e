import pytest
from pydantic import TypeAdapter, ValidationError

from medqa_client.schemas.profile import (
    DoctorSignup,
    PatientSignup,
    Profile,
    ProfileCreate,
    ProfileUpdate,
    UserRole,
    parse_signup_metadata,
    signup_metadata_payload,
)
from medqa_client.schemas.question import Question, VotableEntity
from medqa_client.schemas.session import (
    Identity,
    SessionAnonymous,
    SessionAuthenticated,
    SessionState,
)


def test_session_state_is_discriminated_by_status():
    adapter = TypeAdapter(SessionState)

    assert isinstance(adapter.validate_python({"status": "anonymous"}), SessionAnonymous)
    state = adapter.validate_python(
        {
            "status": "authenticated",
            "identity": {"id": "user-1", "email": "ada@example.com"},
            "profile": {"id": "user-1", "email": "ada@example.com"},
        }
    )
    assert isinstance(state, SessionAuthenticated)
    with pytest.raises(ValidationError):
        adapter.validate_python({"status": "resolving"})


def test_authenticated_state_requires_profile():
    with pytest.raises(ValidationError):
        SessionAuthenticated(identity=Identity(id="user-1", email="ada@example.com"))


def test_display_name_falls_back():
    assert Profile(id="u", email="e@example.com").display_name == "User"
    assert Profile(id="u", email="e@example.com", full_name="Ada").display_name == "Ada"


def test_signup_payload_merges_role_metadata():
    payload = signup_metadata_payload(
        "Dr. Heart",
        "555-0199",
        DoctorSignup(specialization="Cardiology", license_number="L-1", years_of_experience=4),
    )

    assert payload["full_name"] == "Dr. Heart"
    assert payload["role"] == "doctor"
    assert payload["years_of_experience"] == 4
    assert signup_metadata_payload("Pat", "1", None) == {"full_name": "Pat", "phone": "1"}


def test_doctor_signup_rejects_negative_experience():
    with pytest.raises(ValidationError):
        DoctorSignup(specialization="X", license_number="L", years_of_experience=-1)


def test_parse_signup_metadata_defaults_to_patient():
    assert isinstance(parse_signup_metadata(None), PatientSignup)
    assert isinstance(parse_signup_metadata({"role": "admin"}), PatientSignup)
    doctor = parse_signup_metadata(
        {"role": "doctor", "specialization": "X", "license_number": "L", "years_of_experience": 1}
    )
    assert isinstance(doctor, DoctorSignup)


def test_profile_create_never_self_verifies():
    created = ProfileCreate.from_signup(
        identity_id="user-1",
        email="doc@example.com",
        user_metadata={"full_name": "", "phone": "555"},
        signup=DoctorSignup(specialization="X", license_number="L", years_of_experience=1),
    )

    assert created.role is UserRole.DOCTOR
    assert created.is_verified is False
    assert created.full_name is None
    assert created.phone == "555"


def test_profile_update_requires_a_field():
    with pytest.raises(ValidationError):
        ProfileUpdate()
    assert ProfileUpdate(phone=None).model_dump(exclude_unset=True) == {"phone": None}


def test_upvote_count_cannot_go_negative():
    question = Question(id="q1", upvote_count=1)

    with pytest.raises(ValidationError):
        question.upvote_count = -1
    with pytest.raises(ValidationError):
        VotableEntity(kind="answer", id="a1", upvote_count=-3)
