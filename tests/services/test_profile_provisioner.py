import asyncio

import pytest

from medqa_client.schemas.profile import DoctorSignup, Profile, UserRole
from medqa_client.services.errors import (
    ProfileConflictError,
    ProfileUnavailableError,
    RemoteStoreError,
)
from medqa_client.services.profile_provisioner import ProfileProvisioner


@pytest.fixture
def provisioner(store):
    return ProfileProvisioner(store)


@pytest.mark.asyncio
async def test_existing_profile_is_returned_without_create(store, provisioner, make_identity):
    ada = make_identity("ada@example.com")
    store.profiles[ada.id] = Profile(id=ada.id, email=ada.email, full_name="Ada")

    profile = await provisioner.ensure_profile(ada)

    assert profile.full_name == "Ada"
    assert store.create_profile_calls == 0


@pytest.mark.asyncio
async def test_missing_profile_is_created_from_account_metadata(store, provisioner, make_identity):
    doc = make_identity(
        "doc@example.com",
        full_name="Dr. Heart",
        phone="555-0199",
        role="doctor",
        specialization="Cardiology",
        license_number="LIC-42",
        years_of_experience=12,
        affiliated_facility="General Hospital",
    )

    profile = await provisioner.ensure_profile(doc)

    assert profile.id == doc.id
    assert profile.role is UserRole.DOCTOR
    assert profile.specialization == "Cardiology"
    assert profile.affiliate_health_facility == "General Hospital"
    assert profile.is_verified is False
    assert store.created_profiles[0].full_name == "Dr. Heart"


@pytest.mark.asyncio
async def test_explicit_signup_metadata_takes_precedence(store, provisioner, make_identity):
    ada = make_identity("ada@example.com", role="patient")
    signup = DoctorSignup(specialization="Oncology", license_number="L-1", years_of_experience=3)

    profile = await provisioner.ensure_profile(ada, signup)

    assert profile.role is UserRole.DOCTOR
    assert profile.specialization == "Oncology"


@pytest.mark.asyncio
async def test_malformed_role_metadata_falls_back_to_patient(store, provisioner, make_identity):
    odd = make_identity("odd@example.com", role="doctor")

    profile = await provisioner.ensure_profile(odd)

    assert profile.role is UserRole.PATIENT


@pytest.mark.asyncio
async def test_concurrent_calls_create_a_single_profile(store, provisioner, make_identity):
    ada = make_identity("ada@example.com", full_name="Ada")

    first, second = await asyncio.gather(
        provisioner.ensure_profile(ada),
        provisioner.ensure_profile(ada),
    )

    assert first == second
    assert len(store.created_profiles) == 1
    assert store.create_profile_calls == 2
    assert list(store.profiles) == [ada.id]


@pytest.mark.asyncio
async def test_conflict_without_winner_reports_unavailable(store, provisioner, make_identity):
    ada = make_identity("ada@example.com")
    store.create_profile_error = ProfileConflictError("duplicate key")

    with pytest.raises(ProfileUnavailableError):
        await provisioner.ensure_profile(ada)

    assert store.get_profile_calls == 2


@pytest.mark.asyncio
async def test_fetch_failure_reports_unavailable(store, provisioner, make_identity):
    store.get_profile_error = RemoteStoreError("timeout")

    with pytest.raises(ProfileUnavailableError) as excinfo:
        await provisioner.ensure_profile(make_identity())

    assert isinstance(excinfo.value.__cause__, RemoteStoreError)
    assert store.create_profile_calls == 0


@pytest.mark.asyncio
async def test_create_failure_reports_unavailable(store, provisioner, make_identity):
    store.create_profile_error = RemoteStoreError("permission denied for table profiles")

    with pytest.raises(ProfileUnavailableError, match="Failed to create profile"):
        await provisioner.ensure_profile(make_identity())
