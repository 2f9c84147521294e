# src/medqa_client/services/__init__.py
"""Session, provisioning and mutation services for the MedQA client."""

from .credential_store import CredentialStore
from .mutation_coordinator import MutationCoordinator, MutationKind
from .profile_provisioner import ProfileProvisioner
from .remote_client import RemoteStoreClient
from .remote_store import RemoteStore
from .session_manager import SessionManager

__all__ = [
    "CredentialStore",
    "MutationCoordinator",
    "MutationKind",
    "ProfileProvisioner",
    "RemoteStoreClient",
    "RemoteStore",
    "SessionManager",
]
