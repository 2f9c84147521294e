# src/medqa_client/models/__init__.py
"""SQLAlchemy models for the MedQA client."""

from .credential import StoredCredential

__all__ = ["StoredCredential"]
