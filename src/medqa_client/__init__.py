"""Session lifecycle and optimistic mutation core for the MedQA client."""

__version__ = "0.1.0"
