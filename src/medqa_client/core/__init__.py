"""Core configuration and token helpers."""
