"""Credential encryption."""

from .encryption import EncryptionService

__all__ = ["EncryptionService"]
