"""
Credential Encryption Service

Provides AES-256-GCM encryption for channel tokens and provider API keys
at rest. Ciphertext is stored as hex ``iv:authTag:ciphertext``.
"""

import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..domain.ports import ISecretStore
from ..exceptions import ConfigurationError, CredentialError

logger = logging.getLogger(__name__)

NONCE_BYTES = 12
TAG_BYTES = 16
KEY_BYTES = 32


class EncryptionService(ISecretStore):
    """
    Encrypts and decrypts credentials using AES-256-GCM.

    A missing or malformed key is a configuration error at construction
    time.

    Usage:
        service = EncryptionService(os.environ["ENCRYPTION_KEY"])
        stored = service.encrypt("123456:bot-token")
        token = service.decrypt(stored)
    """

    def __init__(self, encryption_key: Optional[str]):
        """
        Initialize encryption service.

        Args:
            encryption_key: 32-byte key as a 64 character hex string

        Raises:
            ConfigurationError: If the key is missing or not 32 bytes of hex
        """
        self._aesgcm = AESGCM(self._parse_key(encryption_key))

    @staticmethod
    def _parse_key(encryption_key: Optional[str]) -> bytes:
        if not encryption_key:
            raise ConfigurationError(
                "ENCRYPTION_KEY is not set", missing_keys=["ENCRYPTION_KEY"]
            )
        try:
            key = bytes.fromhex(encryption_key.strip())
        except ValueError as e:
            raise ConfigurationError("ENCRYPTION_KEY is not a valid hex string", cause=e) from e
        if len(key) != KEY_BYTES:
            raise ConfigurationError(
                f"ENCRYPTION_KEY must be {KEY_BYTES} bytes ({KEY_BYTES * 2} hex characters), "
                f"got {len(key)} bytes"
            )
        return key

    @staticmethod
    def generate_key() -> str:
        """Return a fresh random key as hex."""
        return os.urandom(KEY_BYTES).hex()

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt plaintext string using AES-256-GCM.

        Args:
            plaintext: String to encrypt

        Returns:
            ``iv:authTag:ciphertext`` in hex
        """
        if not plaintext:
            raise ValueError("Cannot encrypt empty string")

        nonce = os.urandom(NONCE_BYTES)
        sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return f"{nonce.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, encrypted_text: str) -> str:
        """
        Decrypt an ``iv:authTag:ciphertext`` string.

        Raises:
            CredentialError: If the format is wrong, the tag does not
                verify, or the plaintext is not UTF-8
        """
        parts = (encrypted_text or "").split(":")
        if len(parts) != 3:
            raise CredentialError("Invalid encrypted credential format")

        try:
            nonce, tag, ciphertext = (bytes.fromhex(p) for p in parts)
            plaintext = self._aesgcm.decrypt(nonce, ciphertext + tag, None)
            return plaintext.decode("utf-8")
        except (ValueError, InvalidTag, UnicodeDecodeError) as e:
            logger.error("Credential decryption failed")
            raise CredentialError(cause=e) from e
