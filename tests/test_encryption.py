"""Tests for the credential encryption service."""

import pytest

from agentrelay.exceptions import ConfigurationError, CredentialError
from agentrelay.security import EncryptionService


@pytest.fixture
def service():
    return EncryptionService(EncryptionService.generate_key())


class TestEncryptionService:
    """AES-256-GCM encryption of stored credentials."""

    def test_round_trip(self, service):
        encrypted = service.encrypt("123456:bot-token")

        assert encrypted != "123456:bot-token"
        assert service.decrypt(encrypted) == "123456:bot-token"

    def test_stored_format_is_iv_tag_ciphertext(self, service):
        iv, tag, ciphertext = service.encrypt("sk-abc").split(":")

        assert len(bytes.fromhex(iv)) == 12
        assert len(bytes.fromhex(tag)) == 16
        assert len(bytes.fromhex(ciphertext)) == len("sk-abc")

    def test_each_encryption_uses_a_fresh_iv(self, service):
        assert service.encrypt("same") != service.encrypt("same")

    def test_tampered_ciphertext_is_rejected(self, service):
        iv, tag, ciphertext = service.encrypt("sk-abc").split(":")
        flipped = format(int(ciphertext[:2], 16) ^ 0xFF, "02x") + ciphertext[2:]

        with pytest.raises(CredentialError):
            service.decrypt(f"{iv}:{tag}:{flipped}")

    def test_other_key_cannot_decrypt(self, service):
        other = EncryptionService(EncryptionService.generate_key())

        with pytest.raises(CredentialError):
            other.decrypt(service.encrypt("sk-abc"))

    @pytest.mark.parametrize("stored", ["", "abc", "a:b", "zz:zz:zz"])
    def test_malformed_values_are_rejected(self, service, stored):
        with pytest.raises(CredentialError):
            service.decrypt(stored)

    def test_credential_errors_are_not_recoverable(self, service):
        with pytest.raises(CredentialError) as exc_info:
            service.decrypt("a:b")

        assert exc_info.value.recoverable is False

    def test_empty_plaintext_is_rejected(self, service):
        with pytest.raises(ValueError):
            service.encrypt("")

    @pytest.mark.parametrize("key", [None, "", "not-hex", "abcd"])
    def test_invalid_keys_fail_at_construction(self, key):
        with pytest.raises(ConfigurationError):
            EncryptionService(key)
