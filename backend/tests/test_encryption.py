"""
Unit Tests for Access Token Encryption

Tests encryption/decryption of aggregator access tokens and masking
for logs.

Run with: pytest tests/test_encryption.py -v
"""

import os
import pytest

from cryptography.fernet import Fernet

# Generate a valid Fernet key for testing
VALID_TEST_KEY = Fernet.generate_key().decode()


class TestAccessTokenEncryption:
    """Test suite for access token encryption."""

    @pytest.fixture(autouse=True)
    def setup_encryption_key(self):
        """Set up encryption key for each test."""
        from utils.encryption import clear_fernet_cache
        clear_fernet_cache()

        os.environ['ENCRYPTION_KEY'] = VALID_TEST_KEY

        yield

        if 'ENCRYPTION_KEY' in os.environ:
            del os.environ['ENCRYPTION_KEY']
        clear_fernet_cache()

    def test_encrypt_decrypt_roundtrip(self):
        from utils.encryption import encrypt_access_token, decrypt_access_token

        token = "access-sandbox-8ab976e6-64bc-4b38-98f7-731e7a349970"
        encrypted = encrypt_access_token(token)

        assert encrypted != token
        assert token not in encrypted
        assert decrypt_access_token(encrypted) == token

    def test_explicit_key_overrides_environment(self):
        from utils.encryption import encrypt_access_token, decrypt_access_token, DecryptionError

        other_key = Fernet.generate_key().decode()
        encrypted = encrypt_access_token("access-sandbox-1234", key=other_key)

        assert decrypt_access_token(encrypted, key=other_key) == "access-sandbox-1234"
        with pytest.raises(DecryptionError):
            decrypt_access_token(encrypted)

    def test_encrypt_empty_token(self):
        from utils.encryption import encrypt_access_token, EncryptionError

        with pytest.raises(EncryptionError):
            encrypt_access_token("")

    def test_decrypt_corrupted_token(self):
        from utils.encryption import decrypt_access_token, DecryptionError

        with pytest.raises(DecryptionError):
            decrypt_access_token("not-a-fernet-token")

    def test_decrypt_empty_token(self):
        from utils.encryption import decrypt_access_token, DecryptionError

        with pytest.raises(DecryptionError):
            decrypt_access_token("")

    def test_missing_key(self):
        from utils.encryption import (
            encrypt_access_token, clear_fernet_cache, is_encryption_configured,
            KeyNotConfiguredError,
        )

        del os.environ['ENCRYPTION_KEY']
        clear_fernet_cache()

        assert is_encryption_configured() is False
        with pytest.raises(KeyNotConfiguredError):
            encrypt_access_token("access-sandbox-1234")

    def test_invalid_explicit_key(self):
        from utils.encryption import encrypt_access_token, KeyNotConfiguredError

        with pytest.raises(KeyNotConfiguredError):
            encrypt_access_token("access-sandbox-1234", key="too-short")

    def test_generated_key_is_usable(self):
        from utils.encryption import generate_encryption_key, encrypt_access_token, decrypt_access_token

        key = generate_encryption_key()
        assert decrypt_access_token(encrypt_access_token("tok", key=key), key=key) == "tok"


class TestMaskToken:
    """Test masking for logs."""

    def test_mask_keeps_last_four(self):
        from utils.encryption import mask_token

        assert mask_token("access-sandbox-1234") == "***************1234"

    def test_mask_short_token(self):
        from utils.encryption import mask_token

        assert mask_token("abcd") == "****"

    def test_mask_empty(self):
        from utils.encryption import mask_token

        assert mask_token("") == ""
        assert mask_token(None) == ""
