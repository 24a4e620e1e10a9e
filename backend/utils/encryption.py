"""
Encryption Utilities for Aggregator Credentials

Provides field-level encryption for the access tokens of linked bank
connections. Uses Fernet symmetric encryption (AES-128-CBC with HMAC).

Environment Variables:
    ENCRYPTION_KEY: Base64-encoded 32-byte key for Fernet encryption
                    Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"

Usage:
    from utils.encryption import encrypt_access_token, decrypt_access_token, mask_token

    # Encrypt for storage
    encrypted = encrypt_access_token("access-sandbox-1234")

    # Decrypt right before calling the aggregator
    plaintext = decrypt_access_token(encrypted)

    # Mask for logs
    masked = mask_token("access-sandbox-1234")  # Returns "***************1234"

Security Notes:
    - Never log plaintext access tokens
    - Encryption key must be stored securely (env var, secrets manager)
"""

import os
import logging
from typing import Optional
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

# Environment variable name for encryption key
ENCRYPTION_KEY_ENV = "ENCRYPTION_KEY"


class EncryptionError(Exception):
    """Base exception for encryption errors"""
    pass


class KeyNotConfiguredError(EncryptionError):
    """Raised when encryption key is not configured"""
    pass


class DecryptionError(EncryptionError):
    """Raised when decryption fails"""
    pass


@lru_cache(maxsize=1)
def _get_fernet() -> Optional[Fernet]:
    """
    Get Fernet instance with the key from the environment.
    Cached for performance.

    Returns:
        Fernet instance or None if not configured
    """
    key = os.environ.get(ENCRYPTION_KEY_ENV)

    if not key:
        logger.warning(f"{ENCRYPTION_KEY_ENV} not configured - token encryption disabled")
        return None

    try:
        return Fernet(key.encode() if isinstance(key, str) else key)
    except Exception as e:
        logger.error(f"Invalid encryption key format: {e}")
        return None


def _resolve_fernet(key: Optional[str]) -> Optional[Fernet]:
    if key:
        try:
            return Fernet(key.encode())
        except Exception as e:
            raise KeyNotConfiguredError(f"Invalid encryption key format: {e}")
    return _get_fernet()


def clear_fernet_cache():
    """Forget the cached key (tests and key rotation)."""
    _get_fernet.cache_clear()


def is_encryption_configured() -> bool:
    """Check if encryption is properly configured."""
    return _get_fernet() is not None


def encrypt_access_token(plaintext: str, key: Optional[str] = None) -> str:
    """
    Encrypt an aggregator access token for storage.

    Args:
        plaintext: The access token
        key: Fernet key; falls back to ENCRYPTION_KEY

    Raises:
        KeyNotConfiguredError: If no key is available
        EncryptionError: If encryption fails
    """
    if not plaintext:
        raise EncryptionError("Access token is empty")

    fernet = _resolve_fernet(key)
    if not fernet:
        raise KeyNotConfiguredError("Encryption key not configured - cannot store access token")

    try:
        return fernet.encrypt(plaintext.encode('utf-8')).decode('utf-8')
    except Exception as e:
        logger.error(f"Access token encryption failed: {e}")
        raise EncryptionError(f"Failed to encrypt access token: {e}")


def decrypt_access_token(ciphertext: str, key: Optional[str] = None) -> str:
    """
    Decrypt a stored access token.

    Raises:
        DecryptionError: If the ciphertext is empty, corrupted or from another key
        KeyNotConfiguredError: If encryption key not configured
    """
    if not ciphertext:
        raise DecryptionError("Stored access token is empty")

    fernet = _resolve_fernet(key)
    if not fernet:
        raise KeyNotConfiguredError("Encryption key not configured - cannot decrypt access token")

    try:
        return fernet.decrypt(ciphertext.encode('utf-8')).decode('utf-8')
    except InvalidToken:
        logger.error("Access token decryption failed - invalid token or wrong key")
        raise DecryptionError("Invalid encryption token - data may be corrupted or key mismatch")


def mask_token(token: str, visible_chars: int = 4) -> str:
    """
    Mask a secret for display purposes.

    Returns:
        Masked string (e.g., "***************1234")
    """
    if not token:
        return ""

    if len(token) <= visible_chars:
        return "*" * len(token)

    return "*" * (len(token) - visible_chars) + token[-visible_chars:]


def generate_encryption_key() -> str:
    """
    Generate a new Fernet encryption key.

    Usage:
        key = generate_encryption_key()
        # Store in ENCRYPTION_KEY environment variable
    """
    return Fernet.generate_key().decode('utf-8')
