"""
Utils Package

Provides utility modules for:
- encryption: Field-level encryption for aggregator access tokens
"""

from .encryption import (
    encrypt_access_token,
    decrypt_access_token,
    mask_token,
    generate_encryption_key,
    is_encryption_configured,
    clear_fernet_cache,
    EncryptionError,
    DecryptionError,
    KeyNotConfiguredError,
)

__all__ = [
    'encrypt_access_token',
    'decrypt_access_token',
    'mask_token',
    'generate_encryption_key',
    'is_encryption_configured',
    'clear_fernet_cache',
    'EncryptionError',
    'DecryptionError',
    'KeyNotConfiguredError',
]
