"""
Credentials module for integration OAuth configuration.

This module provides:
- Encrypted storage for client secrets and OAuth tokens
- Secret redaction for logs and error details

SECURITY:
- Secrets are encrypted at rest using INTEGRATION_SECRET_KEY
- No plaintext secrets outside process memory
- Secrets NEVER appear in logs or API responses

The refresh guard lives in integration_auth.credentials.refresh and is
imported from there directly (it depends on the OAuth engine).

Usage:
    from integration_auth.credentials import CredentialStore, SecretCipher

    cipher = SecretCipher.from_key_material(settings.secret_key)
    store = CredentialStore(session_factory, cipher, settings)
"""

from integration_auth.credentials.store import CredentialStore, SaveResult
from integration_auth.credentials.encryption import (
    SecretCipher,
    EncryptionError,
    DecryptionError,
    InvalidKeyError,
)
from integration_auth.credentials.redaction import (
    redact_credential_data,
    redact_credential_value,
    setup_credential_logging,
    REDACTED_VALUE,
)

__all__ = [
    # Store
    "CredentialStore",
    "SaveResult",
    # Encryption
    "SecretCipher",
    "EncryptionError",
    "DecryptionError",
    "InvalidKeyError",
    # Redaction
    "redact_credential_data",
    "redact_credential_value",
    "setup_credential_logging",
    "REDACTED_VALUE",
]
