"""
Secret cipher for integration credentials.

Implements AES-256-GCM encryption for client secrets and OAuth tokens at rest.

SECURITY:
- Uses AES-256-GCM for authenticated encryption
- Each encryption uses a unique random 96-bit nonce
- Key is sourced once from configuration and never logged
- Tampered or foreign ciphertext fails with DecryptionError

Ciphertext format (all hex):
    <nonce>:<auth_tag>:<ciphertext>

Usage:
    from integration_auth.credentials.encryption import SecretCipher

    cipher = SecretCipher.from_key_material(os.environ["INTEGRATION_SECRET_KEY"])
    stored = cipher.encrypt(client_secret)
    plaintext = cipher.decrypt(stored)
"""

import base64
import binascii
import logging
import secrets
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)


# AES-GCM constants
NONCE_SIZE = 12  # 96 bits, recommended for AES-GCM
TAG_SIZE = 16    # 128 bits, standard for AES-GCM
KEY_SIZE = 32    # 256 bits for AES-256

# Key derivation for passphrase-style key material
KDF_SALT = b"integration-salt"
KDF_ITERATIONS = 100_000

SEPARATOR = ":"


class EncryptionError(Exception):
    """Raised when encryption fails."""
    pass


class DecryptionError(Exception):
    """Raised when ciphertext is malformed, tampered, or from another key."""
    pass


class InvalidKeyError(Exception):
    """Raised when encryption key is missing or unusable."""
    pass


def derive_key_from_passphrase(passphrase: str) -> bytes:
    """
    Derive a 256-bit key from passphrase-style key material.

    Uses PBKDF2-SHA512 with a fixed application salt so the same
    passphrase always yields the same key across restarts.
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA512(),
        length=KEY_SIZE,
        salt=KDF_SALT,
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def decode_key_material(key_material: str) -> bytes:
    """
    Turn configured key material into a 32-byte key.

    Supports:
    - Base64 encoding of 32 bytes
    - Hex encoding of 32 bytes
    - Raw UTF-8 (if exactly 32 bytes)
    - Any other string, stretched with PBKDF2
    """
    try:
        decoded = base64.b64decode(key_material, validate=True)
        if len(decoded) == KEY_SIZE:
            return decoded
    except (binascii.Error, ValueError):
        pass

    try:
        decoded = bytes.fromhex(key_material)
        if len(decoded) == KEY_SIZE:
            return decoded
    except ValueError:
        pass

    raw = key_material.encode("utf-8")
    if len(raw) == KEY_SIZE:
        return raw

    return derive_key_from_passphrase(key_material)


class SecretCipher:
    """
    AES-256-GCM cipher for secrets stored by the credential store.

    SECURITY:
    - Key must be 32 bytes (256 bits)
    - Never reuse nonces with the same key
    - Store key securely (never in code or logs)
    """

    def __init__(self, key: bytes):
        if not key:
            raise InvalidKeyError("Encryption key is required")
        if len(key) != KEY_SIZE:
            raise InvalidKeyError(
                f"Encryption key must be {KEY_SIZE} bytes, got {len(key)}"
            )
        self._aesgcm = AESGCM(key)

    @classmethod
    def from_key_material(cls, key_material: Optional[str]) -> "SecretCipher":
        """
        Build a cipher from configured key material.

        Raises:
            InvalidKeyError: If no key material is configured
        """
        if not key_material:
            raise InvalidKeyError(
                "INTEGRATION_SECRET_KEY environment variable is required for credential storage"
            )
        return cls(decode_key_material(key_material))

    @staticmethod
    def generate_key_string() -> str:
        """Generate a new random encryption key as base64 string."""
        return base64.b64encode(secrets.token_bytes(KEY_SIZE)).decode("utf-8")

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a secret for storage.

        Args:
            plaintext: Client secret or token (never logged)

        Returns:
            "<nonce>:<tag>:<ciphertext>" hex string

        Raises:
            EncryptionError: If plaintext is empty or encryption fails
        """
        if not plaintext:
            raise EncryptionError("Cannot encrypt empty value")

        nonce = secrets.token_bytes(NONCE_SIZE)
        try:
            # AESGCM.encrypt returns ciphertext + tag concatenated
            sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        except Exception as e:
            logger.error(
                "Secret encryption failed",
                extra={"operation": "encrypt", "error_type": type(e).__name__}
            )
            raise EncryptionError("Failed to encrypt value") from e

        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        return SEPARATOR.join((nonce.hex(), tag.hex(), ciphertext.hex()))

    def decrypt(self, stored: str) -> str:
        """
        Decrypt a value produced by encrypt().

        Returns:
            Decrypted plaintext (handle with care!)

        Raises:
            DecryptionError: If the value is malformed or fails authentication
        """
        if not stored:
            raise DecryptionError("Cannot decrypt empty value")

        parts = stored.split(SEPARATOR)
        if len(parts) != 3:
            raise DecryptionError("Invalid ciphertext format")

        try:
            nonce, tag, ciphertext = (bytes.fromhex(p) for p in parts)
        except ValueError as e:
            raise DecryptionError("Invalid ciphertext encoding") from e

        if len(nonce) != NONCE_SIZE or len(tag) != TAG_SIZE:
            raise DecryptionError("Invalid ciphertext format")

        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as e:
            logger.warning(
                "Secret decryption failed",
                extra={"operation": "decrypt", "error_type": "InvalidTag"}
            )
            raise DecryptionError(
                "Failed to decrypt value. Data may be corrupted or encryption key changed."
            ) from e

        return plaintext.decode("utf-8")
