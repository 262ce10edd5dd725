"""
Data Encryption Module for Medbox.

Provides at-rest encryption for the blobs written to the persistence store
(adherence ledger months, medication list). Uses Fernet symmetric encryption
from the cryptography library.

The encryption key is derived from an environment variable (DATA_ENCRYPTION_KEY).
If not set, the cipher operates in passthrough mode with a warning.

Usage:
    from data_encryption import BlobCipher

    cipher = BlobCipher()
    stored = cipher.encrypt(b'{"records": []}')
    original = cipher.decrypt(stored)
"""

import base64
import hashlib
import os
import secrets
import warnings
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken


# ---------------------------------------------------------------------------
# Key Management
# ---------------------------------------------------------------------------

ENCRYPTION_KEY_ENV = "DATA_ENCRYPTION_KEY"
ENCRYPTED_PREFIX = b"enc:"


def derive_fernet(raw_key: str) -> Fernet:
    """Derive a valid Fernet instance from a user-provided secret.

    Fernet requires a 32-byte URL-safe base64-encoded key, so the secret is
    hashed with SHA-256 first.
    """
    derived = hashlib.sha256(raw_key.encode("utf-8")).digest()
    return Fernet(base64.urlsafe_b64encode(derived))


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

class BlobCipher:
    """Encrypts and decrypts persisted byte blobs."""

    def __init__(self, raw_key: Optional[str] = None):
        if raw_key is None:
            raw_key = os.getenv(ENCRYPTION_KEY_ENV, "")
        self._fernet = derive_fernet(raw_key) if raw_key else None
        if self._fernet is None:
            warnings.warn(
                f"{ENCRYPTION_KEY_ENV} not set. Adherence data will be stored in plain text. "
                f"Set {ENCRYPTION_KEY_ENV} in .env for production.",
                stacklevel=2,
            )

    @property
    def enabled(self) -> bool:
        return self._fernet is not None

    def encrypt(self, data: bytes) -> bytes:
        """
        Encrypt a blob for storage.

        If encryption is enabled, returns the Fernet token prefixed with
        'enc:' for identification. Otherwise returns the data unchanged.
        """
        if not data or self._fernet is None:
            return data
        return ENCRYPTED_PREFIX + self._fernet.encrypt(data)

    def decrypt(self, data: bytes) -> bytes:
        """
        Decrypt a previously encrypted blob.

        Blobs without the 'enc:' prefix are returned unchanged (plain-text
        data written before a key was configured stays readable).
        """
        if not data or not is_encrypted(data):
            return data
        if self._fernet is None:
            warnings.warn(
                "Encrypted data found but encryption is not enabled. "
                "Cannot decrypt. Returning raw value.",
                stacklevel=2,
            )
            return data
        try:
            return self._fernet.decrypt(data[len(ENCRYPTED_PREFIX):])
        except InvalidToken as e:
            warnings.warn(f"Decryption failed: {e!r}. Returning raw value.", stacklevel=2)
            return data


def is_encrypted(data: bytes) -> bool:
    """Check if a blob is encrypted (has the 'enc:' prefix)."""
    return isinstance(data, (bytes, bytearray)) and bytes(data).startswith(ENCRYPTED_PREFIX)


def generate_key() -> str:
    """Generate a new random encryption key suitable for DATA_ENCRYPTION_KEY."""
    return secrets.token_urlsafe(32)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import sys

    if len(sys.argv) > 1 and sys.argv[1] == "generate-key":
        key = generate_key()
        print(f"\nGenerated encryption key:")
        print(f"  {key}\n")
        print(f"Add to your .env file:")
        print(f"  {ENCRYPTION_KEY_ENV}={key}")
    elif len(sys.argv) > 1 and sys.argv[1] == "status":
        configured = bool(os.getenv(ENCRYPTION_KEY_ENV, ""))
        print(f"Key configured: {'yes' if configured else 'NO'}")
    else:
        print("Usage:")
        print("  python data_encryption.py generate-key   # Generate a new encryption key")
        print("  python data_encryption.py status          # Check encryption status")
