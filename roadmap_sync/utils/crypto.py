"""
Fernet symmetric encryption for stored integration credentials.

`encrypt_secret` / `decrypt_secret` wrap the Source System API token and the
Target System personal access token kept on each Workspace row.  Keyed by the
ENCRYPTION_KEY environment variable.

  WARNING: ENCRYPTION_KEY must be a 32-byte URL-safe base64 key generated via:
    python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
  Store it in the environment; never commit it.
"""

import os

from cryptography.fernet import Fernet


def _get_fernet() -> Fernet:
    """Return a Fernet instance keyed by the ENCRYPTION_KEY env var.

    Raises RuntimeError if ENCRYPTION_KEY is not set, so a token is never
    stored in plaintext by accident.
    """
    raw_key = os.getenv("ENCRYPTION_KEY")
    if not raw_key:
        raise RuntimeError(
            "ENCRYPTION_KEY environment variable is not set. "
            "Generate one with: python -c \""
            "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
        )
    return Fernet(raw_key.encode() if isinstance(raw_key, str) else raw_key)


def encrypt_secret(plaintext: str) -> str:
    """Encrypt a credential and return URL-safe base64 ciphertext.

    Args:
        plaintext: The token to encrypt.

    Returns:
        Fernet ciphertext, safe for TEXT database columns.

    Raises:
        RuntimeError: If ENCRYPTION_KEY is not set.
    """
    return _get_fernet().encrypt(plaintext.encode("utf-8")).decode("utf-8")


def decrypt_secret(ciphertext: str) -> str:
    """Decrypt a value previously returned by encrypt_secret().

    Raises:
        RuntimeError: If ENCRYPTION_KEY is not set.
        cryptography.fernet.InvalidToken: If ciphertext is tampered or
            encrypted with a different key.
    """
    return _get_fernet().decrypt(ciphertext.encode("utf-8")).decode("utf-8")
