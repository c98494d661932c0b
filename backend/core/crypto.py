"""
Encryption utilities for secrets stored at rest.

Webhook signing secrets and RSA private keys are Fernet-encrypted before they
reach the database and decrypted only when a signature has to be produced.
Unlike a best-effort cache, these values are never written in plaintext: a
missing or invalid ENCRYPTION_KEY is a hard error.
"""

import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

log = logging.getLogger("rsl.crypto")


class SecretBoxError(RuntimeError):
    """Encryption is not configured or a stored value cannot be decrypted."""


def generate_key() -> str:
    """Generate a new encryption key. Run once and save to .env."""
    return Fernet.generate_key().decode()


class SecretBox:
    """Fernet wrapper bound to one key."""

    def __init__(self, key: Optional[str]):
        if not key:
            self._fernet = None
            return
        try:
            self._fernet = Fernet(key.encode())
        except (ValueError, TypeError):
            log.error("ENCRYPTION_KEY is set but invalid — cannot initialize Fernet")
            self._fernet = None

    @property
    def configured(self) -> bool:
        return self._fernet is not None

    def _require(self) -> Fernet:
        if self._fernet is None:
            log.error("ENCRYPTION_KEY not configured — refusing to store plaintext secret")
            raise SecretBoxError(
                "ENCRYPTION_KEY is not configured. Cannot store sensitive data without encryption. "
                "Generate a key with: python -c \"from cryptography.fernet import Fernet; "
                "print(Fernet.generate_key().decode())\""
            )
        return self._fernet

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a string. Returns base64-encoded ciphertext."""
        return self._require().encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a string produced by encrypt()."""
        try:
            return self._require().decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            log.error("Stored secret could not be decrypted — was ENCRYPTION_KEY rotated?")
            raise SecretBoxError("Stored secret could not be decrypted") from None


if __name__ == "__main__":
    print("New encryption key:")
    print(generate_key())
    print("\nAdd this to your .env file as:")
    print("ENCRYPTION_KEY=<key>")
