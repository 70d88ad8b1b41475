"""Encryption at rest and masking for pool secrets."""

from typing import Optional

from cryptography.fernet import Fernet, InvalidToken


ENCRYPTED_PREFIX = "fernet:"


class SecretCipher:
    """
    Encrypts credential secrets with Fernet when a key is configured.

    Without a key secrets are stored as given, which keeps local
    development setups working with a plain `.env`.
    """

    def __init__(self, key: Optional[str] = None):
        self._fernet = Fernet(key.encode("utf-8")) if key else None

    @property
    def enabled(self) -> bool:
        return self._fernet is not None

    def encrypt(self, secret: str) -> str:
        if not self._fernet:
            return secret
        token = self._fernet.encrypt(secret.encode("utf-8")).decode("utf-8")
        return f"{ENCRYPTED_PREFIX}{token}"

    def decrypt(self, stored: str) -> str:
        if not stored.startswith(ENCRYPTED_PREFIX):
            return stored
        if not self._fernet:
            raise ValueError("Stored secret is encrypted but CREDENTIAL_ENCRYPTION_KEY is not set")
        try:
            return self._fernet.decrypt(stored[len(ENCRYPTED_PREFIX):].encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError("Stored secret cannot be decrypted with the configured key") from exc


def generate_key() -> str:
    """Create a new key suitable for CREDENTIAL_ENCRYPTION_KEY."""
    return Fernet.generate_key().decode("utf-8")


def mask_secret(secret: Optional[str]) -> str:
    """Show only the last four characters of a secret."""
    if not secret or len(secret) <= 4:
        return "****"
    return f"****-{secret[-4:]}"
