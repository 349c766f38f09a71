"""Symmetric encryption for stored tenant credentials (BYOK keys).

Tenant API keys are stored Fernet-encrypted with an ``ENC:`` prefix so
encrypted and legacy plaintext values can be told apart.
"""

import structlog
from cryptography.fernet import Fernet, InvalidToken

from tollbooth.core.errors import RoutingError

logger = structlog.get_logger()

ENCRYPTION_PREFIX = "ENC:"


class CredentialDecryptionError(RoutingError):
    """Stored credential could not be decrypted (wrong key or corrupt token)."""


class CredentialCipher:
    """Encrypts and decrypts tenant credentials with a Fernet key.

    Args:
        key: urlsafe-base64 Fernet key (``Fernet.generate_key()``).

    Raises:
        ValueError: If the key is empty or malformed.
    """

    def __init__(self, key: str | bytes) -> None:
        if not key:
            raise ValueError("Credential encryption key must not be empty")
        self._fernet = Fernet(key)

    def encrypt(self, plain_text: str) -> str:
        """Encrypt a credential and return it with the ENC: prefix."""
        if plain_text.startswith(ENCRYPTION_PREFIX):
            return plain_text
        token = self._fernet.encrypt(plain_text.encode()).decode()
        return f"{ENCRYPTION_PREFIX}{token}"

    def decrypt(self, encrypted_text: str) -> str:
        """Decrypt an ENC:-prefixed credential.

        Raises:
            CredentialDecryptionError: If the value is not prefixed or the
                token does not verify under the configured key.
        """
        if not encrypted_text.startswith(ENCRYPTION_PREFIX):
            raise CredentialDecryptionError("Stored credential is not encrypted")
        token = encrypted_text[len(ENCRYPTION_PREFIX) :]
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as e:
            logger.error("credential_decryption_failed")
            raise CredentialDecryptionError(
                "Stored credential could not be decrypted"
            ) from e
