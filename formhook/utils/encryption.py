"""At-rest encryption for webhook auth material.

Bearer tokens, ``user:pass`` credentials and HMAC secrets are stored as
Fernet tokens. ``FORMHOOK_ENCRYPTION_KEY`` holds one key, or several
separated by commas during a rotation: the first key encrypts, every listed
key may decrypt.
"""

import logging
import os
from typing import List, Optional

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

logger = logging.getLogger(__name__)

ENCRYPTION_KEY_ENV = "FORMHOOK_ENCRYPTION_KEY"
FERNET_TOKEN_PREFIX = "gAAAAA"


def _parse_keys(raw: str) -> List[Fernet]:
    keys = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            keys.append(Fernet(part.encode("utf-8")))
        except (ValueError, TypeError) as e:
            raise ValueError(
                f"Invalid encryption key format: {e}. "
                "Each key must be a url-safe base64 Fernet key (44 characters)."
            )
    return keys


class EncryptionService:
    """Encrypts and decrypts webhook secrets.

    Generate a key with
    ``python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"``.
    """

    def __init__(self, encryption_key: Optional[str] = None):
        """
        Args:
            encryption_key: Key (or comma-separated keys, newest first);
                defaults to ``FORMHOOK_ENCRYPTION_KEY``

        Raises:
            ValueError: If no key is configured or a key is malformed
        """
        keys = _parse_keys(encryption_key or os.getenv(ENCRYPTION_KEY_ENV) or "")
        if not keys:
            raise ValueError(
                f"Encryption key not configured. Set the {ENCRYPTION_KEY_ENV} environment "
                "variable before storing webhook credentials."
            )
        self.cipher = MultiFernet(keys)
        self.key_count = len(keys)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt with the primary key. Empty strings are stored as-is.

        Raises:
            ValueError: If plaintext is None
        """
        if plaintext is None:
            raise ValueError("Cannot encrypt None value")
        if not plaintext:
            return ""
        return self.cipher.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt with any configured key.

        Raises:
            ValueError: If ciphertext is None, tampered with, or written
                under a key that is no longer configured
        """
        if ciphertext is None:
            raise ValueError("Cannot decrypt None value")
        if not ciphertext:
            return ""
        try:
            return self.cipher.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except InvalidToken:
            logger.error("Webhook secret could not be decrypted (unknown key or altered value)")
            raise ValueError(
                "Failed to decrypt webhook credentials. The encryption key may have "
                "changed; re-enter the auth token for this webhook."
            )

    def rotate(self, ciphertext: str) -> str:
        """Re-encrypt a stored value under the primary key."""
        if not ciphertext:
            return ciphertext
        try:
            return self.cipher.rotate(ciphertext.encode("utf-8")).decode("utf-8")
        except InvalidToken:
            raise ValueError("Cannot rotate a value that no configured key can decrypt")

    def is_encrypted(self, value: str) -> bool:
        return bool(value) and len(value) > len(FERNET_TOKEN_PREFIX) and value.startswith(
            FERNET_TOKEN_PREFIX
        )


_encryption_service: Optional[EncryptionService] = None


def get_encryption_service() -> EncryptionService:
    """Process-wide service, created on first use.

    Raises:
        ValueError: If no key is configured
    """
    global _encryption_service
    if _encryption_service is None:
        _encryption_service = EncryptionService()
        if _encryption_service.key_count > 1:
            logger.info(
                f"Encryption key rotation active ({_encryption_service.key_count} keys configured)"
            )
    return _encryption_service


def encrypt_value(plaintext: str) -> str:
    return get_encryption_service().encrypt(plaintext)


def decrypt_value(ciphertext: str) -> str:
    return get_encryption_service().decrypt(ciphertext)


def is_encryption_configured() -> bool:
    """Whether a key is present in the environment."""
    return bool((os.getenv(ENCRYPTION_KEY_ENV) or "").strip())
