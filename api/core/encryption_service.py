"""
Encryption of private keys stored in the database.

Certificate and ACME account keys are written through this service.
Uses Fernet (AES-128-CBC + HMAC-SHA256) with a PBKDF2-derived key; when no
passphrase is configured the service passes PEM text through unchanged.
"""

import base64
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from config import settings

logger = logging.getLogger(__name__)

# Fernet tokens always start with this (version byte 0x80, base64)
ENCRYPTED_PREFIX = "gAAAAA"

KDF_SALT = b"certflow-encryption-salt-v1"
KDF_ITERATIONS = 480000


class KeyDecryptionError(ValueError):
    """Stored key material could not be decrypted with the configured passphrase."""


class EncryptionService:
    """
    Encrypts private-key PEM text before it reaches the database.

    Rows written before encryption was enabled stay readable: values
    without the Fernet prefix are returned as-is on read.
    """

    def __init__(self, passphrase: Optional[str] = None, enabled: Optional[bool] = None):
        if enabled is None:
            enabled = settings.encrypt_private_keys
        if passphrase is None:
            passphrase = settings.private_key_encryption_key

        self._fernet: Optional[Fernet] = None
        if enabled and not passphrase:
            logger.warning(
                "ENCRYPT_PRIVATE_KEYS is true but PRIVATE_KEY_ENCRYPTION_KEY is not set. "
                "Private keys will be stored in plaintext."
            )
        elif enabled:
            self._fernet = Fernet(_derive_key(passphrase))
            logger.info("Private key encryption enabled")

    @property
    def enabled(self) -> bool:
        return self._fernet is not None

    @staticmethod
    def is_encrypted(data: Optional[str]) -> bool:
        return bool(data) and data.startswith(ENCRYPTED_PREFIX)

    def encrypt_key(self, pem: Optional[str]) -> Optional[str]:
        """Encrypt a PEM private key for storage."""
        if pem is None or not self.enabled or self.is_encrypted(pem):
            return pem
        return self._fernet.encrypt(pem.encode("utf-8")).decode("utf-8")

    def decrypt_key(self, data: Optional[str]) -> Optional[str]:
        """Return the PEM text of a stored private key."""
        if data is None or not self.is_encrypted(data):
            return data

        if not self.enabled:
            raise KeyDecryptionError(
                "Private key is encrypted but encryption is not configured. "
                "Set ENCRYPT_PRIVATE_KEYS and PRIVATE_KEY_ENCRYPTION_KEY."
            )

        try:
            return self._fernet.decrypt(data.encode("utf-8")).decode("utf-8")
        except InvalidToken:
            raise KeyDecryptionError(
                "Failed to decrypt private key. The encryption key may have changed. "
                "Ensure PRIVATE_KEY_ENCRYPTION_KEY matches the key used during encryption."
            )


def _derive_key(passphrase: str) -> bytes:
    # Fixed salt: the passphrase is per-installation and this protects data at rest
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=KDF_SALT,
        iterations=KDF_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(passphrase.encode("utf-8")))


# Singleton instance
_encryption_service: Optional[EncryptionService] = None


def get_encryption_service() -> EncryptionService:
    """Get the global encryption service instance."""
    global _encryption_service
    if _encryption_service is None:
        _encryption_service = EncryptionService()
    return _encryption_service
