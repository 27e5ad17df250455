"""
Encryption utilities for stored credentials (SSH passwords, database
passwords, S3 secret keys, SFTP destination passwords).

Uses Fernet symmetric encryption with a key derived from a configured
password and salt.
"""

import os
import base64
from typing import Optional, Union

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


class SecretDecryptionError(Exception):
    """Raised when a stored secret cannot be decrypted."""
    pass


class CryptoManager:
    """Encrypts and decrypts stored credentials."""

    def __init__(self):
        self._fernet = None
        self._salt = None

    def initialize(self, password: str, salt: Union[bytes, str, None] = None) -> bytes:
        """
        Derive the encryption key.

        Args:
            password: Password to derive the key from
            salt: Raw bytes, or a urlsafe base64 string as stored in configuration.
                  A new 16-byte salt is generated when omitted.

        Returns:
            The salt used

        Raises:
            ValueError: If password is empty or salt cannot be decoded
        """
        if not password:
            raise ValueError("An encryption password is required")

        if salt is None:
            salt = os.urandom(16)
        elif isinstance(salt, str):
            try:
                salt = base64.urlsafe_b64decode(salt.encode())
            except (ValueError, TypeError) as e:
                raise ValueError(f"Invalid encryption salt: {e}")

        self._salt = salt

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=480000,
        )
        key = base64.urlsafe_b64encode(kdf.derive(password.encode()))

        self._fernet = Fernet(key)
        return salt

    @property
    def is_initialized(self) -> bool:
        return self._fernet is not None

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a string for storage.

        Raises:
            RuntimeError: If crypto manager not initialized
        """
        if not self._fernet:
            raise RuntimeError("CryptoManager not initialized. Call initialize() first.")

        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, token: str) -> str:
        """
        Decrypt a stored string.

        Raises:
            SecretDecryptionError: If not initialized or the token is invalid
        """
        if not self._fernet:
            raise SecretDecryptionError(
                "Credential store is locked. Set ENCRYPTION_PASSWORD and ENCRYPTION_SALT to decrypt stored secrets."
            )

        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken:
            raise SecretDecryptionError("Stored secret could not be decrypted with the configured key")

    def decrypt_optional(self, token: Optional[str]) -> Optional[str]:
        """Decrypt a nullable column value."""
        if not token:
            return None
        return self.decrypt(token)


# Global instance, unlocked by the app factory
crypto_manager = CryptoManager()
