"""
Credential encryption for integration secrets at rest.

Blob layout (base64): salt(32) || iv(16) || auth tag(16) || ciphertext
Key derivation: PBKDF2-HMAC-SHA256, 100000 iterations, 32-byte key (AES-256-GCM).
"""

import base64
import json
import os
from typing import Any, Optional

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from issue_sync.core.logging_config import get_logger

logger = get_logger(__name__)

DEVELOPMENT_KEY = "development-key-do-not-use-in-production-please!"


class EncryptionService:
    """Symmetric authenticated encryption for stored credentials."""

    ITERATIONS = 100000
    KEY_LENGTH = 32
    SALT_LENGTH = 32
    IV_LENGTH = 16
    TAG_LENGTH = 16

    @staticmethod
    def get_master_key() -> str:
        """Returns ENCRYPTION_KEY, or the insecure development key when unset."""
        key = os.environ.get("ENCRYPTION_KEY")
        if not key:
            logger.warning("⚠️ ENCRYPTION_KEY not set - using insecure development key")
            return DEVELOPMENT_KEY
        return key

    @classmethod
    def _derive_key(cls, master_key: str, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=cls.KEY_LENGTH,
            salt=salt,
            iterations=cls.ITERATIONS,
        )
        return kdf.derive(master_key.encode('utf-8'))

    @classmethod
    def encrypt(cls, text: str, key: Optional[str] = None) -> str:
        """Encrypts text and returns the base64 blob."""
        master_key = key or cls.get_master_key()
        salt = os.urandom(cls.SALT_LENGTH)
        iv = os.urandom(cls.IV_LENGTH)

        # AESGCM returns ciphertext with the tag appended
        sealed = AESGCM(cls._derive_key(master_key, salt)).encrypt(iv, text.encode('utf-8'), None)
        ciphertext, tag = sealed[:-cls.TAG_LENGTH], sealed[-cls.TAG_LENGTH:]

        return base64.b64encode(salt + iv + tag + ciphertext).decode('ascii')

    @classmethod
    def decrypt(cls, encrypted: str, key: Optional[str] = None) -> str:
        """
        Decrypts a base64 blob produced by encrypt().

        Raises:
            cryptography.exceptions.InvalidTag: wrong key or tampered blob
            ValueError: blob too short to contain salt, iv and tag
        """
        master_key = key or cls.get_master_key()
        raw = base64.b64decode(encrypted)

        header = cls.SALT_LENGTH + cls.IV_LENGTH + cls.TAG_LENGTH
        if len(raw) < header:
            raise ValueError("Encrypted data is too short")

        salt = raw[:cls.SALT_LENGTH]
        iv = raw[cls.SALT_LENGTH:cls.SALT_LENGTH + cls.IV_LENGTH]
        tag = raw[cls.SALT_LENGTH + cls.IV_LENGTH:header]
        ciphertext = raw[header:]

        plaintext = AESGCM(cls._derive_key(master_key, salt)).decrypt(iv, ciphertext + tag, None)
        return plaintext.decode('utf-8')

    @classmethod
    def encrypt_object(cls, obj: Any, key: Optional[str] = None) -> str:
        """JSON-serializes obj and encrypts it."""
        return cls.encrypt(json.dumps(obj), key)

    @classmethod
    def decrypt_object(cls, encrypted: str, key: Optional[str] = None) -> Any:
        """Decrypts a blob and parses the JSON payload."""
        return json.loads(cls.decrypt(encrypted, key))
