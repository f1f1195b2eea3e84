"""
AES-GCM encryption for integration credentials at rest.

Storage format: IV (12 bytes) + ciphertext + auth tag (16 bytes). The
provider id is bound as associated data, so a blob copied onto a connection
for a different provider fails authentication.
"""

import json
import logging
import os
from functools import lru_cache
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..config import get_settings


logger = logging.getLogger(__name__)

IV_LENGTH = 12


class EncryptionError(Exception):
    """Raised when the key is unusable or a blob cannot be decrypted."""
    pass


class CredentialCipher:
    """
    Encrypts and decrypts credential payloads with AES-256-GCM.

    Args:
        master_key_hex: 64-character hex string (32 bytes)

    Raises:
        EncryptionError: If the key is missing or not 32 bytes
    """

    def __init__(self, master_key_hex: Optional[str]):
        if not master_key_hex:
            raise EncryptionError(
                "ENCRYPTION_MASTER_KEY is not set. "
                "Generate one with: python -c 'import os; print(os.urandom(32).hex())'"
            )

        try:
            key = bytes.fromhex(master_key_hex)
        except ValueError as e:
            raise EncryptionError(f"ENCRYPTION_MASTER_KEY must be a valid hex string: {e}")

        if len(key) != 32:
            raise EncryptionError(
                f"ENCRYPTION_MASTER_KEY must be 32 bytes (64 hex chars), got {len(key)} bytes"
            )

        self._aesgcm = AESGCM(key)

    def encrypt(self, provider_id: str, payload: Dict[str, Any]) -> bytes:
        plaintext = json.dumps(payload, sort_keys=True).encode("utf-8")
        iv = os.urandom(IV_LENGTH)
        return iv + self._aesgcm.encrypt(iv, plaintext, provider_id.encode("utf-8"))

    def decrypt(self, provider_id: str, encrypted: bytes) -> Dict[str, Any]:
        """
        Decrypt a credential blob stored for provider_id.

        Raises:
            EncryptionError: If the blob is truncated, tampered with, bound to
                another provider, or encrypted under a different key
        """
        if encrypted is None or len(encrypted) <= IV_LENGTH:
            raise EncryptionError("Encrypted data is too short (missing IV)")

        iv, ciphertext = encrypted[:IV_LENGTH], encrypted[IV_LENGTH:]
        try:
            plaintext = self._aesgcm.decrypt(iv, ciphertext, provider_id.encode("utf-8"))
        except InvalidTag:
            logger.error(
                "Credential decryption failed: authentication tag mismatch",
                extra={"provider_id": provider_id},
            )
            raise EncryptionError(
                "Decryption failed: data has been tampered with or wrong encryption key"
            )

        try:
            return json.loads(plaintext.decode("utf-8"))
        except json.JSONDecodeError:
            raise EncryptionError("Decryption failed: decrypted data is not valid JSON")


@lru_cache()
def get_credential_cipher() -> CredentialCipher:
    """Cipher keyed from settings (FastAPI dependency).

    Call get_credential_cipher.cache_clear() after changing the key.
    """
    return CredentialCipher(get_settings().ENCRYPTION_MASTER_KEY)
