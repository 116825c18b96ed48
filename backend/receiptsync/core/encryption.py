"""Symmetric encryption for stored OAuth credentials.

Ciphertext format: ``base64(iv || ciphertext_with_tag)`` using AES-256-GCM
with a 96-bit random IV.  The key is derived from ``ENCRYPTION_SECRET_KEY``
with PBKDF2-HMAC-SHA256 (fixed salt, 100k iterations) so values written
by other ReceiptSync components stay readable.
"""

from __future__ import annotations

import base64
import binascii
import os
from functools import lru_cache
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from receiptsync.core.config import settings
from receiptsync.core.errors import CredentialDecryptError

KDF_SALT = b"receiptsync-token-encryption"
KDF_ITERATIONS = 100_000
KEY_LENGTH = 32
IV_LENGTH = 12


@lru_cache(maxsize=8)
def derive_key(secret: str) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=KDF_SALT,
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(secret.encode("utf-8"))


class CredentialCipher:
    """Encrypts and decrypts credential strings with a configured secret."""

    def __init__(self, secret: Optional[str] = None) -> None:
        self._secret = secret or settings.ENCRYPTION_SECRET_KEY
        if not self._secret:
            raise ValueError("ENCRYPTION_SECRET_KEY is not configured")

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_LENGTH)
        ciphertext = AESGCM(derive_key(self._secret)).encrypt(iv, plaintext.encode("utf-8"), None)
        return base64.b64encode(iv + ciphertext).decode("ascii")

    def decrypt(self, token: str) -> str:
        try:
            combined = base64.b64decode(token, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise CredentialDecryptError("Stored credential is not valid base64") from exc
        if len(combined) <= IV_LENGTH:
            raise CredentialDecryptError("Stored credential is truncated")
        iv, ciphertext = combined[:IV_LENGTH], combined[IV_LENGTH:]
        try:
            plaintext = AESGCM(derive_key(self._secret)).decrypt(iv, ciphertext, None)
        except InvalidTag as exc:
            raise CredentialDecryptError("Stored credential failed authentication") from exc
        return plaintext.decode("utf-8")


def get_cipher() -> CredentialCipher:
    return CredentialCipher(settings.ENCRYPTION_SECRET_KEY)
