"""AES-256-GCM encryption of stored mailbox passwords."""

from __future__ import annotations

import base64
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import AuthError, ConfigurationError

_NONCE_BYTES = 12
_PREFIX = "aesgcm:"


class CredentialCipher:
    """Encrypts secrets as ``aesgcm:<urlsafe-b64(nonce || ciphertext)>``."""

    def __init__(self, key: bytes) -> None:
        if len(key) != 32:
            raise ConfigurationError("Encryption key must be exactly 32 bytes (AES-256)")
        self._aead = AESGCM(key)

    @classmethod
    def from_hex(cls, key_hex: str) -> CredentialCipher:
        try:
            key = bytes.fromhex(key_hex.strip())
        except ValueError as exc:
            raise ConfigurationError("Encryption key must be hex encoded") from exc
        return cls(key)

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(_NONCE_BYTES)
        ciphertext = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return _PREFIX + base64.urlsafe_b64encode(nonce + ciphertext).decode("ascii")

    def decrypt(self, token: str) -> str:
        """Decrypt *token*.

        A token that cannot be decrypted (rotated key, corrupted row) is an
        :class:`AuthError`: the only way out is for the user to re-enter
        the password.
        """
        if not token.startswith(_PREFIX):
            raise AuthError("Stored mailbox password has an unknown format; reconnect your inbox")
        try:
            blob = base64.urlsafe_b64decode(token[len(_PREFIX):].encode("ascii"))
            nonce, ciphertext = blob[:_NONCE_BYTES], blob[_NONCE_BYTES:]
            return self._aead.decrypt(nonce, ciphertext, None).decode("utf-8")
        except (InvalidTag, ValueError) as exc:
            raise AuthError("Stored mailbox password could not be decrypted; reconnect your inbox") from exc
