"""
Session Key Vault - per-conversation symmetric encryption.

AES-256-GCM: stored ciphertext is base64(nonce (12) + ciphertext + tag (16)).
Keys are 32 random bytes, base64 encoded for storage.
"""

import base64
import binascii
import secrets
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from lockblip.core.ghost.errors import DecryptionFailed

NONCE_SIZE = 12
KEY_SIZE = 32


class SessionKeyVault:
    """Key generation and encrypt/decrypt keyed by a session secret."""

    @staticmethod
    def generate_key() -> str:
        """Fresh high-entropy key; never derived from user input."""
        return base64.b64encode(secrets.token_bytes(KEY_SIZE)).decode("ascii")

    @staticmethod
    def _load_key(key: str) -> AESGCM:
        try:
            raw = base64.b64decode(key, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecryptionFailed() from e
        if len(raw) != KEY_SIZE:
            raise DecryptionFailed()
        return AESGCM(raw)

    @classmethod
    def encrypt(cls, key: str, plaintext: Optional[str]) -> Optional[str]:
        """Encrypt text under the session key. None passes through."""
        if plaintext is None:
            return None
        aesgcm = cls._load_key(key)
        nonce = secrets.token_bytes(NONCE_SIZE)
        ciphertext = aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + ciphertext).decode("ascii")

    @classmethod
    def decrypt(cls, key: str, ciphertext: Optional[str]) -> Optional[str]:
        """
        Decrypt text produced by encrypt().

        Raises:
            DecryptionFailed: tampered payload or mismatched key
        """
        if ciphertext is None:
            return None
        aesgcm = cls._load_key(key)
        try:
            blob = base64.b64decode(ciphertext, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecryptionFailed() from e
        if len(blob) <= NONCE_SIZE:
            raise DecryptionFailed()
        try:
            plaintext = aesgcm.decrypt(blob[:NONCE_SIZE], blob[NONCE_SIZE:], None)
        except InvalidTag as e:
            raise DecryptionFailed() from e
        return plaintext.decode("utf-8")
