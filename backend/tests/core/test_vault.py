"""
LockBlip Ghost - Session Key Vault Tests
"""

import base64

import pytest

from lockblip.core.ghost.errors import DecryptionFailed
from lockblip.core.ghost.vault import NONCE_SIZE, SessionKeyVault


class TestSessionKeyVault:

    def test_generated_keys_are_distinct_256_bit(self):
        first = SessionKeyVault.generate_key()
        second = SessionKeyVault.generate_key()

        assert first != second
        assert len(base64.b64decode(first)) == 32

    def test_encrypt_then_decrypt(self):
        key = SessionKeyVault.generate_key()
        ciphertext = SessionKeyVault.encrypt(key, "hi Bob 👻")

        assert "hi Bob" not in ciphertext
        assert SessionKeyVault.decrypt(key, ciphertext) == "hi Bob 👻"

    def test_nonce_is_fresh_per_message(self):
        key = SessionKeyVault.generate_key()
        assert SessionKeyVault.encrypt(key, "same") != SessionKeyVault.encrypt(key, "same")

    def test_none_passes_through(self):
        key = SessionKeyVault.generate_key()
        assert SessionKeyVault.encrypt(key, None) is None
        assert SessionKeyVault.decrypt(key, None) is None

    def test_wrong_key_fails(self):
        ciphertext = SessionKeyVault.encrypt(SessionKeyVault.generate_key(), "secret")

        with pytest.raises(DecryptionFailed):
            SessionKeyVault.decrypt(SessionKeyVault.generate_key(), ciphertext)

    def test_tampered_payload_fails(self):
        key = SessionKeyVault.generate_key()
        blob = bytearray(base64.b64decode(SessionKeyVault.encrypt(key, "secret")))
        blob[NONCE_SIZE] ^= 0x01

        with pytest.raises(DecryptionFailed):
            SessionKeyVault.decrypt(key, base64.b64encode(bytes(blob)).decode())

    @pytest.mark.parametrize("ciphertext", ["not base64!", base64.b64encode(b"short").decode()])
    def test_malformed_payload_fails(self, ciphertext: str):
        with pytest.raises(DecryptionFailed):
            SessionKeyVault.decrypt(SessionKeyVault.generate_key(), ciphertext)

    def test_malformed_key_fails(self):
        with pytest.raises(DecryptionFailed):
            SessionKeyVault.encrypt(base64.b64encode(b"too short").decode(), "x")
