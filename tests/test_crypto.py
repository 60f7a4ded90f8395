"""Tests for mailbox_sync.crypto."""

from __future__ import annotations

import base64

import pytest

from mailbox_sync.crypto import CredentialCipher
from mailbox_sync.errors import AuthError, ConfigurationError

from tests.conftest import KEY_HEX


class TestCredentialCipher:
    def test_round_trip(self, cipher: CredentialCipher):
        token = cipher.encrypt("hunter2")
        assert token.startswith("aesgcm:")
        assert "hunter2" not in token
        assert cipher.decrypt(token) == "hunter2"

    def test_nonce_is_random(self, cipher: CredentialCipher):
        assert cipher.encrypt("same") != cipher.encrypt("same")

    def test_wrong_key(self, cipher: CredentialCipher):
        token = cipher.encrypt("hunter2")
        other = CredentialCipher(bytes(32))
        with pytest.raises(AuthError, match="reconnect"):
            other.decrypt(token)

    def test_tampered_token(self, cipher: CredentialCipher):
        token = cipher.encrypt("hunter2")
        blob = bytearray(base64.urlsafe_b64decode(token[len("aesgcm:"):]))
        blob[-1] ^= 0x01
        tampered = "aesgcm:" + base64.urlsafe_b64encode(bytes(blob)).decode("ascii")
        with pytest.raises(AuthError):
            cipher.decrypt(tampered)

    def test_unknown_format(self, cipher: CredentialCipher):
        with pytest.raises(AuthError):
            cipher.decrypt("plaintext-password")

    @pytest.mark.parametrize("key_hex", ["zz" * 32, "00" * 16, ""])
    def test_bad_keys(self, key_hex):
        with pytest.raises(ConfigurationError):
            CredentialCipher.from_hex(key_hex)

    def test_from_hex(self):
        assert CredentialCipher.from_hex(f"  {KEY_HEX}\n").decrypt(CredentialCipher.from_hex(KEY_HEX).encrypt("x")) == "x"
