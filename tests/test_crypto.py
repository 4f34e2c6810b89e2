"""Tests for key encryption and memory wiping."""

import pytest

from hotwallet.crypto import (
    KeyEncryptor,
    decrypt,
    derive_key_from_password,
    encrypt,
    generate_master_key,
    wipe_memory,
)
from hotwallet.errors import DecryptionError


class TestKeyEncryptor:
    """Tests for Fernet-based key encryption."""

    def test_encrypt_decrypt(self):
        """Test that decrypting a token returns the original bytes."""
        key = generate_master_key()
        secret = bytes(range(32))

        token = encrypt(secret, key)

        assert token != secret.hex()
        assert bytes(decrypt(token, key)) == secret

    def test_decrypt_returns_bytearray(self):
        """Test that decrypted key material is a wipeable buffer."""
        encryptor = KeyEncryptor(generate_master_key())
        plaintext = encryptor.decrypt(encryptor.encrypt(b"\x01" * 32))

        assert isinstance(plaintext, bytearray)

    def test_wrong_key_fails(self):
        """Test that a wrong master key raises instead of returning garbage."""
        token = encrypt(b"secret key material", generate_master_key())

        with pytest.raises(DecryptionError):
            decrypt(token, generate_master_key())

    def test_tampered_token_fails(self):
        """Test that a modified token does not authenticate."""
        key = generate_master_key()
        token = encrypt(b"secret key material", key)
        tampered = token[:-4] + ("AAAA" if not token.endswith("AAAA") else "BBBB")

        with pytest.raises(DecryptionError):
            decrypt(tampered, key)

    def test_invalid_master_key(self):
        """Test that a malformed master key is rejected."""
        with pytest.raises(DecryptionError):
            KeyEncryptor("not-a-fernet-key")

    def test_rotate(self):
        """Test re-encryption under a new master key."""
        old_key, new_key = generate_master_key(), generate_master_key()
        token = encrypt(b"\x07" * 32, old_key)

        rotated = KeyEncryptor(old_key).rotate(new_key, token)

        assert bytes(decrypt(rotated, new_key)) == b"\x07" * 32
        with pytest.raises(DecryptionError):
            decrypt(rotated, old_key)

    def test_password_derived_key(self):
        """Test that the same password and salt derive the same key."""
        key1, salt = derive_key_from_password("correct horse battery staple")
        key2, _ = derive_key_from_password("correct horse battery staple", salt)

        assert key1 == key2
        assert bytes(decrypt(encrypt(b"data", key1), key2)) == b"data"


class TestWipeMemory:
    """Tests for best-effort zeroisation."""

    def test_wipe_bytearray(self):
        """Test that a bytearray is zeroed in place."""
        buffer = bytearray(b"\xff" * 32)
        wipe_memory(buffer)

        assert buffer == bytearray(32)

    def test_wipe_nested_structures(self):
        """Test that containers are wiped recursively and emptied."""
        inner = bytearray(b"\x01\x02\x03")
        data = {"key": inner, "list": [bytearray(b"\x04")]}

        wipe_memory(data)

        assert inner == bytearray(3)
        assert data == {}

    def test_wipe_ignores_immutables(self):
        """Test that immutable values are left alone without error."""
        wipe_memory(b"immutable")
        wipe_memory("immutable")
        wipe_memory(None)
