"""Cryptographic utilities for private key custody.

Uses Fernet (AES-128-CBC with HMAC-SHA256) for authenticated symmetric
encryption, so a wrong master key or tampered ciphertext fails loudly
instead of returning garbage.
"""

import base64
import hashlib
import logging
import os
from typing import Any, Optional, Union

from cryptography.fernet import Fernet, InvalidToken

from hotwallet.errors import DecryptionError

logger = logging.getLogger(__name__)


def generate_master_key() -> str:
    """Generate a new master encryption key.

    Returns:
        Base64-encoded 32-byte key suitable for Fernet
    """
    return Fernet.generate_key().decode()


def derive_key_from_password(password: str, salt: Optional[bytes] = None) -> tuple[str, bytes]:
    """Derive a Fernet key from a password using PBKDF2.

    Args:
        password: Operator-provided password
        salt: Optional salt (generated if not provided)

    Returns:
        Tuple of (base64-encoded key, salt)
    """
    if salt is None:
        salt = os.urandom(16)

    # PBKDF2 with SHA256, 100k iterations
    key = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode(),
        salt,
        100000,
        dklen=32,
    )

    fernet_key = base64.urlsafe_b64encode(key)
    return fernet_key.decode(), salt


class KeyEncryptor:
    """Encrypts and decrypts private keys using Fernet.

    Usage:
        encryptor = KeyEncryptor(master_key)
        token = encryptor.encrypt(private_key_bytes)
        key = encryptor.decrypt(token)  # bytearray, wipe after use
    """

    def __init__(self, master_key: str):
        """Initialize with master encryption key.

        Args:
            master_key: Base64-encoded Fernet key (32 bytes)
        """
        try:
            self._fernet = Fernet(master_key.encode())
        except (ValueError, TypeError) as e:
            raise DecryptionError(f"Invalid master key: {e}")

    def encrypt(self, plaintext: Union[bytes, bytearray, str]) -> str:
        """Encrypt key material.

        Returns:
            Base64-encoded Fernet token
        """
        if isinstance(plaintext, str):
            plaintext = plaintext.encode()
        return self._fernet.encrypt(bytes(plaintext)).decode()

    def decrypt(self, token: str) -> bytearray:
        """Decrypt key material into a mutable buffer the caller must wipe.

        Raises:
            DecryptionError: If decryption fails (wrong key or corrupted data)
        """
        try:
            return bytearray(self._fernet.decrypt(token.encode()))
        except InvalidToken:
            raise DecryptionError("Failed to decrypt key material (wrong master key or corrupted data)")

    def rotate(self, new_key: str, token: str) -> str:
        """Re-encrypt a token under a new master key."""
        plaintext = self.decrypt(token)
        try:
            return KeyEncryptor(new_key).encrypt(plaintext)
        finally:
            wipe_memory(plaintext)


def encrypt(plaintext: Union[bytes, bytearray, str], master_key: str) -> str:
    """Convenience function to encrypt key material with a master key."""
    return KeyEncryptor(master_key).encrypt(plaintext)


def decrypt(token: str, master_key: str) -> bytearray:
    """Convenience function to decrypt key material with a master key."""
    return KeyEncryptor(master_key).decrypt(token)


def wipe_memory(obj: Any) -> None:
    """Best-effort zeroisation of a structure holding key material.

    Mutable buffers are overwritten in place; containers are wiped
    recursively and then emptied. Immutable ``str``/``bytes`` values cannot
    be overwritten from Python and are only dropped from their container.
    """
    if isinstance(obj, bytearray):
        obj[:] = bytes(len(obj))
    elif isinstance(obj, memoryview):
        if not obj.readonly:
            obj[:] = bytes(obj.nbytes)
    elif isinstance(obj, dict):
        for value in obj.values():
            wipe_memory(value)
        obj.clear()
    elif isinstance(obj, (list, set)):
        for value in list(obj):
            wipe_memory(value)
        obj.clear()
