"""Passphrase-based protection of state artifacts.

Encrypted values are stored as text tagged with ``ENCRYPTED:`` so they can be
told apart from plaintext. The payload is the base64 encoding of
``salt || nonce || ciphertext`` where the key is derived from the passphrase
with PBKDF2-HMAC-SHA256 and the data is sealed with AES-256-GCM.
"""

from __future__ import annotations

import base64
import binascii
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import DecryptionError, EncryptionError

ENCRYPTED_MARKER = "ENCRYPTED:"
SALT_SIZE = 16
NONCE_SIZE = 12
KDF_ITERATIONS = 200_000


def is_encrypted(text: str) -> bool:
    """Check whether a stored value carries the encryption marker."""
    return isinstance(text, str) and text.startswith(ENCRYPTED_MARKER)


class Encryptor:
    """Interface for turning bytes into tagged blobs and back."""

    def encrypt(self, data: bytes, passphrase: str) -> str:
        raise NotImplementedError

    def decrypt(self, blob: str, passphrase: str) -> bytes:
        raise NotImplementedError


class AesGcmEncryptor(Encryptor):
    """AES-256-GCM with a PBKDF2 key derived from the passphrase."""

    def __init__(self, iterations: int = KDF_ITERATIONS):
        self.iterations = iterations

    def _derive_key(self, passphrase: str, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=self.iterations,
        )
        return kdf.derive(passphrase.encode("utf-8"))

    def encrypt(self, data: bytes, passphrase: str) -> str:
        if not passphrase:
            raise EncryptionError("A passphrase is required to encrypt state")
        salt = os.urandom(SALT_SIZE)
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = AESGCM(self._derive_key(passphrase, salt)).encrypt(nonce, data, None)
        payload = base64.b64encode(salt + nonce + ciphertext).decode("ascii")
        return ENCRYPTED_MARKER + payload

    def decrypt(self, blob: str, passphrase: str) -> bytes:
        if not passphrase:
            raise DecryptionError("A passphrase is required to decrypt state")
        if not is_encrypted(blob):
            raise DecryptionError("Value is not tagged as encrypted")
        try:
            raw = base64.b64decode(blob[len(ENCRYPTED_MARKER) :].strip(), validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecryptionError(f"Encrypted payload is not valid base64: {e}") from e
        if len(raw) <= SALT_SIZE + NONCE_SIZE:
            raise DecryptionError("Encrypted payload is truncated")

        salt = raw[:SALT_SIZE]
        nonce = raw[SALT_SIZE : SALT_SIZE + NONCE_SIZE]
        ciphertext = raw[SALT_SIZE + NONCE_SIZE :]
        try:
            return AESGCM(self._derive_key(passphrase, salt)).decrypt(nonce, ciphertext, None)
        except InvalidTag as e:
            raise DecryptionError("Failed to decrypt state: wrong passphrase or corrupt data") from e


default_encryptor = AesGcmEncryptor()


def protect(data: bytes, passphrase: str, encryptor: Optional[Encryptor] = None) -> str:
    """Encrypt bytes into a tagged string."""
    return (encryptor or default_encryptor).encrypt(data, passphrase)


def unprotect(blob: str, passphrase: str, encryptor: Optional[Encryptor] = None) -> bytes:
    """Decrypt a tagged string back into bytes.

    Raises:
        DecryptionError: On a passphrase mismatch or corrupted payload.
    """
    return (encryptor or default_encryptor).decrypt(blob, passphrase)
