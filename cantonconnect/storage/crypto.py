"""
Session encryption.

AES-256-GCM with a random 96-bit nonce per message. Ciphertext layout is
``base64(nonce || ciphertext+tag)``; keys are base64-encoded 32 bytes.
"""

from __future__ import annotations

import base64
import binascii
import secrets
from abc import ABC, abstractmethod

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

AES_KEY_SIZE = 32
AES_IV_SIZE = 12


class DecryptionError(Exception):
    """Ciphertext could not be authenticated or decoded."""


class CryptoProvider(ABC):
    """Encrypts values before they reach storage."""

    @abstractmethod
    def encrypt(self, plaintext: str, key: str, associated_data: bytes | None = None) -> str:
        pass

    @abstractmethod
    def decrypt(self, ciphertext: str, key: str, associated_data: bytes | None = None) -> str:
        """Raises DecryptionError on any failure."""
        pass

    @abstractmethod
    def generate_key(self) -> str:
        pass


def _decode_key(key: str) -> bytes:
    try:
        raw = base64.b64decode(key, validate=True)
    except (ValueError, binascii.Error) as e:
        raise DecryptionError("encryption key is not valid base64") from e
    if len(raw) != AES_KEY_SIZE:
        raise DecryptionError(f"encryption key must be {AES_KEY_SIZE} bytes, got {len(raw)}")
    return raw


class AesGcmCryptoProvider(CryptoProvider):
    def encrypt(self, plaintext: str, key: str, associated_data: bytes | None = None) -> str:
        aesgcm = AESGCM(_decode_key(key))
        nonce = secrets.token_bytes(AES_IV_SIZE)
        ciphertext = aesgcm.encrypt(nonce, plaintext.encode("utf-8"), associated_data)
        return base64.b64encode(nonce + ciphertext).decode("ascii")

    def decrypt(self, ciphertext: str, key: str, associated_data: bytes | None = None) -> str:
        aesgcm = AESGCM(_decode_key(key))
        try:
            blob = base64.b64decode(ciphertext, validate=True)
        except (ValueError, binascii.Error) as e:
            raise DecryptionError("ciphertext is not valid base64") from e
        if len(blob) <= AES_IV_SIZE:
            raise DecryptionError("ciphertext too short")

        nonce, body = blob[:AES_IV_SIZE], blob[AES_IV_SIZE:]
        try:
            plaintext = aesgcm.decrypt(nonce, body, associated_data)
        except InvalidTag as e:
            raise DecryptionError("authentication failed") from e
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError("plaintext is not UTF-8") from e

    def generate_key(self) -> str:
        return base64.b64encode(AESGCM.generate_key(bit_length=AES_KEY_SIZE * 8)).decode("ascii")
