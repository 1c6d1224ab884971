"""Authenticated symmetric encryption helpers (AES-256-GCM)."""
from __future__ import annotations

import base64
import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

NONCE_SIZE = 12


def derive_key(material: str | bytes) -> bytes:
    """Stretch arbitrary key material to a 256-bit AES key."""

    if isinstance(material, str):
        material = material.encode("utf-8")
    return hashlib.sha256(material).digest()


class PayloadCipher:
    """AES-GCM with a fresh random nonce prefixed to every ciphertext."""

    def __init__(self, key_material: str | bytes) -> None:
        if not key_material:
            raise ValueError("Encryption key material must not be empty")
        self._aead = AESGCM(derive_key(key_material))

    def encrypt(self, data: bytes) -> bytes:
        nonce = os.urandom(NONCE_SIZE)
        return nonce + self._aead.encrypt(nonce, data, None)

    def decrypt(self, token: bytes) -> bytes:
        if len(token) <= NONCE_SIZE:
            raise ValueError("Ciphertext is too short")
        nonce, ciphertext = token[:NONCE_SIZE], token[NONCE_SIZE:]
        try:
            return self._aead.decrypt(nonce, ciphertext, None)
        except InvalidTag as exc:
            raise ValueError("Ciphertext failed authentication") from exc

    def encrypt_text(self, text: str) -> str:
        return base64.b64encode(self.encrypt(text.encode("utf-8"))).decode("ascii")

    def decrypt_text(self, token: str) -> str:
        return self.decrypt(base64.b64decode(token)).decode("utf-8")


__all__ = ["NONCE_SIZE", "PayloadCipher", "derive_key"]
