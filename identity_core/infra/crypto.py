from __future__ import annotations

import base64
import binascii
import hashlib
import os
from functools import lru_cache

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

OAUTH_ENCRYPTION_KEY = os.getenv("OAUTH_ENCRYPTION_KEY", "")
DEV_KEY_SEED = "dev-oauth-key-change-me"
NONCE_SIZE = 12
MASK = "********"


class CryptoError(ValueError):
    pass


def load_key(key_b64: str) -> bytes:
    """Decode a base64 AES-256 key; an empty value derives a dev-only key."""
    if not key_b64:
        return hashlib.sha256(DEV_KEY_SEED.encode()).digest()
    try:
        key = base64.b64decode(key_b64, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise CryptoError("OAUTH_ENCRYPTION_KEY is not valid base64") from exc
    if len(key) != 32:
        raise CryptoError(f"OAUTH_ENCRYPTION_KEY must decode to 32 bytes, got {len(key)}")
    return key


class SecretCipher:
    def __init__(self, key: bytes) -> None:
        self._aead = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = self._aead.encrypt(nonce, plaintext.encode(), None)
        return base64.b64encode(nonce + ciphertext).decode()

    def decrypt(self, encrypted: str) -> str:
        try:
            data = base64.b64decode(encrypted, validate=True)
            plaintext = self._aead.decrypt(data[:NONCE_SIZE], data[NONCE_SIZE:], None)
        except (binascii.Error, ValueError, InvalidTag) as exc:
            raise CryptoError("Unable to decrypt secret") from exc
        return plaintext.decode()


@lru_cache(maxsize=1)
def get_cipher() -> SecretCipher:
    return SecretCipher(load_key(OAUTH_ENCRYPTION_KEY))


def mask_secret(secret: str | None) -> str | None:
    if secret is None:
        return None
    if len(secret) <= 4:
        return MASK
    return f"{MASK}{secret[-4:]}"
