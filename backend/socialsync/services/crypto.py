"""
OAuth token encryption at rest.

AES-256-GCM with a key derived as sha256(secret). Blob layout, base64
encoded: iv (12 bytes) | tag (16 bytes) | ciphertext.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from socialsync.errors import ConfigurationError, DecryptionError
from socialsync.settings import get_settings

IV_LENGTH = 12
TAG_LENGTH = 16


def _resolve_secret(secret: str | None) -> str:
    if secret is None:
        secret = get_settings().encryption_secret
    if not secret:
        raise ConfigurationError("ENCRYPTION_SECRET is not configured")
    return secret


def _derive_key(secret: str) -> bytes:
    return hashlib.sha256(secret.encode("utf-8")).digest()


def ensure_secret_configured(secret: str | None = None) -> None:
    """Raise ConfigurationError if no encryption secret is available."""
    _resolve_secret(secret)


def encrypt_token(plaintext: str, secret: str | None = None) -> str:
    key = _derive_key(_resolve_secret(secret))
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return base64.b64encode(iv + tag + ciphertext).decode("ascii")


def decrypt_token(blob: str, secret: str | None = None) -> str:
    key = _derive_key(_resolve_secret(secret))
    try:
        raw = base64.b64decode(blob, validate=True)
    except (binascii.Error, ValueError, TypeError) as exc:
        raise DecryptionError("Encrypted token is not valid base64") from exc
    if len(raw) < IV_LENGTH + TAG_LENGTH:
        raise DecryptionError("Encrypted token is truncated")

    iv = raw[:IV_LENGTH]
    tag = raw[IV_LENGTH:IV_LENGTH + TAG_LENGTH]
    ciphertext = raw[IV_LENGTH + TAG_LENGTH:]
    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as exc:
        raise DecryptionError("Encrypted token failed authentication") from exc
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecryptionError("Decrypted token is not valid UTF-8") from exc
