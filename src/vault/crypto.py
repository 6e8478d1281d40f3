"""AES-256-GCM secret codec keyed by the caller's account token."""

from __future__ import annotations

import base64
import binascii
import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from core.errors import ValidationError

NONCE_SIZE = 12


def derive_key(token: str) -> bytes:
    """32-byte key: sha256 of the token."""
    if not token:
        raise ValidationError("cannot derive an encryption key from an empty token")
    return hashlib.sha256(token.encode("utf-8")).digest()


def encrypt(plaintext: str, token: str) -> str:
    """Return base64(nonce || ciphertext || tag)."""
    nonce = os.urandom(NONCE_SIZE)
    sealed = AESGCM(derive_key(token)).encrypt(nonce, plaintext.encode("utf-8"), None)
    return base64.b64encode(nonce + sealed).decode("ascii")


def decrypt(encoded: str, token: str) -> str:
    try:
        blob = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError(f"ciphertext is not valid base64: {exc}") from exc
    if len(blob) < NONCE_SIZE:
        raise ValidationError("ciphertext too short")
    nonce, sealed = blob[:NONCE_SIZE], blob[NONCE_SIZE:]
    try:
        plaintext = AESGCM(derive_key(token)).decrypt(nonce, sealed, None)
    except InvalidTag as exc:
        raise ValidationError("ciphertext failed authentication (wrong token?)") from exc
    return plaintext.decode("utf-8")
