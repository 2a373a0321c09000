"""Encryption of stored provider keys."""

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken


class KeyDecryptionError(Exception):
    pass


def _fernet(secret: str) -> Fernet:
    raw = (secret or "").strip()
    try:
        return Fernet(raw.encode("utf-8"))
    except ValueError:
        # Not a urlsafe 32-byte key: derive one from the secret
        digest = hashlib.sha256(raw.encode("utf-8")).digest()
        return Fernet(base64.urlsafe_b64encode(digest))


def encrypt_api_key(api_key: str, secret: str) -> str:
    value = (api_key or "").strip()
    if not value:
        raise ValueError("api_key is required")
    return _fernet(secret).encrypt(value.encode("utf-8")).decode("utf-8")


def decrypt_api_key(ciphertext: str, secret: str) -> str:
    value = (ciphertext or "").strip()
    if not value:
        return ""
    try:
        return _fernet(secret).decrypt(value.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        raise KeyDecryptionError("Credential decryption failed") from exc
