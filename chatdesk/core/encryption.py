"""API key encryption at rest using Fernet."""

from __future__ import annotations

import base64
import binascii
import hashlib
import os
from typing import Protocol

from cryptography.fernet import Fernet, InvalidToken

_FERNET_VERSION = 0x80


class KeyCipher(Protocol):
    def encrypt(self, plaintext: str) -> str: ...

    def decrypt(self, ciphertext: str) -> str: ...

    def looks_encrypted(self, value: str) -> bool: ...


class FernetKeyCipher:
    """Reversible keyed transform for provider credentials."""

    def __init__(self, secret: str | None = None) -> None:
        secret = secret or os.getenv("API_KEY_SECRET")
        if not secret:
            raise ValueError(
                "API_KEY_SECRET environment variable is not set. Generate one with:\n"
                "  python -c 'from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())'"
            )
        self._fernet = Fernet(self._normalize_secret(secret))

    @staticmethod
    def _normalize_secret(secret: str) -> bytes:
        # Accept a ready Fernet key, otherwise derive one from the passphrase.
        try:
            decoded = base64.urlsafe_b64decode(secret.encode())
        except (binascii.Error, ValueError):
            decoded = b""
        if len(decoded) == 32:
            return secret.encode()
        digest = hashlib.sha256(secret.encode()).digest()
        return base64.urlsafe_b64encode(digest)

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            raise ValueError("Cannot encrypt empty string")
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        if not ciphertext:
            raise ValueError("Cannot decrypt empty value")
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken as exc:
            raise ValueError("Failed to decrypt API key") from exc

    def looks_encrypted(self, value: str) -> bool:
        if not value or not value.startswith("gAAAAA"):
            return False
        try:
            raw = base64.urlsafe_b64decode(value.encode())
        except (binascii.Error, ValueError):
            return False
        return len(raw) >= 73 and raw[0] == _FERNET_VERSION


def mask_secret(secret: str) -> str:
    """Return a display-safe form of a credential."""
    if not secret or len(secret) < 8:
        return "***"
    return f"{secret[:4]}...{secret[-4:]}"


_cipher: KeyCipher | None = None


def get_cipher() -> KeyCipher:
    """Return the process-wide cipher, creating it on first use."""
    global _cipher
    if _cipher is None:
        _cipher = FernetKeyCipher()
    return _cipher


def set_cipher(cipher: KeyCipher | None) -> None:
    """Install a different cipher implementation (None resets to the default)."""
    global _cipher
    _cipher = cipher


__all__ = ["FernetKeyCipher", "KeyCipher", "get_cipher", "mask_secret", "set_cipher"]
