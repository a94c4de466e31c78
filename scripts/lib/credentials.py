"""
Pulse Hub — Credential Encryption
===================================

Encrypts OAuth tokens and API keys before they are written to
project_integration_data, and decrypts them on read.

Rows written by this module carry ``"encrypted": true``. Rows without the
flag are treated as plaintext and returned unchanged, so data stored before
encryption was enabled keeps working until the next token refresh rewrites it.
"""
from __future__ import annotations

import os
from typing import Dict, Iterable

from cryptography.fernet import Fernet, InvalidToken

from scripts.lib.logger import setup_logger

logger = setup_logger("credentials")

SENSITIVE_FIELDS = ("access_token", "refresh_token", "api_key", "client_secret")
ENCRYPTED_FLAG = "encrypted"


class CredentialCipher:
    """Fernet wrapper for the sensitive fields of an integration payload."""

    def __init__(self, key: str | bytes | None = None,
                 fields: Iterable[str] = SENSITIVE_FIELDS):
        key = key or os.getenv("CREDENTIALS_ENCRYPTION_KEY")
        if not key:
            logger.warning(
                "CREDENTIALS_ENCRYPTION_KEY not set. Generating a temporary key "
                "(stored tokens will NOT be readable after a restart)."
            )
            key = Fernet.generate_key()

        self.cipher = Fernet(key.encode() if isinstance(key, str) else key)
        self.fields = tuple(fields)

    def encrypt(self, value: str) -> str:
        return self.cipher.encrypt(value.encode()).decode()

    def decrypt(self, value: str) -> str:
        try:
            return self.cipher.decrypt(value.encode()).decode()
        except InvalidToken as e:
            logger.error("Failed to decrypt credential: %s", e)
            raise ValueError("Invalid or corrupted credential")

    def encrypt_fields(self, data: Dict) -> Dict:
        """Return a copy of ``data`` with sensitive fields encrypted."""
        if data.get(ENCRYPTED_FLAG):
            return dict(data)
        out = dict(data)
        for field in self.fields:
            value = out.get(field)
            if isinstance(value, str) and value:
                out[field] = self.encrypt(value)
        out[ENCRYPTED_FLAG] = True
        return out

    def decrypt_fields(self, data: Dict) -> Dict:
        """Return a copy of ``data`` with sensitive fields in plaintext."""
        out = dict(data)
        if not out.pop(ENCRYPTED_FLAG, False):
            return out
        for field in self.fields:
            value = out.get(field)
            if isinstance(value, str) and value:
                out[field] = self.decrypt(value)
        return out


_cipher: CredentialCipher | None = None


def get_cipher() -> CredentialCipher:
    """Process-wide cipher built from CREDENTIALS_ENCRYPTION_KEY."""
    global _cipher
    if _cipher is None:
        _cipher = CredentialCipher()
    return _cipher
