"""Symmetric encryption for provider tokens at rest.

Keys are supplied through configuration (``credentials.token_keys`` or the
``TIMELEDGER_TOKEN_KEYS`` environment variable) and are never stored next to
the ciphertext.  Several comma-separated keys enable rotation: the first key
encrypts, every key is tried for decryption.

A key may be a urlsafe-base64 Fernet key or an arbitrary passphrase, which is
stretched with SHA-256 into a Fernet key.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import os
from collections.abc import Sequence

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from timeledger.errors import AuthExpiredError, CredentialKeyError

logger = logging.getLogger(__name__)

ENV_TOKEN_KEYS = "TIMELEDGER_TOKEN_KEYS"


def _coerce_fernet_key(raw_key: str) -> bytes:
    candidate = raw_key.strip().encode("utf-8")
    try:
        if len(base64.urlsafe_b64decode(candidate)) == 32:
            return candidate
    except (binascii.Error, ValueError):
        pass
    digest = hashlib.sha256(candidate).digest()
    return base64.urlsafe_b64encode(digest)


def parse_token_keys(value: str | Sequence[str] | None) -> list[str]:
    """Split a comma-separated key string (or list) into non-empty keys."""
    if value is None:
        return []
    raw = value.split(",") if isinstance(value, str) else list(value)
    return [item.strip() for item in raw if isinstance(item, str) and item.strip()]


class TokenCipher:
    """Encrypt and decrypt provider tokens with ``MultiFernet``."""

    def __init__(self, keys: Sequence[str]) -> None:
        normalized = parse_token_keys(keys)
        if not normalized:
            raise CredentialKeyError(
                "No token encryption key configured; "
                f"set credentials.token_keys or {ENV_TOKEN_KEYS}"
            )
        self._fernet = MultiFernet([Fernet(_coerce_fernet_key(key)) for key in normalized])

    @classmethod
    def from_env(cls) -> TokenCipher:
        return cls(parse_token_keys(os.environ.get(ENV_TOKEN_KEYS)))

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("ascii")

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            raise ValueError("plaintext must be a non-empty string")
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def encrypt_optional(self, plaintext: str | None) -> str | None:
        if not plaintext:
            return None
        return self.encrypt(plaintext)

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt *ciphertext*.

        Raises ``AuthExpiredError`` when the value cannot be decrypted with any
        configured key, since the stored credential is unusable until the user
        authorizes again.
        """
        if not ciphertext:
            raise AuthExpiredError("Stored credential is empty")
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as exc:
            logger.warning("Stored credential could not be decrypted with the configured keys")
            raise AuthExpiredError("Stored credential could not be decrypted") from exc

    def rotate(self, ciphertext: str) -> str:
        """Re-encrypt *ciphertext* under the primary key."""
        try:
            return self._fernet.rotate(ciphertext.encode("ascii")).decode("ascii")
        except InvalidToken as exc:
            raise AuthExpiredError("Stored credential could not be decrypted") from exc

    def __repr__(self) -> str:
        return "TokenCipher(keys=<REDACTED>)"
