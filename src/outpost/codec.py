"""Field-level encryption for credentials and user PII at rest.

Values are AES-256-GCM encrypted and stored as::

    <prefix><iv_b64>:<tag_b64>:<ciphertext_b64>

The prefix doubles as the idempotence marker: anything that already carries
it is never encrypted again. Two independently keyed codecs exist, one for
credential material (``enc:v1:``) and one for personally-identifying fields
(``uenc:v1:``), so each key class can be rotated on its own.

Usage::

    codecs = load_codecs(config)
    stored = codecs.secrets.encrypt(api_key)
    api_key = codecs.secrets.decrypt(stored)
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import os
from dataclasses import dataclass
from typing import TYPE_CHECKING

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from outpost.errors import ConfigError, DecryptError

if TYPE_CHECKING:
    from outpost.config import OutpostConfig

logger = logging.getLogger(__name__)

SECRET_PREFIX = "enc:v1:"
USER_DATA_PREFIX = "uenc:v1:"

_IV_LENGTH = 16
_TAG_LENGTH = 16

# Seeds for the fixed development keys. Never used outside development.
_DEV_SECRET_SEED = "dev-key-not-for-production"
_DEV_USER_DATA_SEED = "dev-user-key-not-for-production"


def derive_key(raw: str) -> bytes:
    """Turn configured key material into 32 key bytes.

    A 44-character value ending in ``=`` is treated as base64 of 32 raw
    bytes (the output of :func:`generate_key`). Anything else is hashed
    with SHA-256.
    """
    if len(raw) == 44 and raw.endswith("="):
        try:
            key = base64.b64decode(raw, validate=True)
        except binascii.Error as exc:
            raise ConfigError(f"Encryption key looks like base64 but does not decode: {exc}") from exc
        if len(key) == 32:
            return key
    return hashlib.sha256(raw.encode()).digest()


def generate_key() -> str:
    """Return a fresh base64-encoded 256-bit key."""
    return base64.b64encode(os.urandom(32)).decode()


class SecretCodec:
    """Encrypt/decrypt string fields with one key and one marker prefix."""

    def __init__(self, key: bytes, prefix: str = SECRET_PREFIX) -> None:
        if len(key) != 32:
            raise ConfigError(f"Encryption key must be 32 bytes, got {len(key)}")
        self._aead = AESGCM(key)
        self.prefix = prefix

    def is_encrypted(self, value: str | None) -> bool:
        """Structural check only. No decryption is attempted."""
        return bool(value) and value.startswith(self.prefix)

    def encrypt(self, plaintext: str | None) -> str | None:
        if not plaintext:
            return plaintext
        if self.is_encrypted(plaintext):
            return plaintext

        iv = os.urandom(_IV_LENGTH)
        sealed = self._aead.encrypt(iv, plaintext.encode(), None)
        ciphertext, tag = sealed[:-_TAG_LENGTH], sealed[-_TAG_LENGTH:]
        parts = (base64.b64encode(p).decode() for p in (iv, tag, ciphertext))
        return self.prefix + ":".join(parts)

    def decrypt(self, value: str | None) -> str | None:
        """Decrypt ``value``.

        Empty input and values without the marker prefix (legacy plaintext
        written before encryption was enabled) are returned unchanged.

        Raises:
            DecryptError: If the value is malformed or the key doesn't match.
        """
        if not value or not self.is_encrypted(value):
            return value

        parts = value[len(self.prefix) :].split(":")
        if len(parts) != 3:
            raise DecryptError("Invalid encrypted value format")

        try:
            iv, tag, ciphertext = (base64.b64decode(p, validate=True) for p in parts)
        except binascii.Error as exc:
            raise DecryptError(f"Invalid base64 in encrypted value: {exc}") from exc
        if len(iv) != _IV_LENGTH or len(tag) != _TAG_LENGTH:
            raise DecryptError("Invalid IV or auth tag length")

        try:
            return self._aead.decrypt(iv, ciphertext + tag, None).decode()
        except InvalidTag as exc:
            raise DecryptError("Decryption failed: wrong key or tampered data") from exc
        except UnicodeDecodeError as exc:
            raise DecryptError("Decrypted value is not valid UTF-8") from exc

    def decrypt_or_none(self, value: str | None, field: str = "value") -> str | None:
        """Decrypt, treating unreadable ciphertext as "no value stored"."""
        try:
            return self.decrypt(value) or None
        except DecryptError as exc:
            logger.warning("Could not decrypt stored %s, treating as absent: %s", field, exc)
            return None


@dataclass(frozen=True)
class Codecs:
    """The process-wide codec pair, loaded once at startup."""

    secrets: SecretCodec
    user_data: SecretCodec


def _load_key(env_var: str, dev_seed: str, *, development: bool) -> bytes:
    raw = os.environ.get(env_var)
    if raw:
        return derive_key(raw)
    if not development:
        raise ConfigError(f"{env_var} must be set outside development")
    logger.warning("%s not set, using the development key. Do not use in production.", env_var)
    return hashlib.sha256(dev_seed.encode()).digest()


def load_codecs(config: OutpostConfig) -> Codecs:
    """Build both codecs from the environment.

    Raises:
        ConfigError: If a key is missing outside development.
    """
    development = config.is_development
    return Codecs(
        secrets=SecretCodec(
            _load_key(config.secrets.key_env, _DEV_SECRET_SEED, development=development),
            SECRET_PREFIX,
        ),
        user_data=SecretCodec(
            _load_key(config.secrets.user_data_key_env, _DEV_USER_DATA_SEED, development=development),
            USER_DATA_PREFIX,
        ),
    )
