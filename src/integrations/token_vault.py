"""AES-256-GCM encryption for long-lived calendar credentials.

Credentials are encrypted at the application level before they are persisted.
The stored layout is ``nonce(12) || auth_tag(16) || ciphertext``.

The key comes from the ``CALENDAR_TOKEN_ENCRYPTION_KEY`` environment variable as
a 64-character hex string (32 bytes). Generate one with ``openssl rand -hex 32``.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
from typing import Mapping

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..availability.errors import ConfigurationError, IntegrityError, MalformedInputError

logger = logging.getLogger(__name__)

KEY_ENV = "CALENDAR_TOKEN_ENCRYPTION_KEY"
KEY_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16
MIN_ENCRYPTED_LENGTH = NONCE_LENGTH + TAG_LENGTH


def parse_hex_key(value: str | None) -> bytes:
    if not value:
        raise ConfigurationError(
            f"Missing {KEY_ENV}. Generate one with: openssl rand -hex 32"
        )
    try:
        key = bytes.fromhex(value.strip())
    except ValueError as exc:
        raise ConfigurationError(f"{KEY_ENV} must be a hex string") from exc
    if len(key) != KEY_LENGTH:
        raise ConfigurationError(
            f"{KEY_ENV} must be a 64-character hex string ({KEY_LENGTH} bytes)"
        )
    return key


class TokenVault:
    """Encrypts and decrypts credential strings with a process-wide key."""

    def __init__(self, key: bytes | None) -> None:
        self._key = key

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "TokenVault":
        env = os.environ if environ is None else environ
        return cls(parse_hex_key(env.get(KEY_ENV)))

    @classmethod
    def from_hex(cls, value: str | None) -> "TokenVault":
        return cls(parse_hex_key(value))

    def encrypt(self, plaintext: str) -> bytes:
        aesgcm = AESGCM(self._require_key())
        nonce = os.urandom(NONCE_LENGTH)
        sealed = aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        # The library appends the tag; the stored layout puts it before the ciphertext.
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return nonce + tag + ciphertext

    def decrypt(self, data: bytes) -> str:
        key = self._require_key()
        if len(data) < MIN_ENCRYPTED_LENGTH:
            raise MalformedInputError("Encrypted data is too short")

        nonce = data[:NONCE_LENGTH]
        tag = data[NONCE_LENGTH:MIN_ENCRYPTED_LENGTH]
        ciphertext = data[MIN_ENCRYPTED_LENGTH:]
        try:
            plaintext = AESGCM(key).decrypt(nonce, bytes(ciphertext) + bytes(tag), None)
        except InvalidTag as exc:
            logger.warning("Rejected credential with an invalid authentication tag")
            raise IntegrityError("Encrypted credential failed authentication") from exc
        return plaintext.decode("utf-8")

    def _require_key(self) -> bytes:
        key = self._key
        if key is None:
            raise ConfigurationError(f"Missing {KEY_ENV}")
        if len(key) != KEY_LENGTH:
            raise ConfigurationError(f"Token encryption key must be exactly {KEY_LENGTH} bytes")
        return key


def encode_credential(data: bytes) -> str:
    """Base64 text form for storage engines that persist text."""

    return base64.b64encode(data).decode("ascii")


def decode_credential(value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MalformedInputError("Stored credential is not valid base64") from exc
