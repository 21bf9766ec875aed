"""Credential vault for OAuth token material.

Access and refresh tokens are encrypted before they reach the token store
using AES-256-GCM authenticated encryption, so the database only ever holds
ciphertext.

Features:
- AES-256-GCM authenticated encryption (confidentiality + integrity)
- Fresh 96-bit random nonce for every call
- Key from configuration or the OS keychain via keyring
- Self-describing ASCII tokens that fit a TEXT column

Token format:
    ``v1:<urlsafe-base64(nonce || ciphertext || tag)>``

Usage:
    >>> from mailarchive.privacy.encryption import CredentialVault
    >>> vault = CredentialVault()
    >>> token = vault.encrypt("access-token")
    >>> vault.decrypt(token)
    'access-token'
"""

from __future__ import annotations

import base64
import binascii
import logging
import secrets
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import keyring
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from mailarchive.errors import MailArchiveError

logger = logging.getLogger(__name__)

# Constants
KEY_SIZE_BYTES = 32  # 256 bits for AES-256
NONCE_SIZE_BYTES = 12  # 96 bits for GCM
TAG_SIZE_BYTES = 16  # 128-bit authentication tag
TOKEN_VERSION = "v1"


class EncryptionError(MailArchiveError):
    """Base exception for vault errors."""

    code = "ENCRYPTION_ERROR"
    default_message = "Encryption failed"
    recoverable = False


class KeyNotFoundError(EncryptionError):
    """Raised when no usable encryption key is available."""

    code = "KEY_NOT_FOUND"
    default_message = "Encryption key not found"


class DecryptionError(EncryptionError):
    """Raised when decryption fails (wrong key, corrupted data, or tampered)."""

    code = "DECRYPTION_ERROR"
    default_message = "Decryption failed"


def generate_key() -> str:
    """Return a new random key encoded as standard base64."""
    return base64.b64encode(secrets.token_bytes(KEY_SIZE_BYTES)).decode("ascii")


@dataclass
class CredentialVault:
    """Symmetric authenticated encryption for secrets at rest.

    The key is taken from ``key`` when given (base64 text, e.g. from
    ``MAILARCHIVE_ENCRYPTION_KEY``). Otherwise it is read from the OS keychain
    under ``service_name``/``key_id`` and generated there on first use.

    Attributes:
        key: Optional base64-encoded 32-byte key
        service_name: Keychain service identifier
        key_id: Keychain entry holding the key
        keyring_module: Keyring implementation (injectable for tests)
    """

    key: Optional[str] = None
    service_name: str = "mailarchive"
    key_id: str = "credential_vault_key"
    keyring_module: Any = field(default=keyring)
    _key_cache: Optional[bytes] = field(default=None, init=False, repr=False)

    # ------------------------------------------------------------------
    # Key handling
    # ------------------------------------------------------------------

    def _get_key(self) -> bytes:
        if self._key_cache is not None:
            return self._key_cache

        if self.key:
            self._key_cache = _decode_key(self.key)
            return self._key_cache

        if self.keyring_module is None:
            raise KeyNotFoundError("No encryption key configured and keyring unavailable")

        try:
            stored = self.keyring_module.get_password(self.service_name, self.key_id)
            if not stored:
                stored = generate_key()
                self.keyring_module.set_password(self.service_name, self.key_id, stored)
                logger.info(
                    "Generated new credential vault key",
                    extra={"service": self.service_name, "key_id": self.key_id},
                )
        except KeyNotFoundError:
            raise
        except Exception as exc:
            raise KeyNotFoundError(f"Failed to retrieve key: {exc}") from exc

        self._key_cache = _decode_key(stored)
        return self._key_cache

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def encrypt(self, plaintext: Union[bytes, str]) -> str:
        """Encrypt data into a self-contained text token.

        Args:
            plaintext: Data to encrypt (str will be UTF-8 encoded)

        Returns:
            Token carrying version, nonce and ciphertext

        Raises:
            EncryptionError: If encryption fails
        """
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")
        key = self._get_key()
        try:
            nonce = secrets.token_bytes(NONCE_SIZE_BYTES)
            ciphertext = AESGCM(key).encrypt(nonce, plaintext, None)
        except Exception as exc:
            raise EncryptionError(f"Encryption failed: {exc}") from exc
        body = base64.urlsafe_b64encode(nonce + ciphertext).decode("ascii")
        return f"{TOKEN_VERSION}:{body}"

    def decrypt_bytes(self, token: str) -> bytes:
        """Decrypt a token produced by :meth:`encrypt`.

        Raises:
            DecryptionError: If the token is malformed, tampered with, or was
                sealed with another key
        """
        version, sep, body = (token or "").partition(":")
        if not sep or version != TOKEN_VERSION:
            raise DecryptionError("Unrecognized token format")
        try:
            raw = base64.urlsafe_b64decode(body.encode("ascii"))
        except (binascii.Error, ValueError) as exc:
            raise DecryptionError("Token is not valid base64") from exc
        if len(raw) < NONCE_SIZE_BYTES + TAG_SIZE_BYTES:
            raise DecryptionError("Token is truncated")

        key = self._get_key()
        nonce, ciphertext = raw[:NONCE_SIZE_BYTES], raw[NONCE_SIZE_BYTES:]
        try:
            return AESGCM(key).decrypt(nonce, ciphertext, None)
        except InvalidTag as exc:
            raise DecryptionError("Authentication tag mismatch") from exc

    def decrypt(self, token: str) -> str:
        """Decrypt a token and decode the plaintext as UTF-8."""
        try:
            return self.decrypt_bytes(token).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("Plaintext is not valid UTF-8") from exc


def _decode_key(value: str) -> bytes:
    try:
        key = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise KeyNotFoundError("Encryption key is not valid base64") from exc
    if len(key) != KEY_SIZE_BYTES:
        raise KeyNotFoundError(
            f"Encryption key must be {KEY_SIZE_BYTES} bytes, got {len(key)}"
        )
    return key


__all__ = [
    "CredentialVault",
    "EncryptionError",
    "KeyNotFoundError",
    "DecryptionError",
    "generate_key",
]
