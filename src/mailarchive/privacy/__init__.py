"""Privacy utilities for protecting credentials at rest."""

from .encryption import (
    CredentialVault,
    DecryptionError,
    EncryptionError,
    KeyNotFoundError,
    generate_key,
)

__all__ = [
    "CredentialVault",
    "DecryptionError",
    "EncryptionError",
    "KeyNotFoundError",
    "generate_key",
]
