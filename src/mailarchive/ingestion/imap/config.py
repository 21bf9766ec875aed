"""Connection parameters for one IMAP ingestion source."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, SecretStr, model_validator


class AuthMode(str, Enum):
    """How the engine authenticates against the mail server."""

    PASSWORD = "password"
    OAUTH2 = "oauth2"


class ImapAccount(BaseModel):
    """Server address and credentials for an IMAP mailbox.

    Exactly one of ``password`` or ``oauth_credential_id`` must be set. The
    OAuth credential id refers to a row in the token store; the access token
    is resolved (and refreshed when expired) every time a connection opens.
    """

    host: str = Field(..., min_length=1)
    port: int = Field(default=993, ge=1, le=65535)
    secure: bool = Field(default=True, description="Connect with implicit TLS")
    username: str = Field(..., min_length=1)
    password: Optional[SecretStr] = None
    oauth_credential_id: Optional[str] = None
    allow_insecure_cert: bool = Field(
        default=False, description="Skip certificate verification (self-signed servers)"
    )

    @model_validator(mode="after")
    def _exactly_one_credential(self) -> "ImapAccount":
        if bool(self.password) == bool(self.oauth_credential_id):
            raise ValueError("Provide either password or oauth_credential_id")
        return self

    @property
    def auth_mode(self) -> AuthMode:
        return AuthMode.OAUTH2 if self.oauth_credential_id else AuthMode.PASSWORD


__all__ = ["AuthMode", "ImapAccount"]
