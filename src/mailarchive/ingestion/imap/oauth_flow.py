"""OAuth2 authorization code + PKCE flow and token lifecycle.

This module covers the full life of an OAuth grant for IMAP XOAUTH2:

1. PKCE challenge and ``state`` generation;
2. building the provider authorization URL;
3. exchanging the authorization code for tokens;
4. storing the tokens encrypted through the credential vault;
5. refreshing them transparently when the access token has expired.

Only the Microsoft identity platform is configured. Token material is held
in plaintext only in local variables for the duration of a call; the token
store receives vault ciphertext.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import requests
from pydantic import BaseModel, Field, ValidationError

from mailarchive.configuration.settings import OAuthSettings
from mailarchive.errors import (
    AuthExchangeError,
    CredentialNotFoundError,
    NoRefreshTokenError,
    RefreshRejectedError,
    TokenRefreshError,
    UnsupportedProviderError,
)
from mailarchive.privacy.encryption import CredentialVault, DecryptionError

from .token_store import KEEP, OAuthCredential, OAuthTokenStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Provider configuration
# ---------------------------------------------------------------------------

MICROSOFT_PROVIDER = "microsoft"
# Public client id usable without registering an application.
MICROSOFT_PUBLIC_CLIENT_ID = "9e5f94bc-e8a4-4e73-b8be-63364c29d753"
MICROSOFT_AUTHORIZATION_ENDPOINT = (
    "https://login.microsoftonline.com/common/oauth2/v2.0/authorize"
)
MICROSOFT_TOKEN_ENDPOINT = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
MICROSOFT_SCOPES = [
    "https://outlook.office365.com/IMAP.AccessAsUser.All",
    "offline_access",
    "openid",
    "profile",
    "email",
]
CALLBACK_PATH = "/api/v1/auth/outlook/callback"


class OAuthProviderConfig(BaseModel):
    """Configuration for an OAuth2 provider supporting IMAP XOAUTH2."""

    name: str
    client_id: str
    client_secret: Optional[str] = None
    redirect_uri: str
    authorization_endpoint: str
    token_endpoint: str
    scopes: List[str]


def resolve_provider_config(provider: str, settings: OAuthSettings) -> OAuthProviderConfig:
    """Build the provider configuration from settings.

    Raises:
        UnsupportedProviderError: For any provider other than Microsoft
    """
    if provider != MICROSOFT_PROVIDER:
        raise UnsupportedProviderError(
            f"Unsupported OAuth provider: {provider}", details={"provider": provider}
        )
    redirect_uri = settings.redirect_uri or f"{settings.public_base_url}{CALLBACK_PATH}"
    client_secret = (
        settings.client_secret.get_secret_value() if settings.client_secret else None
    )
    return OAuthProviderConfig(
        name=MICROSOFT_PROVIDER,
        client_id=settings.client_id or MICROSOFT_PUBLIC_CLIENT_ID,
        client_secret=client_secret,
        redirect_uri=redirect_uri,
        authorization_endpoint=MICROSOFT_AUTHORIZATION_ENDPOINT,
        token_endpoint=MICROSOFT_TOKEN_ENDPOINT,
        scopes=list(MICROSOFT_SCOPES),
    )


# ---------------------------------------------------------------------------
# PKCE and authorization URL
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PKCEChallenge:
    """Verifier/challenge pair for RFC 7636 with the S256 method."""

    code_verifier: str
    code_challenge: str
    code_challenge_method: str = "S256"


def _base64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def compute_code_challenge(code_verifier: str) -> str:
    return _base64url(hashlib.sha256(code_verifier.encode("ascii")).digest())


def generate_challenge() -> PKCEChallenge:
    """Generate a fresh PKCE pair from 32 random bytes."""
    verifier = secrets.token_urlsafe(32)
    return PKCEChallenge(code_verifier=verifier, code_challenge=compute_code_challenge(verifier))


def generate_state() -> str:
    return secrets.token_urlsafe(32)


def build_authorization_url(
    config: OAuthProviderConfig, state: str, challenge: PKCEChallenge
) -> str:
    """Return the provider URL the user is redirected to for consent."""
    params = {
        "client_id": config.client_id,
        "response_type": "code",
        "redirect_uri": config.redirect_uri,
        "scope": " ".join(config.scopes),
        "state": state,
        "code_challenge": challenge.code_challenge,
        "code_challenge_method": challenge.code_challenge_method,
        "response_mode": "query",
    }
    return f"{config.authorization_endpoint}?{urlencode(params)}"


# ---------------------------------------------------------------------------
# Token responses
# ---------------------------------------------------------------------------


class TokenResponse(BaseModel):
    """Successful token endpoint response."""

    access_token: str = Field(..., min_length=1)
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = Field(default=None, ge=0)
    token_type: str = "Bearer"
    scope: Optional[str] = None

    def expires_at(self, now: datetime) -> Optional[datetime]:
        if self.expires_in is None:
            return None
        return now + timedelta(seconds=self.expires_in)


# ---------------------------------------------------------------------------
# Flow manager
# ---------------------------------------------------------------------------


@dataclass
class OAuthFlowManager:
    """Exchanges, stores, refreshes and resolves OAuth tokens.

    Attributes:
        vault: Encrypts token material before it is stored
        token_store: Persistence for encrypted credentials
        settings: Provider and timing configuration
        session: HTTP session used for token endpoint calls
    """

    vault: CredentialVault
    token_store: OAuthTokenStore
    settings: OAuthSettings = field(default_factory=OAuthSettings)
    session: Any = None
    _now: Callable[..., datetime] = datetime.now

    def __post_init__(self) -> None:
        if self.session is None:
            self.session = requests.Session()

    # ------------------------------------------------------------------
    # Authorization code exchange
    # ------------------------------------------------------------------

    def provider_config(self, provider: str = MICROSOFT_PROVIDER) -> OAuthProviderConfig:
        return resolve_provider_config(provider, self.settings)

    def exchange_code(
        self, config: OAuthProviderConfig, code: str, code_verifier: str
    ) -> TokenResponse:
        """Exchange an authorization code for tokens.

        Raises:
            AuthExchangeError: If the provider rejects the code or is unreachable
        """
        data = {
            "client_id": config.client_id,
            "code": code,
            "redirect_uri": config.redirect_uri,
            "grant_type": "authorization_code",
            "code_verifier": code_verifier,
        }
        if config.client_secret:
            data["client_secret"] = config.client_secret

        try:
            response = self._post(config.token_endpoint, data)
        except requests.RequestException as exc:
            logger.warning(
                "Token endpoint unreachable during code exchange",
                extra={"provider": config.name, "error": type(exc).__name__},
            )
            raise AuthExchangeError("Token endpoint unreachable") from exc

        if response.status_code != 200:
            error, description = _error_fields(response)
            logger.warning(
                "Authorization code exchange rejected",
                extra={"provider": config.name, "status": response.status_code, "error": error},
            )
            raise AuthExchangeError(
                description or f"Token endpoint returned {response.status_code}",
                details={"status": response.status_code, "error": error},
            )
        try:
            return TokenResponse.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise AuthExchangeError("Token endpoint returned an invalid response") from exc

    def store_token(
        self,
        *,
        user_id: str,
        provider: str,
        email: str,
        tokens: TokenResponse,
    ) -> OAuthCredential:
        """Encrypt and persist tokens for a mailbox."""
        access_ct = self.vault.encrypt(tokens.access_token)
        refresh_ct = self.vault.encrypt(tokens.refresh_token) if tokens.refresh_token else None
        self.token_store.ensure_user(user_id)
        credential = self.token_store.upsert(
            user_id=user_id,
            provider=provider,
            email=email,
            access_token=access_ct,
            refresh_token=refresh_ct,
            expires_at=tokens.expires_at(self._utcnow()),
            scope=tokens.scope,
        )
        logger.info(
            "Stored OAuth credential",
            extra={"credential_id": credential.id, "provider": provider},
        )
        return credential

    # ------------------------------------------------------------------
    # Refresh and resolution
    # ------------------------------------------------------------------

    def refresh(self, credential_id: str) -> OAuthCredential:
        """Obtain a new access token with the stored refresh token.

        The stored row is only written after a successful response, so a
        rejected or failed refresh leaves the credential untouched.

        Raises:
            CredentialNotFoundError: If the credential does not exist
            NoRefreshTokenError: If no refresh token is stored
            RefreshRejectedError: If the provider rejects the refresh grant or the
                stored refresh token can no longer be decrypted
            TokenRefreshError: On network failure or provider server error
        """
        credential = self._load(credential_id)
        if not credential.refresh_token:
            raise NoRefreshTokenError(details={"credential_id": credential_id})

        try:
            refresh_token = self.vault.decrypt(credential.refresh_token)
        except DecryptionError as exc:
            logger.error(
                "Stored refresh token cannot be decrypted", extra={"credential_id": credential_id}
            )
            raise RefreshRejectedError(
                "Stored refresh token is unreadable; re-authorize the mailbox",
                details={"credential_id": credential_id},
            ) from exc

        config = resolve_provider_config(credential.provider, self.settings)
        data = {
            "client_id": config.client_id,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        if config.client_secret:
            data["client_secret"] = config.client_secret

        try:
            response = self._post(config.token_endpoint, data)
        except requests.RequestException as exc:
            logger.warning(
                "Token endpoint unreachable during refresh",
                extra={"credential_id": credential_id, "error": type(exc).__name__},
            )
            raise TokenRefreshError(
                "Token endpoint unreachable", details={"credential_id": credential_id}
            ) from exc

        if response.status_code != 200:
            error, description = _error_fields(response)
            logger.warning(
                "Token refresh failed",
                extra={
                    "credential_id": credential_id,
                    "status": response.status_code,
                    "error": error,
                },
            )
            details = {"credential_id": credential_id, "status": response.status_code, "error": error}
            if 400 <= response.status_code < 500:
                raise RefreshRejectedError(description or None, details=details)
            raise TokenRefreshError(description or None, details=details)

        try:
            tokens = TokenResponse.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise TokenRefreshError(
                "Token endpoint returned an invalid response",
                details={"credential_id": credential_id},
            ) from exc

        access_ct = self.vault.encrypt(tokens.access_token)
        refresh_ct = self.vault.encrypt(tokens.refresh_token) if tokens.refresh_token else KEEP
        updated = self.token_store.update_tokens(
            credential_id,
            access_token=access_ct,
            refresh_token=refresh_ct,
            expires_at=tokens.expires_at(self._utcnow()),
        )
        if updated is None:
            raise CredentialNotFoundError(details={"credential_id": credential_id})
        logger.info(
            "Refreshed OAuth credential",
            extra={"credential_id": credential_id, "rotated": refresh_ct is not KEEP},
        )
        return updated

    def needs_refresh(self, credential: OAuthCredential) -> bool:
        if credential.expires_at is None:
            return False
        skew = timedelta(seconds=self.settings.expiry_skew_seconds)
        return credential.expires_at <= self._utcnow() + skew

    def resolve_access_token(self, credential_id: str, *, force_refresh: bool = False) -> str:
        """Return a usable plaintext access token, refreshing first if needed."""
        credential = self._load(credential_id)
        if force_refresh or self.needs_refresh(credential):
            credential = self.refresh(credential_id)
        return self.vault.decrypt(credential.access_token)

    def find_credential(
        self, *, user_id: str, email: str, provider: str = MICROSOFT_PROVIDER
    ) -> Optional[OAuthCredential]:
        """Look up a credential by mailbox, refreshing it when expired."""
        credential = self.token_store.find(user_id=user_id, provider=provider, email=email)
        if credential is None:
            return None
        if self.needs_refresh(credential) and credential.refresh_token:
            credential = self.refresh(credential.id)
        return credential

    def decrypt_access_token(self, credential: OAuthCredential) -> str:
        return self.vault.decrypt(credential.access_token)

    def list_credentials(self, user_id: str) -> List[OAuthCredential]:
        return self.token_store.list_for_user(user_id)

    def delete_credential(self, credential_id: str) -> bool:
        deleted = self.token_store.delete(credential_id)
        if deleted:
            logger.info("Deleted OAuth credential", extra={"credential_id": credential_id})
        return deleted

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _load(self, credential_id: str) -> OAuthCredential:
        credential = self.token_store.get(credential_id)
        if credential is None:
            raise CredentialNotFoundError(details={"credential_id": credential_id})
        return credential

    def _post(self, url: str, data: Dict[str, Any]) -> requests.Response:
        return self.session.post(
            url,
            data=data,
            headers={"Accept": "application/json"},
            timeout=self.settings.request_timeout_seconds,
        )

    def _utcnow(self) -> datetime:
        now = self._now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now


def _error_fields(response: Any) -> Tuple[Optional[str], Optional[str]]:
    try:
        payload = response.json()
    except ValueError:
        return None, None
    if not isinstance(payload, dict):
        return None, None
    return payload.get("error"), payload.get("error_description")


__all__ = [
    "CALLBACK_PATH",
    "MICROSOFT_PROVIDER",
    "MICROSOFT_PUBLIC_CLIENT_ID",
    "OAuthFlowManager",
    "OAuthProviderConfig",
    "PKCEChallenge",
    "TokenResponse",
    "build_authorization_url",
    "compute_code_challenge",
    "generate_challenge",
    "generate_state",
    "resolve_provider_config",
]
