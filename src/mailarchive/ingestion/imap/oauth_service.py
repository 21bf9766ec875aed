"""Service-facing OAuth account operations.

``OAuthAccountService`` is the contract the HTTP layer calls when a user
connects, lists, refreshes or removes a Microsoft mailbox. The caller
identity is injected by the application's auth layer; every operation
refuses to run without it, and credentials belonging to someone else are
reported as missing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional
from urllib.parse import urlencode

from mailarchive.errors import (
    AuthorizationError,
    CredentialNotFoundError,
    PendingAuthorizationExpiredError,
    UnauthorizedError,
)

from .oauth_flow import (
    MICROSOFT_PROVIDER,
    OAuthFlowManager,
    build_authorization_url,
    generate_challenge,
    generate_state,
)
from .pending_auth import PendingAuthorizationStore
from .token_store import CredentialSummary, OAuthCredential

logger = logging.getLogger(__name__)

DASHBOARD_PATH = "/dashboard/settings/oauth-accounts"


@dataclass(frozen=True)
class CallerIdentity:
    """Authenticated user on whose behalf an operation runs."""

    user_id: str
    email: str


@dataclass(frozen=True)
class AuthorizationStart:
    authorization_url: str
    state: str


@dataclass(frozen=True)
class CallbackResult:
    """Outcome of the provider redirect back to the application."""

    success: bool
    redirect_url: str
    email: Optional[str] = None
    credential_id: Optional[str] = None
    reason: Optional[str] = None


class OAuthAccountService:
    """Connects, lists, refreshes and removes OAuth mailbox credentials."""

    def __init__(
        self,
        flow: OAuthFlowManager,
        pending: PendingAuthorizationStore,
        *,
        provider: str = MICROSOFT_PROVIDER,
    ) -> None:
        self.flow = flow
        self.pending = pending
        self.provider = provider

    def __enter__(self) -> "OAuthAccountService":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        """Stop the pending authorization store's background work."""
        self.pending.close()

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def start_authorization(self, caller: Optional[CallerIdentity]) -> AuthorizationStart:
        """Create a pending authorization and return the consent URL."""
        caller = _require_caller(caller)
        config = self.flow.provider_config(self.provider)
        challenge = generate_challenge()
        state = generate_state()
        self.pending.put(state, challenge.code_verifier)
        logger.info(
            "Started OAuth authorization",
            extra={"user_id": caller.user_id, "client_id": config.client_id[:8]},
        )
        return AuthorizationStart(
            authorization_url=build_authorization_url(config, state, challenge),
            state=state,
        )

    def handle_callback(
        self,
        caller: Optional[CallerIdentity],
        *,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str] = None,
        error_description: Optional[str] = None,
    ) -> CallbackResult:
        """Complete the flow started by :meth:`start_authorization`.

        Provider errors, missing parameters, unknown or expired state and
        failed exchanges all produce a failed result with a readable reason
        rather than an exception, so the HTTP layer can always redirect the
        browser back to the dashboard.
        """
        caller = _require_caller(caller)

        if error:
            reason = error_description or error
            logger.warning(
                "Provider returned an authorization error",
                extra={"user_id": caller.user_id, "error": error},
            )
            return self._failure(reason)

        if not code or not state:
            return self._failure("Invalid callback parameters")

        verifier = self.pending.take_if_valid(state)
        if verifier is None:
            exc = PendingAuthorizationExpiredError()
            logger.warning(
                "Callback with unknown or expired state", extra={"user_id": caller.user_id}
            )
            return self._failure(exc.message)

        try:
            config = self.flow.provider_config(self.provider)
            tokens = self.flow.exchange_code(config, code, verifier)
            self.flow.token_store.ensure_user(caller.user_id, caller.email)
            credential = self.flow.store_token(
                user_id=caller.user_id,
                provider=self.provider,
                email=caller.email,
                tokens=tokens,
            )
        except AuthorizationError as exc:
            return self._failure(exc.message)

        return CallbackResult(
            success=True,
            redirect_url=self._dashboard_url(success="true", email=caller.email),
            email=caller.email,
            credential_id=credential.id,
        )

    # ------------------------------------------------------------------
    # Credential management
    # ------------------------------------------------------------------

    def list_credentials(self, caller: Optional[CallerIdentity]) -> List[CredentialSummary]:
        caller = _require_caller(caller)
        return [credential.summary() for credential in self.flow.list_credentials(caller.user_id)]

    def delete_credential(self, caller: Optional[CallerIdentity], credential_id: str) -> None:
        caller = _require_caller(caller)
        self._owned(caller, credential_id)
        self.flow.delete_credential(credential_id)

    def manual_refresh(
        self, caller: Optional[CallerIdentity], credential_id: str
    ) -> Optional[datetime]:
        """Force a refresh and return the new expiry."""
        caller = _require_caller(caller)
        self._owned(caller, credential_id)
        return self.flow.refresh(credential_id).expires_at

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _owned(self, caller: CallerIdentity, credential_id: str) -> OAuthCredential:
        credential = self.flow.token_store.get(credential_id)
        if credential is None or credential.user_id != caller.user_id:
            raise CredentialNotFoundError(details={"credential_id": credential_id})
        return credential

    def _failure(self, reason: str) -> CallbackResult:
        return CallbackResult(
            success=False,
            redirect_url=self._dashboard_url(error=reason),
            reason=reason,
        )

    def _dashboard_url(self, **params: str) -> str:
        base = self.flow.settings.public_base_url
        return f"{base}{DASHBOARD_PATH}?{urlencode(params)}"


def _require_caller(caller: Optional[CallerIdentity]) -> CallerIdentity:
    if caller is None or not caller.user_id:
        raise UnauthorizedError()
    return caller


__all__ = [
    "AuthorizationStart",
    "CallbackResult",
    "CallerIdentity",
    "OAuthAccountService",
]
