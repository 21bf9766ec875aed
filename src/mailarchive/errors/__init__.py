"""Centralized error definitions for mailarchive.

This module provides the error hierarchy shared by the OAuth token lifecycle
and the mailbox synchronization engine. Every error carries a stable code,
a user-facing message from the catalogue and a recoverability hint so the
service layer can decide between retrying later and asking the user to act.

Usage:
    from mailarchive.errors import MailArchiveError, RefreshRejectedError

    try:
        token = flow.resolve_access_token(credential_id)
    except RefreshRejectedError as e:
        print(e.user_message)
"""

from __future__ import annotations

from typing import Optional

from mailarchive.errors.user_messages import (
    get_recovery_suggestion,
    get_user_message,
)


# =============================================================================
# Base Error
# =============================================================================


class MailArchiveError(Exception):
    """Base exception for all mailarchive errors.

    Attributes:
        code: Error code for categorization
        user_message: User-friendly message (optional override)
        recoverable: Whether the error is potentially recoverable
        details: Additional error details for debugging
    """

    code: str = "MAILARCHIVE_ERROR"
    default_message: str = "An unexpected error occurred"
    recoverable: bool = True

    def __init__(
        self,
        message: str | None = None,
        *,
        user_message: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.message = message or self.default_message
        self._user_message = user_message
        self.details = details or {}
        super().__init__(self.message)

    @property
    def user_message(self) -> str:
        """Get user-friendly message."""
        if self._user_message:
            return self._user_message
        return get_user_message(self)

    @property
    def recovery_suggestion(self) -> str:
        """Get recovery suggestion."""
        return get_recovery_suggestion(self)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "code": self.code,
            "message": self.message,
            "user_message": self.user_message,
            "recoverable": self.recoverable,
            "details": self.details,
        }


# =============================================================================
# Authorization Errors
# =============================================================================


class AuthorizationError(MailArchiveError):
    """Base error for the OAuth token lifecycle."""

    code = "AUTHORIZATION_ERROR"
    default_message = "Authorization failed"
    recoverable = False


class AuthExchangeError(AuthorizationError):
    """The provider rejected the authorization code exchange."""

    code = "AUTH_EXCHANGE_ERROR"
    default_message = "Authorization code exchange failed"


class TokenRefreshError(AuthorizationError):
    """Refreshing an access token failed for a transient reason."""

    code = "TOKEN_REFRESH_ERROR"
    default_message = "Token refresh failed"
    recoverable = True


class NoRefreshTokenError(TokenRefreshError):
    """The credential has no refresh token to renew its access token with."""

    code = "NO_REFRESH_TOKEN"
    default_message = "No refresh token is stored for this credential"
    recoverable = False


class RefreshRejectedError(TokenRefreshError):
    """The provider invalidated the refresh grant."""

    code = "REFRESH_REJECTED"
    default_message = "The provider rejected the refresh token"
    recoverable = False


class PendingAuthorizationExpiredError(AuthorizationError):
    """The callback state is unknown, already used or older than its TTL."""

    code = "PENDING_AUTH_EXPIRED"
    default_message = "Invalid or expired state parameter"


class UnauthorizedError(AuthorizationError):
    """An operation was attempted without an authenticated caller."""

    code = "UNAUTHORIZED"
    default_message = "Authentication required"


class UnsupportedProviderError(AuthorizationError):
    """No configuration exists for the requested OAuth provider."""

    code = "UNSUPPORTED_PROVIDER"
    default_message = "Unsupported OAuth provider"


class CredentialNotFoundError(AuthorizationError):
    """The requested OAuth credential does not exist for this user."""

    code = "CREDENTIAL_NOT_FOUND"
    default_message = "OAuth credential not found"


# =============================================================================
# Connection Errors
# =============================================================================


class MailboxConnectionError(MailArchiveError):
    """A mail server operation failed at the transport or protocol level."""

    code = "MAILBOX_CONNECTION_ERROR"
    default_message = "Mail server connection failed"
    recoverable = True


class MailboxLoginError(MailboxConnectionError):
    """The mail server rejected the supplied credentials."""

    code = "MAILBOX_LOGIN_ERROR"
    default_message = "Mail server rejected the login"
    recoverable = False


class RetriesExhaustedError(MailboxConnectionError):
    """An operation kept failing after every allowed attempt."""

    code = "RETRIES_EXHAUSTED"
    default_message = "Mail server operation failed after all retries"

    def __init__(
        self,
        message: str | None = None,
        *,
        attempts: int = 0,
        context: str = "",
        **kwargs,
    ) -> None:
        details = dict(kwargs.pop("details", None) or {})
        details.update({"attempts": attempts, "context": context})
        super().__init__(message, details=details, **kwargs)
        self.attempts = attempts
        self.context = context


# =============================================================================
# Processing Errors
# =============================================================================


class MessageParseError(MailArchiveError):
    """A raw message could not be normalized."""

    code = "MESSAGE_PARSE_ERROR"
    default_message = "Message could not be parsed"
    recoverable = False

    def __init__(
        self,
        message: str | None = None,
        *,
        uid: Optional[int] = None,
        mailbox_path: Optional[str] = None,
        **kwargs,
    ) -> None:
        details = dict(kwargs.pop("details", None) or {})
        details.update({"uid": uid, "mailbox_path": mailbox_path})
        super().__init__(message, details=details, **kwargs)
        self.uid = uid
        self.mailbox_path = mailbox_path


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(MailArchiveError):
    """Settings are missing or invalid."""

    code = "CONFIGURATION_ERROR"
    default_message = "Configuration error"
    recoverable = False


__all__ = [
    "MailArchiveError",
    "AuthorizationError",
    "AuthExchangeError",
    "TokenRefreshError",
    "NoRefreshTokenError",
    "RefreshRejectedError",
    "PendingAuthorizationExpiredError",
    "UnauthorizedError",
    "UnsupportedProviderError",
    "CredentialNotFoundError",
    "MailboxConnectionError",
    "MailboxLoginError",
    "RetriesExhaustedError",
    "MessageParseError",
    "ConfigurationError",
    "get_user_message",
    "get_recovery_suggestion",
]
