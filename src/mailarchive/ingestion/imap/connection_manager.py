"""IMAP connection lifecycle and bounded retry.

One ``ImapConnection`` serves a whole sync cycle. Every protocol operation
goes through :meth:`ImapConnection.with_retry`, which (re)connects as needed
and retries failed operations with exponential backoff. A connection that saw
a failure is discarded rather than reused, since its protocol state is
unknown; the next attempt builds a fresh client.

Credentials are resolved into a tagged variant, ``PasswordAuth`` or
``BearerAuth``, once per connection attempt. Bearer tokens come from the
OAuth flow manager, which refreshes them when they have expired.
"""

from __future__ import annotations

import logging
import random
import ssl
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, TypeVar, Union

import certifi
from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientError, LoginError

from mailarchive.configuration.settings import SyncSettings
from mailarchive.errors import (
    AuthorizationError,
    MailboxConnectionError,
    MailboxLoginError,
    RetriesExhaustedError,
)
from mailarchive.privacy.encryption import EncryptionError

from .config import ImapAccount
from .oauth_flow import OAuthFlowManager

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Connection state
# ---------------------------------------------------------------------------


class ConnectionState(str, Enum):
    """Lifecycle states for an IMAP connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FETCHING = "fetching"
    ERROR_BACKOFF = "error_backoff"


# ---------------------------------------------------------------------------
# Authentication variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PasswordAuth:
    username: str
    password: str = field(repr=False)


@dataclass(frozen=True)
class BearerAuth:
    username: str
    access_token: str = field(repr=False)
    credential_id: str = ""


ImapAuth = Union[PasswordAuth, BearerAuth]


class AuthResolver:
    """Turns an account's configured credentials into an ``ImapAuth``."""

    def __init__(self, account: ImapAccount, flow: Optional[OAuthFlowManager] = None) -> None:
        if account.oauth_credential_id and flow is None:
            raise ValueError("OAuth accounts need an OAuthFlowManager")
        self.account = account
        self.flow = flow

    def resolve(self, *, force_refresh: bool = False) -> ImapAuth:
        if self.account.oauth_credential_id:
            token = self.flow.resolve_access_token(  # type: ignore[union-attr]
                self.account.oauth_credential_id, force_refresh=force_refresh
            )
            return BearerAuth(
                username=self.account.username,
                access_token=token,
                credential_id=self.account.oauth_credential_id,
            )
        return PasswordAuth(
            username=self.account.username,
            password=self.account.password.get_secret_value(),  # type: ignore[union-attr]
        )

    def can_refresh_after_rejection(self) -> bool:
        """Whether a rejected bearer login justifies one forced refresh.

        Applies to credentials without a known expiry that hold a refresh
        token; expiring credentials are refreshed ahead of use instead.
        """
        if not self.account.oauth_credential_id or self.flow is None:
            return False
        credential = self.flow.token_store.get(self.account.oauth_credential_id)
        return bool(credential and credential.expires_at is None and credential.refresh_token)


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------


@dataclass
class RetryPolicy:
    """Exponential backoff with additive jitter.

    The delay after failed attempt ``n`` (1-based) is
    ``backoff_base ** n + uniform(0, max_jitter)``. With the defaults that is
    roughly 2, 4, 8 and 16 seconds between five attempts.
    """

    max_attempts: int = 5
    backoff_base: float = 2.0
    max_jitter: float = 1.0
    rng: random.Random = field(default_factory=random.Random, repr=False)

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            backoff_base=settings.backoff_base,
            max_jitter=settings.max_jitter_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        return self.backoff_base**attempt + self.rng.uniform(0, self.max_jitter)


# Token resolution failures; the flow manager already made its one refresh attempt.
NON_RETRYABLE = (AuthorizationError, EncryptionError)
# Transport failures and rejected logins are retried with a fresh connection.
RETRYABLE = (IMAPClientError, OSError, MailboxConnectionError)


# ---------------------------------------------------------------------------
# Connection implementation
# ---------------------------------------------------------------------------


@dataclass
class ImapConnection:
    """A single IMAP connection owned by one sync cycle."""

    account: ImapAccount
    auth_resolver: AuthResolver
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    connection_timeout: float = 30.0
    client_factory: Optional[Callable[..., Any]] = None
    sleep: Callable[[float], None] = time.sleep

    client: Optional[Any] = field(default=None, init=False)
    state: ConnectionState = field(default=ConnectionState.DISCONNECTED, init=False)

    def ensure_connected(self) -> Any:
        """Return the live client, opening and authenticating one if needed."""
        if self.client is not None and self.state in (
            ConnectionState.CONNECTED,
            ConnectionState.FETCHING,
        ):
            return self.client
        self._establish_connection()
        return self.client

    def _establish_connection(self) -> None:
        self.state = ConnectionState.CONNECTING
        factory = self.client_factory or IMAPClient
        client = factory(
            host=self.account.host,
            port=self.account.port,
            ssl=self.account.secure,
            ssl_context=self._create_ssl_context() if self.account.secure else None,
            timeout=self.connection_timeout,
            use_uid=True,
        )
        self.client = client
        try:
            self._authenticate(client)
        except BaseException:
            self.discard()
            raise
        self.state = ConnectionState.CONNECTED
        logger.info(
            "IMAP connection established",
            extra={
                "host": self.account.host,
                "port": self.account.port,
                "auth_mode": self.account.auth_mode.value,
            },
        )

    def _create_ssl_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context()
        context.load_verify_locations(certifi.where())
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        if self.account.allow_insecure_cert:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    def _authenticate(self, client: Any) -> None:
        auth = self.auth_resolver.resolve()
        try:
            _login(client, auth)
            return
        except LoginError as exc:
            if not (isinstance(auth, BearerAuth) and self.auth_resolver.can_refresh_after_rejection()):
                raise MailboxLoginError(details={"host": self.account.host}) from exc
            logger.info(
                "Bearer login rejected, refreshing token once",
                extra={"credential_id": auth.credential_id},
            )

        auth = self.auth_resolver.resolve(force_refresh=True)
        try:
            _login(client, auth)
        except LoginError as exc:
            raise MailboxLoginError(details={"host": self.account.host}) from exc

    def with_retry(self, operation: Callable[[Any], T], context: str) -> T:
        """Run ``operation`` against a connected client, retrying on failure.

        Args:
            operation: Callable receiving the live client
            context: Short description used in logs and the final error

        Returns:
            Whatever ``operation`` returns on its first successful attempt

        Raises:
            RetriesExhaustedError: When every attempt failed, including attempts
                whose login the server rejected
            AuthorizationError: Token resolution failed (not retried)
            EncryptionError: A stored token could not be decrypted (not retried)
        """
        max_attempts = self.retry_policy.max_attempts
        last_error: Optional[BaseException] = None
        for attempt in range(1, max_attempts + 1):
            try:
                client = self.ensure_connected()
                return operation(client)
            except NON_RETRYABLE:
                self.discard()
                raise
            except RETRYABLE as exc:
                last_error = exc
                self.discard()
                logger.warning(
                    "IMAP operation failed",
                    extra={
                        "context": context,
                        "attempt": attempt,
                        "max_attempts": max_attempts,
                        "error": type(exc).__name__,
                    },
                )
                if attempt == max_attempts:
                    break
                delay = self.retry_policy.delay_for(attempt)
                self.state = ConnectionState.ERROR_BACKOFF
                logger.info(
                    "Backing off before retry",
                    extra={"context": context, "delay_seconds": round(delay, 2)},
                )
                self.sleep(delay)
                self.state = ConnectionState.DISCONNECTED

        raise RetriesExhaustedError(
            f"{context} failed after {max_attempts} attempts",
            attempts=max_attempts,
            context=context,
        ) from last_error

    def discard(self) -> None:
        """Drop the client without a LOGOUT round-trip."""
        client, self.client = self.client, None
        self.state = ConnectionState.DISCONNECTED
        if client is None:
            return
        try:
            client.shutdown()
        except (IMAPClientError, OSError) as exc:
            logger.debug("Error closing discarded connection", exc_info=exc)

    def logout(self) -> None:
        """Log out cleanly; always ends in ``DISCONNECTED``."""
        client, self.client = self.client, None
        if client is None:
            self.state = ConnectionState.DISCONNECTED
            return
        try:
            client.logout()
        except (IMAPClientError, OSError) as exc:
            logger.warning("Error during logout", exc_info=exc)
        finally:
            self.state = ConnectionState.DISCONNECTED


def _login(client: Any, auth: ImapAuth) -> None:
    if isinstance(auth, BearerAuth):
        client.oauth2_login(auth.username, auth.access_token)
    else:
        client.login(auth.username, auth.password)


__all__ = [
    "AuthResolver",
    "BearerAuth",
    "ConnectionState",
    "ImapAuth",
    "ImapConnection",
    "PasswordAuth",
    "RetryPolicy",
]
