"""IMAP archiving: OAuth credentials, mailbox sync and message normalization."""

from .config import AuthMode, ImapAccount
from .connection_manager import (
    AuthResolver,
    BearerAuth,
    ConnectionState,
    ImapConnection,
    PasswordAuth,
    RetryPolicy,
)
from .email_parser import (
    Attachment,
    EmailAddress,
    EmailParser,
    NormalizedMessage,
    derive_thread_id,
)
from .oauth_flow import (
    MICROSOFT_PROVIDER,
    MICROSOFT_SCOPES,
    OAuthFlowManager,
    OAuthProviderConfig,
    PKCEChallenge,
    TokenResponse,
    build_authorization_url,
    compute_code_challenge,
    generate_challenge,
    generate_state,
)
from .oauth_service import (
    AuthorizationStart,
    CallbackResult,
    CallerIdentity,
    OAuthAccountService,
)
from .pending_auth import (
    InMemoryPendingAuthorizationStore,
    PendingAuthorizationStore,
    RedisPendingAuthorizationStore,
    create_pending_store,
)
from .sync_engine import (
    AUTH_FAILURE_STATUS,
    RATE_LIMIT_STATUS,
    ImapSyncEngine,
    MailboxInfo,
    ParseFailurePolicy,
    SyncOptions,
)
from .sync_state import SyncPosition, SyncPositionStore
from .token_store import CredentialSummary, OAuthCredential, OAuthTokenStore

__all__ = [
    "AuthMode",
    "ImapAccount",
    "AuthResolver",
    "BearerAuth",
    "ConnectionState",
    "ImapConnection",
    "PasswordAuth",
    "RetryPolicy",
    "Attachment",
    "EmailAddress",
    "EmailParser",
    "NormalizedMessage",
    "derive_thread_id",
    "MICROSOFT_PROVIDER",
    "MICROSOFT_SCOPES",
    "OAuthFlowManager",
    "OAuthProviderConfig",
    "PKCEChallenge",
    "TokenResponse",
    "build_authorization_url",
    "compute_code_challenge",
    "generate_challenge",
    "generate_state",
    "AuthorizationStart",
    "CallbackResult",
    "CallerIdentity",
    "OAuthAccountService",
    "InMemoryPendingAuthorizationStore",
    "PendingAuthorizationStore",
    "RedisPendingAuthorizationStore",
    "create_pending_store",
    "AUTH_FAILURE_STATUS",
    "RATE_LIMIT_STATUS",
    "ImapSyncEngine",
    "MailboxInfo",
    "ParseFailurePolicy",
    "SyncOptions",
    "SyncPosition",
    "SyncPositionStore",
    "CredentialSummary",
    "OAuthCredential",
    "OAuthTokenStore",
]
