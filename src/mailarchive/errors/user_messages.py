"""User-friendly error messages for mailarchive.

This module maps error codes to human-readable messages and recovery
suggestions so the dashboard and CLI never show raw provider or protocol
errors.

Privacy Note:
- Error messages NEVER include token material
- Message content and mailbox passwords are never exposed
"""

from __future__ import annotations

from typing import Any


# =============================================================================
# Error Message Catalog
# =============================================================================

ERROR_MESSAGES: dict[str, str] = {
    # Authorization errors
    "AUTHORIZATION_ERROR": "We couldn't authorize access to your mailbox.",
    "AUTH_EXCHANGE_ERROR": "The email provider did not accept the sign-in. Please try connecting again.",
    "TOKEN_REFRESH_ERROR": "We couldn't renew access to your mailbox right now.",
    "NO_REFRESH_TOKEN": "This account connection cannot be renewed automatically.",
    "REFRESH_REJECTED": "Access to this mailbox was revoked or has expired.",
    "PENDING_AUTH_EXPIRED": "The sign-in link expired or was already used.",
    "UNAUTHORIZED": "You need to be signed in to manage mailbox connections.",
    "UNSUPPORTED_PROVIDER": "This email provider is not supported.",
    "CREDENTIAL_NOT_FOUND": "This mailbox connection wasn't found.",
    # Connection errors
    "MAILBOX_CONNECTION_ERROR": "We couldn't reach the mail server.",
    "MAILBOX_LOGIN_ERROR": "The mail server did not accept the login.",
    "RETRIES_EXHAUSTED": "Sync paused due to reaching the mail server rate limit.",
    # Processing errors
    "MESSAGE_PARSE_ERROR": "A message in this mailbox couldn't be read.",
    # Configuration errors
    "CONFIGURATION_ERROR": "There's a configuration issue.",
    # Vault errors
    "ENCRYPTION_ERROR": "Stored credentials couldn't be protected.",
    "KEY_NOT_FOUND": "The credential encryption key is missing.",
    "DECRYPTION_ERROR": "Stored credentials couldn't be read.",
    # Generic
    "MAILARCHIVE_ERROR": "An unexpected error occurred. Please try again.",
    "UNKNOWN_ERROR": "Something went wrong. Please try again.",
}


# =============================================================================
# Recovery Suggestions
# =============================================================================

RECOVERY_SUGGESTIONS: dict[str, str] = {
    # Authorization errors
    "AUTHORIZATION_ERROR": "Reconnect the account from the OAuth accounts settings page.",
    "AUTH_EXCHANGE_ERROR": "Start the connection again and complete sign-in within 10 minutes.",
    "TOKEN_REFRESH_ERROR": "The next sync will retry automatically.",
    "NO_REFRESH_TOKEN": "Reconnect the account to grant offline access.",
    "REFRESH_REJECTED": "Reconnect the account to restore access.",
    "PENDING_AUTH_EXPIRED": "Start the connection again from the settings page.",
    "UNAUTHORIZED": "Sign in and retry.",
    "UNSUPPORTED_PROVIDER": "Use a Microsoft account or connect with an app password.",
    "CREDENTIAL_NOT_FOUND": "Refresh the list of connected accounts.",
    # Connection errors
    "MAILBOX_CONNECTION_ERROR": "Check the server host, port and network access.",
    "MAILBOX_LOGIN_ERROR": "Check the username and password, or reconnect the OAuth account.",
    "RETRIES_EXHAUSTED": "The process will automatically resume later.",
    # Processing errors
    "MESSAGE_PARSE_ERROR": "Switch the parse failure policy to 'skip' to continue past it.",
    # Configuration errors
    "CONFIGURATION_ERROR": "Check ~/.mailarchive/config.json and MAILARCHIVE_* variables.",
    # Vault errors
    "ENCRYPTION_ERROR": "Check that the encryption key is configured.",
    "KEY_NOT_FOUND": "Set MAILARCHIVE_ENCRYPTION_KEY or unlock the OS keychain.",
    "DECRYPTION_ERROR": "Check that the encryption key has not changed.",
    # Generic
    "MAILARCHIVE_ERROR": "Try again. If the issue persists, check the logs.",
    "UNKNOWN_ERROR": "Try again. If the issue persists, check the logs.",
}


# =============================================================================
# Helper Functions
# =============================================================================


def _error_code(error: Any) -> str:
    if hasattr(error, "code"):
        return error.code
    if isinstance(error, str):
        return error
    return type(error).__name__.upper()


def get_user_message(error: Any) -> str:
    """Get user-friendly message for an error.

    Args:
        error: The error (can be Exception or error code string)

    Returns:
        User-friendly error message
    """
    return ERROR_MESSAGES.get(_error_code(error), ERROR_MESSAGES["UNKNOWN_ERROR"])


def get_recovery_suggestion(error: Any) -> str:
    """Get recovery suggestion for an error.

    Args:
        error: The error (can be Exception or error code string)

    Returns:
        Recovery suggestion
    """
    return RECOVERY_SUGGESTIONS.get(
        _error_code(error), RECOVERY_SUGGESTIONS["UNKNOWN_ERROR"]
    )


def format_error_for_cli(error: Any) -> str:
    """Format error for CLI display.

    Args:
        error: The error to format

    Returns:
        CLI-formatted error message
    """
    code = getattr(error, "code", "ERROR")
    lines = [
        f"Error [{code}]: {get_user_message(error)}",
        "",
        f"Suggestion: {get_recovery_suggestion(error)}",
    ]

    details = getattr(error, "details", None)
    if details:
        lines.append("")
        lines.append("Details:")
        for key, value in details.items():
            # Don't expose sensitive details
            if key not in ("access_token", "refresh_token", "password", "code_verifier"):
                lines.append(f"  {key}: {value}")

    return "\n".join(lines)


__all__ = [
    "ERROR_MESSAGES",
    "RECOVERY_SUGGESTIONS",
    "get_user_message",
    "get_recovery_suggestion",
    "format_error_for_cli",
]
