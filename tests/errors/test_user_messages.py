"""Tests for error codes and user-facing messages."""

from __future__ import annotations

from mailarchive.errors import (
    MailArchiveError,
    MessageParseError,
    RefreshRejectedError,
    RetriesExhaustedError,
    TokenRefreshError,
)
from mailarchive.errors.user_messages import format_error_for_cli, get_user_message


def test_error_defaults() -> None:
    error = RefreshRejectedError()
    assert error.message == "The provider rejected the refresh token"
    assert error.code == "REFRESH_REJECTED"
    assert error.recoverable is False
    assert TokenRefreshError().recoverable is True


def test_to_dict() -> None:
    error = RetriesExhaustedError("fetch INBOX failed", attempts=5, context="fetch INBOX")
    payload = error.to_dict()
    assert payload["code"] == "RETRIES_EXHAUSTED"
    assert payload["details"] == {"attempts": 5, "context": "fetch INBOX"}
    assert payload["user_message"] == get_user_message(error)


def test_parse_error_carries_location() -> None:
    error = MessageParseError("bad", uid=12, mailbox_path="INBOX")
    assert error.details == {"uid": 12, "mailbox_path": "INBOX"}


def test_cli_format_hides_sensitive_details() -> None:
    error = MailArchiveError(details={"refresh_token": "secret", "credential_id": "cred-1"})
    text = format_error_for_cli(error)
    assert "secret" not in text
    assert "credential_id: cred-1" in text
    assert text.startswith("Error [MAILARCHIVE_ERROR]")


def test_unknown_exceptions_get_a_generic_message() -> None:
    text = format_error_for_cli(ValueError("boom"))
    assert text.startswith("Error [ERROR]: ")
    assert get_user_message(ValueError("boom")) in text
