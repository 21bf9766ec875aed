"""Tests for the SQLite OAuth credential store."""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone

import pytest

from mailarchive.ingestion.imap.token_store import KEEP, OAuthTokenStore

EXPIRES = datetime(2024, 5, 1, 13, 0, tzinfo=timezone.utc)


def _upsert(store, *, user_id="user-1", email="user@example.com", access="ct-a1", refresh="ct-r1"):
    return store.upsert(
        user_id=user_id,
        provider="microsoft",
        email=email,
        access_token=access,
        refresh_token=refresh,
        expires_at=EXPIRES,
        scope="offline_access",
    )


@pytest.fixture
def store(token_store):
    token_store.ensure_user("user-1", "user@example.com")
    return token_store


def test_upsert_and_lookup(store) -> None:
    credential = _upsert(store)

    assert store.get(credential.id) == credential
    assert store.find(user_id="user-1", provider="microsoft", email="user@example.com") == credential
    assert credential.access_token == "ct-a1"
    assert credential.expires_at == EXPIRES
    assert credential.created_at.tzinfo is not None


def test_reauthorization_keeps_identity(store) -> None:
    first = _upsert(store)
    second = _upsert(store, access="ct-a2", refresh=None)

    assert second.id == first.id
    assert second.created_at == first.created_at
    assert second.access_token == "ct-a2"
    assert second.refresh_token == "ct-r1"
    assert len(store.list_for_user("user-1")) == 1


def test_credentials_require_an_owner(token_store) -> None:
    with pytest.raises(sqlite3.IntegrityError):
        _upsert(token_store, user_id="ghost")


def test_deleting_user_cascades(store) -> None:
    credential = _upsert(store)

    assert store.delete_user("user-1")
    assert store.get(credential.id) is None


def test_list_is_scoped_to_user(store) -> None:
    store.ensure_user("user-2")
    _upsert(store)
    _upsert(store, email="second@example.com")
    _upsert(store, user_id="user-2", email="other@example.com")

    emails = {credential.email for credential in store.list_for_user("user-1")}
    assert emails == {"user@example.com", "second@example.com"}


def test_update_tokens_keep_and_replace(store) -> None:
    credential = _upsert(store)

    kept = store.update_tokens(credential.id, access_token="ct-a2", expires_at=None)
    assert kept.access_token == "ct-a2"
    assert kept.refresh_token == "ct-r1"
    assert kept.expires_at is None

    replaced = store.update_tokens(
        credential.id, access_token="ct-a3", expires_at=EXPIRES, refresh_token="ct-r2"
    )
    assert replaced.refresh_token == "ct-r2"
    assert store.update_tokens("missing", access_token="x", expires_at=None, refresh_token=KEEP) is None


def test_delete(store) -> None:
    credential = _upsert(store)
    assert store.delete(credential.id) is True
    assert store.delete(credential.id) is False


def test_summary_has_no_token_material(store) -> None:
    summary = _upsert(store).summary()
    dumped = summary.model_dump()
    assert "access_token" not in dumped
    assert "refresh_token" not in dumped
    assert summary.email == "user@example.com"


def test_file_backed_store_persists(tmp_path) -> None:
    path = tmp_path / "db" / "mailarchive.db"
    with OAuthTokenStore(path) as store:
        store.ensure_user("user-1")
        credential_id = _upsert(store).id

    with OAuthTokenStore(path) as reopened:
        assert reopened.get(credential_id) is not None


def test_upsert_returns_row_written_in_same_transaction(store, monkeypatch) -> None:
    monkeypatch.setattr(store, "find", lambda **kwargs: None)

    credential = _upsert(store)

    assert credential.email == "user@example.com"
    assert store.get(credential.id) == credential
