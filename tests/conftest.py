"""Shared fixtures for mailarchive tests."""

from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest
import requests

from mailarchive.configuration.settings import OAuthSettings
from mailarchive.ingestion.imap.oauth_flow import OAuthFlowManager
from mailarchive.ingestion.imap.token_store import OAuthTokenStore
from mailarchive.privacy.encryption import CredentialVault, generate_key

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class InMemoryKeyring:
    """Keyring replacement that never touches the OS keychain."""

    def __init__(self) -> None:
        self._store: Dict[str, str] = {}

    def get_password(self, service: str, key: str) -> Optional[str]:
        return self._store.get(f"{service}:{key}")

    def set_password(self, service: str, key: str, value: str) -> None:
        self._store[f"{service}:{key}"] = value

    def delete_password(self, service: str, key: str) -> None:
        self._store.pop(f"{service}:{key}", None)


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None) -> None:
        self.status_code = status_code
        self._payload = payload

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload


class FakeSession:
    """Records token endpoint posts and replays queued responses."""

    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []
        self.responses: List[Any] = []

    def queue(self, status_code: int = 200, payload: Any = None) -> None:
        self.responses.append(FakeResponse(status_code, payload))

    def queue_error(self, exc: Exception) -> None:
        self.responses.append(exc)

    def post(self, url: str, data=None, headers=None, timeout=None) -> FakeResponse:
        self.calls.append({"url": url, "data": dict(data or {}), "timeout": timeout})
        if not self.responses:
            raise requests.ConnectionError("no response queued")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("MAILARCHIVE_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def keyring_stub() -> InMemoryKeyring:
    return InMemoryKeyring()


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault(key=generate_key(), keyring_module=None)


@pytest.fixture
def token_store():
    store = OAuthTokenStore(":memory:")
    yield store
    store.close()


@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def clock() -> Dict[str, datetime]:
    """Mutable current time for the flow manager."""
    return {"now": NOW}


@pytest.fixture
def flow(vault, token_store, fake_session, clock) -> OAuthFlowManager:
    return OAuthFlowManager(
        vault=vault,
        token_store=token_store,
        settings=OAuthSettings(),
        session=fake_session,
        _now=lambda tz=None: clock["now"],
    )
