"""Fixtures wiring the fake IMAP server into ``ImapConnection``."""

from __future__ import annotations

import random
from typing import Callable, List, Optional

import pytest
from pydantic import SecretStr

from mailarchive.ingestion.imap.config import ImapAccount
from mailarchive.ingestion.imap.connection_manager import (
    AuthResolver,
    ImapConnection,
    RetryPolicy,
)

from imap_fakes import FakeImapServer


@pytest.fixture
def imap_server() -> FakeImapServer:
    return FakeImapServer()


@pytest.fixture
def password_account() -> ImapAccount:
    return ImapAccount(
        host="imap.example.com", username="user@example.com", password=SecretStr("pw")
    )


@pytest.fixture
def make_connection(imap_server, password_account) -> Callable[..., ImapConnection]:
    """Build connections whose backoff sleeps are recorded instead of slept."""

    def _make(
        account: Optional[ImapAccount] = None,
        resolver: Optional[AuthResolver] = None,
        max_attempts: int = 5,
        sleeps: Optional[List[float]] = None,
    ) -> ImapConnection:
        account = account or password_account
        recorded = sleeps if sleeps is not None else []
        return ImapConnection(
            account=account,
            auth_resolver=resolver or AuthResolver(account),
            retry_policy=RetryPolicy(max_attempts=max_attempts, rng=random.Random(7)),
            client_factory=imap_server.factory,
            sleep=recorded.append,
        )

    return _make
