"""Tests for incremental mailbox synchronization."""

from __future__ import annotations

from datetime import timedelta

import pytest

from mailarchive.configuration.settings import SyncSettings
from mailarchive.ingestion.imap.config import ImapAccount
from mailarchive.ingestion.imap.connection_manager import AuthResolver, ConnectionState
from mailarchive.ingestion.imap.oauth_flow import TokenResponse
from mailarchive.ingestion.imap.sync_engine import (
    AUTH_FAILURE_STATUS,
    RATE_LIMIT_STATUS,
    ImapSyncEngine,
    MailboxInfo,
    ParseFailurePolicy,
    SyncOptions,
)
from mailarchive.ingestion.imap.sync_state import SyncPosition

from imap_fakes import make_message

UNPARSEABLE = b"\r\n\r\nbody without any header block"


def _messages(uids):
    return {uid: make_message(f"Message {uid}", message_id=f"<m{uid}@example.com>") for uid in uids}


def _run(engine, position=None):
    with engine.fetch_messages(position) as messages:
        collected = list(messages)
    return collected, engine.get_updated_sync_position()


@pytest.fixture
def make_engine(make_connection):
    def _make(**options):
        return ImapSyncEngine(make_connection(max_attempts=2), options=SyncOptions(**options))

    return _make


def test_yields_only_messages_above_the_stored_uid(imap_server, make_engine) -> None:
    imap_server.add_mailbox("INBOX", _messages(range(1, 104)))
    engine = make_engine()

    messages, position = _run(engine, SyncPosition(mailboxes={"INBOX": 100}))

    assert [message.uid for message in messages] == [101, 102, 103]
    assert all(message.path == "INBOX" for message in messages)
    assert messages[0].subject == "Message 101"
    assert position.mailboxes == {"INBOX": 103}
    assert position.status_message is None


def test_second_cycle_is_empty_and_keeps_position(imap_server, make_connection) -> None:
    imap_server.add_mailbox("INBOX", _messages([3, 7, 9]))

    first, position = _run(ImapSyncEngine(make_connection()))
    second, again = _run(ImapSyncEngine(make_connection()), position)

    assert [message.uid for message in first] == [3, 7, 9]
    assert second == []
    assert again.mailboxes == position.mailboxes == {"INBOX": 9}


def test_fetches_in_batches(imap_server, make_engine) -> None:
    imap_server.add_mailbox("INBOX", _messages(range(1, 601)))
    engine = make_engine(batch_size=250)

    messages, position = _run(engine)

    ranges = [criteria for _, criteria in imap_server.fetch_calls if criteria != "*"]
    assert ranges == ["1:250", "251:500", "501:600"]
    assert len(messages) == 600
    assert [message.uid for message in messages] == sorted(message.uid for message in messages)
    assert position.mailboxes["INBOX"] == 600


def test_empty_mailbox_is_not_fetched(imap_server, make_engine) -> None:
    imap_server.add_mailbox("Archive", {})

    messages, position = _run(make_engine())

    assert messages == []
    assert imap_server.fetch_calls == []
    assert position.mailboxes == {"Archive": 0}


def test_trash_and_junk_are_skipped_by_default(imap_server, make_engine) -> None:
    imap_server.add_mailbox("INBOX", _messages([1]))
    imap_server.add_mailbox("Junk", _messages([1]), flags=(b"\\HasNoChildren", b"\\Junk"))
    imap_server.add_mailbox("Deleted Items", _messages([1]), flags=(b"\\Trash",))

    engine = make_engine()
    assert [mailbox.path for mailbox in engine.list_mailboxes()] == ["INBOX"]

    messages, _ = _run(engine)
    assert {message.path for message in messages} == {"INBOX"}


def test_all_inclusive_archive_keeps_trash_and_junk(imap_server, make_engine) -> None:
    imap_server.add_mailbox("INBOX", _messages([1]))
    imap_server.add_mailbox("Junk", _messages([1]), flags=(b"\\Junk",))
    imap_server.add_mailbox("Trash", _messages([1]), flags=(b"\\Trash",))

    messages, position = _run(make_engine(all_inclusive_archive=True))

    assert {message.path for message in messages} == {"INBOX", "Junk", "Trash"}
    assert position.mailboxes == {"INBOX": 1, "Junk": 1, "Trash": 1}


def test_noselect_mailboxes_are_never_synced(imap_server, make_engine) -> None:
    imap_server.add_mailbox("[Gmail]", {}, flags=(b"\\Noselect", b"\\HasChildren"))
    imap_server.add_mailbox("INBOX", _messages([1]))

    engine = make_engine(all_inclusive_archive=True)

    assert [mailbox.path for mailbox in engine.list_mailboxes()] == ["INBOX"]


def test_failing_mailbox_does_not_stop_the_cycle(imap_server, make_engine) -> None:
    imap_server.add_mailbox("Broken", _messages([1, 2]))
    imap_server.add_mailbox("INBOX", _messages([5, 6]))
    imap_server.broken.add("Broken")
    engine = make_engine()

    messages, position = _run(engine, SyncPosition(mailboxes={"Broken": 1}))

    assert [(message.path, message.uid) for message in messages] == [("INBOX", 5), ("INBOX", 6)]
    assert position.mailboxes == {"Broken": 1, "INBOX": 6}
    assert position.status_message == RATE_LIMIT_STATUS
    assert "Broken" in engine.mailbox_errors


def test_rejected_login_on_reconnect_is_retried_mid_cycle(imap_server, make_connection) -> None:
    imap_server.add_mailbox("INBOX", _messages([1, 2]))
    imap_server.add_mailbox("Sent", _messages([5]))
    sleeps = []
    engine = ImapSyncEngine(make_connection(sleeps=sleeps), options=SyncOptions(batch_size=1))

    collected = []
    with engine.fetch_messages() as messages:
        for message in messages:
            collected.append((message.path, message.uid))
            if len(collected) == 1:
                imap_server.fail_next(1)
                imap_server.rejected_logins = 1
    position = engine.get_updated_sync_position()

    assert collected == [("INBOX", 1), ("INBOX", 2), ("Sent", 5)]
    assert len(imap_server.logins) == 3
    assert len(sleeps) == 2
    assert engine.mailbox_errors == {}
    assert position.mailboxes == {"INBOX": 2, "Sent": 5}
    assert position.status_message is None


def test_login_failure_is_contained_to_one_mailbox(imap_server, make_connection) -> None:
    imap_server.add_mailbox("INBOX", _messages([1, 2]))
    imap_server.add_mailbox("Sent", _messages([5]))
    engine = ImapSyncEngine(
        make_connection(max_attempts=2), options=SyncOptions(batch_size=1)
    )

    collected = []
    with engine.fetch_messages() as messages:
        for message in messages:
            collected.append((message.path, message.uid))
            if len(collected) == 1:
                imap_server.fail_next(1)
                imap_server.rejected_logins = 1
    position = engine.get_updated_sync_position()

    assert collected == [("INBOX", 1), ("Sent", 5)]
    assert set(engine.mailbox_errors) == {"INBOX"}
    assert position.mailboxes == {"INBOX": 1, "Sent": 5}
    assert position.status_message == AUTH_FAILURE_STATUS
    assert imap_server.logouts == 1


@pytest.fixture
def expired_oauth_account(flow, clock):
    credential = flow.store_token(
        user_id="user-1",
        provider="microsoft",
        email="user@example.com",
        tokens=TokenResponse(access_token="access-1", refresh_token="refresh-1", expires_in=3600),
    )
    clock["now"] = clock["now"] + timedelta(hours=2)
    return ImapAccount(
        host="outlook.office365.com",
        username="user@example.com",
        oauth_credential_id=credential.id,
    )


def test_oauth_cycle_refreshes_expired_token_before_login(
    imap_server, make_connection, flow, fake_session, clock, expired_oauth_account
) -> None:
    imap_server.add_mailbox("INBOX", _messages([1, 2]))
    fake_session.queue(200, {"access_token": "access-2", "expires_in": 3600})
    connection = make_connection(
        account=expired_oauth_account, resolver=AuthResolver(expired_oauth_account, flow)
    )

    messages, position = _run(ImapSyncEngine(connection))

    assert len(fake_session.calls) == 1
    assert fake_session.calls[0]["data"]["grant_type"] == "refresh_token"
    assert fake_session.calls[0]["data"]["refresh_token"] == "refresh-1"
    assert imap_server.logins == [("oauth2", "user@example.com", "access-2")]
    assert [message.uid for message in messages] == [1, 2]
    assert position.mailboxes == {"INBOX": 2}
    stored = flow.token_store.get(expired_oauth_account.oauth_credential_id)
    assert stored.expires_at == clock["now"] + timedelta(hours=1)


def test_rejected_refresh_ends_cycle_with_status_note(
    imap_server, make_connection, flow, fake_session, expired_oauth_account
) -> None:
    imap_server.add_mailbox("INBOX", _messages([5, 6]))
    fake_session.queue(400, {"error": "invalid_grant", "error_description": "Token revoked"})
    sleeps = []
    connection = make_connection(
        account=expired_oauth_account,
        resolver=AuthResolver(expired_oauth_account, flow),
        sleeps=sleeps,
    )

    messages, position = _run(ImapSyncEngine(connection), SyncPosition(mailboxes={"INBOX": 4}))

    assert messages == []
    assert len(fake_session.calls) == 1
    assert imap_server.logins == []
    assert sleeps == []
    assert position.mailboxes == {"INBOX": 4}
    assert position.status_message == AUTH_FAILURE_STATUS


def test_parse_failure_aborts_mailbox_by_default(imap_server, make_engine) -> None:
    inbox = _messages([1, 3])
    inbox[2] = UNPARSEABLE
    imap_server.add_mailbox("INBOX", inbox)
    imap_server.add_mailbox("Sent", _messages([4]))
    engine = make_engine()

    messages, position = _run(engine)

    assert [(message.path, message.uid) for message in messages] == [("INBOX", 1), ("Sent", 4)]
    assert position.mailboxes == {"INBOX": 1, "Sent": 4}
    assert "INBOX" in engine.mailbox_errors
    assert position.status_message is None


def test_parse_failure_can_be_skipped(imap_server, make_engine) -> None:
    inbox = _messages([1, 3])
    inbox[2] = UNPARSEABLE
    imap_server.add_mailbox("INBOX", inbox)

    messages, position = _run(make_engine(parse_failure_policy=ParseFailurePolicy.SKIP))

    assert [message.uid for message in messages] == [1, 3]
    assert position.mailboxes == {"INBOX": 3}


def test_leaving_early_logs_out_and_keeps_partial_position(imap_server, make_engine) -> None:
    imap_server.add_mailbox("INBOX", _messages([1, 2, 3]))
    engine = make_engine()

    with engine.fetch_messages() as messages:
        first = next(messages)

    assert first.uid == 1
    assert imap_server.logouts == 1
    assert engine.connection.state is ConnectionState.DISCONNECTED
    assert engine.get_updated_sync_position().mailboxes == {"INBOX": 1}


def test_error_inside_block_still_logs_out(imap_server, make_engine) -> None:
    imap_server.add_mailbox("INBOX", _messages([1]))
    engine = make_engine()

    with pytest.raises(RuntimeError):
        with engine.fetch_messages() as messages:
            next(messages)
            raise RuntimeError("consumer failed")

    assert imap_server.logouts == 1


def test_test_connection_logs_out(imap_server, make_engine) -> None:
    assert make_engine().test_connection() is True
    assert imap_server.logouts == 1


def test_mailbox_info_flags_are_case_insensitive() -> None:
    assert MailboxInfo("Spam", ("\\SPAM",)).is_trash_or_junk
    assert not MailboxInfo("Foo", ("\\NoSelect",)).selectable
    assert MailboxInfo("INBOX", ("\\HasNoChildren",)).selectable


def test_options_from_settings() -> None:
    options = SyncOptions.from_settings(
        SyncSettings(batch_size=50, all_inclusive_archive=True, parse_failure_policy="skip")
    )
    assert options.batch_size == 50
    assert options.all_inclusive_archive is True
    assert options.parse_failure_policy is ParseFailurePolicy.SKIP
