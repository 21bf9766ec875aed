"""Incremental IMAP mailbox synchronization.

One sync cycle walks every selectable mailbox of an account and yields the
messages whose UID is above the last persisted high-water mark for that
mailbox, in ascending UID order, as ``NormalizedMessage`` objects.

Usage::

    engine = ImapSyncEngine(connection, parser=EmailParser())
    with engine.fetch_messages(position) as messages:
        for message in messages:
            archive(message)
    store.upsert(source_id, engine.get_updated_sync_position())

Mailboxes are processed sequentially and isolated from each other: when one
mailbox exhausts its retries or hits an unparseable message, the failure is
logged and recorded and the cycle moves on to the next mailbox. A credential
that cannot produce a token ends the cycle with a status note instead of an
exception. The message sequence is a scoped resource; leaving the ``with``
block on any path closes the sequence and logs out.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from mailarchive.configuration.settings import SyncSettings
from mailarchive.errors import (
    AuthorizationError,
    MailboxConnectionError,
    MailboxLoginError,
    MessageParseError,
    RetriesExhaustedError,
)
from mailarchive.privacy.encryption import EncryptionError

from .connection_manager import ConnectionState, ImapConnection
from .email_parser import EmailParser, NormalizedMessage
from .sync_state import SyncPosition

logger = logging.getLogger(__name__)

RATE_LIMIT_STATUS = (
    "Sync paused due to reaching the mail server rate limit. "
    "The process will automatically resume later."
)
AUTH_FAILURE_STATUS = (
    "Sync paused because the mail server or OAuth provider rejected the account "
    "credentials. Reconnect the account to resume."
)
FETCH_ITEMS = ["ENVELOPE", "BODYSTRUCTURE", "BODY.PEEK[]"]
BODY_KEYS = (b"BODY[]", b"RFC822")

_NOT_SELECTABLE = {"\\noselect", "\\nonexistent"}
_EXCLUDED_SPECIAL_USE = {"\\trash", "\\junk", "\\spam"}


class ParseFailurePolicy(str, Enum):
    """What to do when one message in a mailbox cannot be parsed."""

    ABORT_MAILBOX = "abort_mailbox"
    SKIP = "skip"


@dataclass(frozen=True)
class MailboxInfo:
    """One entry of the server's mailbox list."""

    path: str
    flags: Tuple[str, ...] = ()
    delimiter: Optional[str] = None

    @property
    def normalized_flags(self) -> set:
        return {flag.lower() for flag in self.flags}

    @property
    def selectable(self) -> bool:
        return not (self.normalized_flags & _NOT_SELECTABLE)

    @property
    def is_trash_or_junk(self) -> bool:
        return bool(self.normalized_flags & _EXCLUDED_SPECIAL_USE)


@dataclass
class SyncOptions:
    batch_size: int = 250
    all_inclusive_archive: bool = False
    parse_failure_policy: ParseFailurePolicy = ParseFailurePolicy.ABORT_MAILBOX

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> "SyncOptions":
        return cls(
            batch_size=settings.batch_size,
            all_inclusive_archive=settings.all_inclusive_archive,
            parse_failure_policy=ParseFailurePolicy(settings.parse_failure_policy),
        )


@dataclass
class ImapSyncEngine:
    """Drives one sync cycle over an ``ImapConnection``."""

    connection: ImapConnection
    parser: EmailParser = field(default_factory=EmailParser)
    options: SyncOptions = field(default_factory=SyncOptions)

    mailbox_errors: Dict[str, str] = field(default_factory=dict, init=False)
    _new_max_uids: Dict[str, int] = field(default_factory=dict, init=False)
    _status_message: Optional[str] = field(default=None, init=False)

    # ------------------------------------------------------------------
    # Mailbox enumeration
    # ------------------------------------------------------------------

    def list_mailboxes(self) -> List[MailboxInfo]:
        """List the mailboxes this cycle should archive.

        Non-selectable mailboxes are always dropped. Trash and Junk are
        dropped unless ``all_inclusive_archive`` is enabled.
        """
        raw = self.connection.with_retry(lambda client: client.list_folders(), "list mailboxes")
        mailboxes = [_mailbox_info(entry) for entry in raw]

        selected = []
        for mailbox in mailboxes:
            if not mailbox.selectable:
                continue
            if mailbox.is_trash_or_junk and not self.options.all_inclusive_archive:
                logger.debug("Skipping trash/junk mailbox", extra={"mailbox": mailbox.path})
                continue
            selected.append(mailbox)
        return selected

    # ------------------------------------------------------------------
    # Message fetching
    # ------------------------------------------------------------------

    def sync_mailbox(self, path: str, last_uid: int) -> Iterator[NormalizedMessage]:
        """Yield messages of ``path`` with UID greater than ``last_uid``.

        Raises:
            RetriesExhaustedError: A protocol operation kept failing
            AuthorizationError: The OAuth credential could not produce a token
            MessageParseError: A message failed to parse under the
                ``abort_mailbox`` policy
        """
        self._new_max_uids.setdefault(path, last_uid)
        current_max = self.connection.with_retry(
            lambda client: _highest_uid(client, path), f"select {path}"
        )
        if current_max <= last_uid:
            return

        start = last_uid + 1
        while start <= current_max:
            end = min(start + self.options.batch_size - 1, current_max)
            batch = self.connection.with_retry(
                lambda client: _fetch_range(client, path, start, end),
                f"fetch {path} {start}:{end}",
            )
            self.connection.state = ConnectionState.FETCHING
            for uid in sorted(batch):
                if uid <= last_uid:
                    continue
                raw = _message_source(batch[uid])
                if raw is None:
                    logger.warning(
                        "Message without source skipped", extra={"mailbox": path, "uid": uid}
                    )
                    continue
                try:
                    message = self.parser.parse(raw, path, uid)
                except MessageParseError:
                    if self.options.parse_failure_policy is ParseFailurePolicy.ABORT_MAILBOX:
                        raise
                    logger.warning(
                        "Skipping unparseable message", extra={"mailbox": path, "uid": uid}
                    )
                    continue
                if uid > self._new_max_uids[path]:
                    self._new_max_uids[path] = uid
                yield message
            self.connection.state = ConnectionState.CONNECTED
            start = end + 1

    def _iter_messages(self, position: SyncPosition) -> Iterator[NormalizedMessage]:
        self._new_max_uids = dict(position.mailboxes)
        self.mailbox_errors = {}
        self._status_message = None

        try:
            mailboxes = self.list_mailboxes()
        except (AuthorizationError, EncryptionError) as exc:
            logger.error("Sync cycle stopped by credential failure", extra={"error": exc.code})
            self._status_message = AUTH_FAILURE_STATUS
            return

        for mailbox in mailboxes:
            path = mailbox.path
            try:
                yield from self.sync_mailbox(path, position.last_uid(path))
            except RetriesExhaustedError as exc:
                logger.error(
                    "Mailbox sync failed after retries",
                    extra={"mailbox": path, "attempts": exc.attempts},
                )
                self.mailbox_errors[path] = exc.message
                if isinstance(exc.__cause__, MailboxLoginError):
                    self._status_message = AUTH_FAILURE_STATUS
                else:
                    self._status_message = RATE_LIMIT_STATUS
            except MailboxConnectionError as exc:
                logger.error("Mailbox sync failed", extra={"mailbox": path, "error": exc.code})
                self.mailbox_errors[path] = exc.message
                self._status_message = RATE_LIMIT_STATUS
            except (AuthorizationError, EncryptionError) as exc:
                # Every remaining mailbox needs the same token.
                logger.error(
                    "Mailbox sync stopped by credential failure",
                    extra={"mailbox": path, "error": exc.code},
                )
                self.mailbox_errors[path] = exc.message
                self._status_message = AUTH_FAILURE_STATUS
                return
            except MessageParseError as exc:
                logger.error(
                    "Mailbox sync aborted by unparseable message",
                    extra={"mailbox": path, "uid": exc.uid},
                )
                self.mailbox_errors[path] = exc.message

    @contextmanager
    def fetch_messages(
        self, position: Optional[SyncPosition] = None
    ) -> Iterator[Iterator[NormalizedMessage]]:
        """Open a sync cycle and yield its lazy message sequence.

        The connection is logged out when the block exits, whether the
        sequence was exhausted, abandoned early or interrupted by an error.
        """
        messages = self._iter_messages(position or SyncPosition())
        try:
            yield messages
        finally:
            messages.close()
            self.connection.logout()

    def get_updated_sync_position(self) -> SyncPosition:
        """Position reflecting every message yielded so far in this cycle."""
        return SyncPosition(
            mailboxes=dict(self._new_max_uids), status_message=self._status_message
        )

    def test_connection(self) -> bool:
        """Connect, authenticate and log out."""
        try:
            self.connection.with_retry(lambda client: client.noop(), "noop")
        finally:
            self.connection.logout()
        return True


# ---------------------------------------------------------------------------
# Protocol helpers
# ---------------------------------------------------------------------------


def _decode(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _mailbox_info(entry: Tuple[Any, Any, Any]) -> MailboxInfo:
    flags, delimiter, name = entry
    return MailboxInfo(
        path=_decode(name),
        flags=tuple(_decode(flag) for flag in flags or ()),
        delimiter=_decode(delimiter) if delimiter is not None else None,
    )


def _highest_uid(client: Any, path: str) -> int:
    info = client.select_folder(path, readonly=True)
    if not info.get(b"EXISTS"):
        return 0
    # UID FETCH * addresses the message with the highest UID
    response = client.fetch("*", ["UID"])
    return max(response.keys()) if response else 0


def _fetch_range(client: Any, path: str, start: int, end: int) -> Dict[int, Dict[bytes, Any]]:
    client.select_folder(path, readonly=True)
    return client.fetch(f"{start}:{end}", FETCH_ITEMS)


def _message_source(data: Dict[bytes, Any]) -> Optional[bytes]:
    for key in BODY_KEYS:
        if data.get(key):
            return data[key]
    return None


__all__ = [
    "ImapSyncEngine",
    "MailboxInfo",
    "ParseFailurePolicy",
    "AUTH_FAILURE_STATUS",
    "RATE_LIMIT_STATUS",
    "SyncOptions",
]
