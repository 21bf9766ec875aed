"""Parse raw RFC822/MIME messages into ``NormalizedMessage`` records.

The parser uses the standard library ``email`` package with the modern
policy. HTML-only messages get a plain-text body rendered with html2text so
every archived message has searchable text.

Thread identifier precedence
----------------------------
Downstream conversation grouping depends on this order, so it must stay
stable:

1. ``X-GM-THRID`` (Gmail conversation id) as ``gm:<value>``
2. ``Thread-Index`` (Exchange/Outlook): the first 22 decoded bytes identify
   the conversation, as ``ti:<hex>``
3. the first Message-ID in ``References`` (the thread root)
4. ``In-Reply-To``
5. the message's own ``Message-ID``
6. ``sha256:<hex>`` of the raw header block

Message-ID values are normalized by stripping angle brackets and whitespace
and lower-casing.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
from datetime import datetime, timezone
from email import message_from_bytes
from email.message import EmailMessage as StdEmailMessage
from email.policy import default as email_policy
from email.utils import getaddresses, parsedate_to_datetime
from hashlib import sha256
from typing import Callable, Dict, Iterator, List, Optional, Tuple

import html2text
from pydantic import BaseModel, Field

from mailarchive.errors import MessageParseError

logger = logging.getLogger(__name__)

_MESSAGE_ID_RE = re.compile(r"<([^<>]+)>")
_THREAD_INDEX_ROOT_BYTES = 22


class EmailAddress(BaseModel):
    """Single participant of a message, in header order."""

    name: str = ""
    address: str = ""


class Attachment(BaseModel):
    """Non-body MIME part with its decoded content."""

    filename: str = Field(default="untitled")
    content_type: str = Field(default="application/octet-stream")
    size: int = Field(default=0, ge=0)
    content: bytes = Field(default=b"", repr=False)


class NormalizedMessage(BaseModel):
    """Archive-ready representation of one mailbox message."""

    id: str = Field(..., description="Message-ID header, or the UID when absent")
    uid: int = Field(..., ge=1)
    thread_id: str
    from_addresses: List[EmailAddress] = Field(default_factory=list)
    to: List[EmailAddress] = Field(default_factory=list)
    cc: List[EmailAddress] = Field(default_factory=list)
    bcc: List[EmailAddress] = Field(default_factory=list)
    subject: str = ""
    body: str = ""
    html: str = ""
    headers: Dict[str, List[str]] = Field(default_factory=dict)
    raw_headers: str = ""
    attachments: List[Attachment] = Field(default_factory=list)
    received_at: datetime
    eml: bytes = Field(..., repr=False)
    path: str

    @property
    def has_attachments(self) -> bool:
        return bool(self.attachments)


class EmailParser:
    """Parse raw messages into ``NormalizedMessage``."""

    def __init__(self, *, now: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self._now = now

        # Configure html2text for clean conversion
        self.html_converter = html2text.HTML2Text()
        self.html_converter.ignore_links = False
        self.html_converter.ignore_images = True
        self.html_converter.body_width = 0  # No line wrapping

    def parse(self, raw_message: bytes, mailbox_path: str, uid: int) -> NormalizedMessage:
        """Parse a raw message fetched from ``mailbox_path``.

        Args:
            raw_message: Full RFC822 source
            mailbox_path: Path of the mailbox the message was fetched from
            uid: Message UID within that mailbox

        Returns:
            The normalized message

        Raises:
            MessageParseError: If the input is empty, has no header block, or
                its MIME structure cannot be decoded
        """
        if not raw_message or not raw_message.strip():
            raise MessageParseError("Empty message source", uid=uid, mailbox_path=mailbox_path)

        try:
            msg = message_from_bytes(raw_message, policy=email_policy)
            if not msg.keys():
                raise MessageParseError(
                    "Message has no headers", uid=uid, mailbox_path=mailbox_path
                )

            raw_headers = _raw_header_block(raw_message)
            headers = _collect_headers(msg)
            message_id = _header(msg, "Message-ID").strip()
            plain, html = self._extract_body(msg)

            return NormalizedMessage(
                id=message_id or str(uid),
                uid=uid,
                thread_id=derive_thread_id(headers, raw_headers),
                from_addresses=_addresses(msg, "From"),
                to=_addresses(msg, "To"),
                cc=_addresses(msg, "Cc"),
                bcc=_addresses(msg, "Bcc"),
                subject=_header(msg, "Subject").strip(),
                body=self._normalize_body(plain, html),
                html=html or "",
                headers=headers,
                raw_headers=raw_headers,
                attachments=self._extract_attachments(msg),
                received_at=self._extract_date(msg),
                eml=raw_message,
                path=mailbox_path,
            )
        except MessageParseError:
            raise
        except Exception as e:
            logger.error(
                "Failed to parse email message",
                extra={"uid": uid, "mailbox_path": mailbox_path, "error": type(e).__name__},
            )
            raise MessageParseError(
                f"Email parsing failed: {e}", uid=uid, mailbox_path=mailbox_path
            ) from e

    # ------------------------------------------------------------------
    # Body and attachments
    # ------------------------------------------------------------------

    def _extract_body(self, msg: StdEmailMessage) -> Tuple[Optional[str], Optional[str]]:
        """Return the first plain-text and HTML body parts."""
        body_plain = None
        body_html = None

        for part in _leaf_parts(msg):
            if _is_attachment(part):
                continue
            content_type = part.get_content_type()
            if content_type == "text/plain" and body_plain is None:
                body_plain = _text_content(part)
            elif content_type == "text/html" and body_html is None:
                body_html = _text_content(part)

        return body_plain, body_html

    def _normalize_body(self, plain: Optional[str], html: Optional[str]) -> str:
        if plain is not None:
            return plain.strip()
        if html:
            return self.html_converter.handle(html).strip()
        return ""

    def _extract_attachments(self, msg: StdEmailMessage) -> List[Attachment]:
        if not msg.is_multipart():
            return []
        return [_attachment(part) for part in _leaf_parts(msg) if _is_attachment(part)]

    def _extract_date(self, msg: StdEmailMessage) -> datetime:
        date_header = _header(msg, "Date")
        if date_header:
            try:
                parsed = parsedate_to_datetime(date_header)
                if parsed.tzinfo is None:
                    parsed = parsed.replace(tzinfo=timezone.utc)
                return parsed
            except (TypeError, ValueError):
                logger.warning("Unparseable Date header, using current time")
        return self._now()


# ---------------------------------------------------------------------------
# Thread identifier
# ---------------------------------------------------------------------------


def normalize_message_id(value: str) -> str:
    return value.strip().strip("<>").strip().lower()


def _first_message_id(value: str) -> Optional[str]:
    match = _MESSAGE_ID_RE.search(value)
    if match:
        return normalize_message_id(match.group(1)) or None
    tokens = value.split()
    return normalize_message_id(tokens[0]) if tokens else None


def derive_thread_id(headers: Dict[str, List[str]], raw_headers: str = "") -> str:
    """Derive a conversation identifier from threading headers."""

    def first(name: str) -> str:
        values = headers.get(name) or []
        return values[0].strip() if values else ""

    gm_thread = first("x-gm-thrid")
    if gm_thread:
        return f"gm:{gm_thread}"

    thread_index = first("thread-index")
    if thread_index:
        try:
            decoded = base64.b64decode(thread_index, validate=False)
        except (binascii.Error, ValueError):
            decoded = b""
        if len(decoded) >= _THREAD_INDEX_ROOT_BYTES:
            return f"ti:{decoded[:_THREAD_INDEX_ROOT_BYTES].hex()}"

    for name in ("references", "in-reply-to", "message-id"):
        value = first(name)
        if value:
            message_id = _first_message_id(value)
            if message_id:
                return message_id

    return f"sha256:{sha256(raw_headers.encode('utf-8')).hexdigest()}"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _header(msg: StdEmailMessage, name: str) -> str:
    value = msg.get(name)
    return str(value) if value is not None else ""


def _collect_headers(msg: StdEmailMessage) -> Dict[str, List[str]]:
    headers: Dict[str, List[str]] = {}
    for key, value in msg.items():
        headers.setdefault(key.lower(), []).append(str(value))
    return headers


def _raw_header_block(raw_message: bytes) -> str:
    for separator in (b"\r\n\r\n", b"\n\n"):
        index = raw_message.find(separator)
        if index != -1:
            return raw_message[:index].decode("utf-8", errors="replace")
    return raw_message.decode("utf-8", errors="replace")


def _addresses(msg: StdEmailMessage, name: str) -> List[EmailAddress]:
    values = msg.get_all(name) or []
    return [
        EmailAddress(name=display_name.strip(), address=address.strip())
        for display_name, address in getaddresses([str(value) for value in values])
        if display_name or address
    ]


def _text_content(part: StdEmailMessage) -> str:
    try:
        return part.get_content()
    except (LookupError, UnicodeError):
        payload = part.get_payload(decode=True) or b""
        return payload.decode("utf-8", errors="replace")


def _attachment(part: StdEmailMessage) -> Attachment:
    if part.get_content_maintype() == "message":
        inner = part.get_payload()
        content = inner[0].as_bytes() if isinstance(inner, list) and inner else b""
    else:
        content = part.get_payload(decode=True) or b""
    return Attachment(
        filename=part.get_filename() or "untitled",
        content_type=part.get_content_type(),
        size=len(content),
        content=content,
    )


def _leaf_parts(part: StdEmailMessage) -> Iterator[StdEmailMessage]:
    """Yield non-multipart parts depth-first; attached messages stay whole."""
    if part.get_content_maintype() == "message" and part.get_content_disposition() == "attachment":
        yield part
        return
    if part.is_multipart():
        for sub in part.iter_parts():
            yield from _leaf_parts(sub)
    else:
        yield part


def _is_attachment(part: StdEmailMessage) -> bool:
    return part.get_content_disposition() == "attachment" or bool(part.get_filename())


__all__ = [
    "Attachment",
    "EmailAddress",
    "EmailParser",
    "NormalizedMessage",
    "derive_thread_id",
    "normalize_message_id",
]
