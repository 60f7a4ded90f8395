"""MIME normalizer: raw RFC 822 bytes from the mail store to NormalizedMessage.

Normalization is deterministic.  The same raw bytes, flags and internal
date always produce an identical :class:`NormalizedMessage`; nothing here
reads the clock.
"""

from __future__ import annotations

import email
import email.errors
import email.policy
import email.utils
import hashlib
import re
from datetime import UTC, datetime
from email.message import Message

from .errors import ParseError
from .models import Address, AttachmentMeta, Direction, FetchedEmail, NormalizedMessage

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)
NO_SUBJECT = "(no subject)"
SNIPPET_LENGTH = 200
DEFAULT_ATTACHMENT_NAME = "attachment"

_MSG_ID_RE = re.compile(r"<[^<>\s]+>")
_TAG_RE = re.compile(r"<[^>]*>")
_WS_RE = re.compile(r"\s+")

# Errors the stdlib email package raises on hostile input.
_EMAIL_ERRORS = (
    email.errors.MessageError,
    ValueError,
    TypeError,
    LookupError,
    AttributeError,
    UnicodeError,
)


def make_snippet(body_text: str | None, body_html: str | None = None) -> str:
    """First 200 characters of the body with whitespace collapsed."""
    source = body_text if body_text else _TAG_RE.sub(" ", body_html or "")
    return _WS_RE.sub(" ", source).strip()[:SNIPPET_LENGTH]


def content_key(raw_bytes: bytes) -> str:
    """Dedup key for a message without a Message-ID.

    Derived from the raw bytes rather than the UID, which is only unique
    within one UIDVALIDITY.
    """
    return "raw-sha256:" + hashlib.sha256(raw_bytes).hexdigest()


class MimeParser:
    """Stateless parser: raw message bytes to :class:`NormalizedMessage`."""

    def normalize(self, fetched: FetchedEmail, *, mailbox_address: str) -> NormalizedMessage:
        """Normalize one fetched message.

        Raises :class:`ParseError` when the bytes cannot be interpreted as
        a message at all; missing or duplicated headers are tolerated.
        """
        if not fetched.raw_bytes or not fetched.raw_bytes.strip():
            raise ParseError(f"Message uid={fetched.uid} is empty")
        try:
            msg = email.message_from_bytes(fetched.raw_bytes, policy=email.policy.default)
            return self._normalize(msg, fetched, mailbox_address.strip().lower())
        except _EMAIL_ERRORS as exc:
            raise ParseError(f"Message uid={fetched.uid} could not be parsed: {exc}") from exc

    def extract_attachment(self, raw_bytes: bytes, part_index: int) -> bytes:
        """Decode the payload of the MIME part at *part_index*."""
        try:
            msg = email.message_from_bytes(raw_bytes, policy=email.policy.default)
            for index, part in enumerate(msg.walk()):
                if index == part_index:
                    return _payload_bytes(part)
        except _EMAIL_ERRORS as exc:
            raise ParseError(f"Attachment part {part_index} could not be decoded: {exc}") from exc
        raise ParseError(f"Message has no MIME part {part_index}")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _normalize(self, msg: Message, fetched: FetchedEmail, mailbox_address: str) -> NormalizedMessage:
        senders = _addresses(msg, "From") or _addresses(msg, "Sender")
        sender = senders[0] if senders else Address(email="")

        message_id = _first_header(msg, "Message-ID")
        in_reply_to = _first_header(msg, "In-Reply-To")
        if in_reply_to:
            match = _MSG_ID_RE.search(in_reply_to)
            in_reply_to = match.group(0) if match else in_reply_to
        references = tuple(_MSG_ID_RE.findall(_first_header(msg, "References") or ""))

        subject = _WS_RE.sub(" ", _first_header(msg, "Subject") or "").strip() or NO_SUBJECT

        body_text, body_html, attachments = self._walk(msg)

        return NormalizedMessage(
            provider_message_id=message_id or content_key(fetched.raw_bytes),
            message_id=message_id,
            in_reply_to=in_reply_to,
            references=references,
            subject=subject,
            sender=sender,
            to=tuple(_addresses(msg, "To")),
            cc=tuple(_addresses(msg, "Cc")),
            bcc=tuple(_addresses(msg, "Bcc")),
            body_text=body_text,
            body_html=body_html,
            snippet=make_snippet(body_text, body_html),
            sent_at=_sent_at(msg, fetched),
            direction=Direction.SENT if sender.email and sender.email == mailbox_address else Direction.RECEIVED,
            is_seen="\\Seen" in fetched.flags,
            imap_uid=fetched.uid,
            attachments=tuple(attachments),
        )

    def _walk(self, msg: Message) -> tuple[str | None, str | None, list[AttachmentMeta]]:
        """Single depth-first pass collecting bodies and attachment metadata."""
        body_text: str | None = None
        body_html: str | None = None
        attachments: list[AttachmentMeta] = []
        seen_cids: set[str] = set()

        for index, part in enumerate(msg.walk()):
            # Containers have no content of their own
            if part.is_multipart():
                continue

            content_type = part.get_content_type()
            disposition = part.get_content_disposition()
            filename = part.get_filename()

            if disposition != "attachment" and not filename and content_type in ("text/plain", "text/html"):
                if content_type == "text/plain" and body_text is None:
                    body_text = _part_text(part)
                elif content_type == "text/html" and body_html is None:
                    body_html = _part_text(part)
                continue

            content_id = _content_id(part)
            if content_id is not None:
                if content_id in seen_cids:
                    content_id = None
                else:
                    seen_cids.add(content_id)

            attachments.append(
                AttachmentMeta(
                    part_index=index,
                    file_name=filename or DEFAULT_ATTACHMENT_NAME,
                    content_type=content_type,
                    size_bytes=len(_payload_bytes(part)),
                    is_inline=disposition == "inline" or (disposition is None and content_id is not None),
                    content_id=content_id,
                )
            )

        return body_text, body_html, attachments


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _first_header(msg: Message, name: str) -> str | None:
    """First non-empty value of a header that may be repeated."""
    for value in msg.get_all(name) or []:
        text = str(value).strip()
        if text:
            return text
    return None


def _addresses(msg: Message, name: str) -> list[Address]:
    """All addresses across every occurrence of *name*, lower-cased and de-duplicated."""
    values = [str(v) for v in msg.get_all(name) or []]
    result: list[Address] = []
    seen: set[str] = set()
    for display_name, addr in email.utils.getaddresses(values):
        addr = addr.strip().lower()
        if "@" not in addr or addr in seen:
            continue
        seen.add(addr)
        result.append(Address(email=addr, name=display_name.strip()))
    return result


def _sent_at(msg: Message, fetched: FetchedEmail) -> datetime:
    raw = _first_header(msg, "Date")
    if raw:
        try:
            parsed = email.utils.parsedate_to_datetime(raw)
        except (TypeError, ValueError, IndexError):
            parsed = None
        if parsed is not None:
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=UTC)
            return parsed.astimezone(UTC)
    if fetched.internal_date is not None:
        return fetched.internal_date.astimezone(UTC)
    return EPOCH


def _payload_bytes(part: Message) -> bytes:
    payload = part.get_payload(decode=True)
    return payload if isinstance(payload, bytes) else b""


def _part_text(part: Message) -> str:
    try:
        content = part.get_content()
    except (LookupError, UnicodeError):
        # Unknown or lying charset
        return _payload_bytes(part).decode("utf-8", errors="replace")
    if isinstance(content, bytes):
        return content.decode("utf-8", errors="replace")
    return str(content)


def _content_id(part: Message) -> str | None:
    value = part.get("Content-ID")
    if value is None:
        return None
    cid = str(value).strip().strip("<>").strip()
    return cid or None
