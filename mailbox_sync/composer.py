"""Builds outbound reply and forward messages from a stored conversation."""

from __future__ import annotations

import html
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from email.message import EmailMessage
from email.utils import format_datetime, formataddr, make_msgid

from .errors import SendError
from .models import Address, OutgoingAttachment
from .threader import normalize_subject

FORWARD_SEPARATOR = "---------- Forwarded message ---------"


@dataclass
class ComposedMessage:
    """An outbound message plus the metadata the store records once it is accepted."""

    message: EmailMessage
    message_id: str
    subject: str
    sender: Address
    to: list[Address]
    cc: list[Address] = field(default_factory=list)
    bcc: list[Address] = field(default_factory=list)
    body_text: str = ""
    body_html: str | None = None
    in_reply_to: str | None = None
    references: list[str] = field(default_factory=list)
    attachments: list[OutgoingAttachment] = field(default_factory=list)

    @property
    def envelope_recipients(self) -> list[str]:
        seen: list[str] = []
        for address in (*self.to, *self.cc, *self.bcc):
            if address.email not in seen:
                seen.append(address.email)
        return seen


def reply_subject(subject: str) -> str:
    base = normalize_subject(subject)
    return f"Re: {base}" if base else "Re:"


def forward_subject(subject: str) -> str:
    base = normalize_subject(subject)
    return f"Fwd: {base}" if base else "Fwd:"


def unique_content_ids(attachments: Sequence[OutgoingAttachment]) -> list[OutgoingAttachment]:
    """Strip angle brackets from content ids and clear any repeat of an earlier one.

    The first attachment claiming a content id keeps it, the same rule the
    parser applies to inbound mail.
    """
    seen: set[str] = set()
    result: list[OutgoingAttachment] = []
    for attachment in attachments:
        content_id = (attachment.content_id or "").strip().strip("<>").strip() or None
        if content_id is not None:
            if content_id in seen:
                content_id = None
            else:
                seen.add(content_id)
        result.append(replace(attachment, content_id=content_id))
    return result


def compose(
    *,
    sender: Address,
    to: Sequence[Address],
    subject: str,
    body_text: str,
    body_html: str | None = None,
    cc: Sequence[Address] = (),
    bcc: Sequence[Address] = (),
    in_reply_to: str | None = None,
    references: Sequence[str] = (),
    attachments: Sequence[OutgoingAttachment] = (),
    now: datetime,
) -> ComposedMessage:
    """Assemble a MIME message.

    Text and HTML bodies become ``multipart/alternative``; attachments wrap
    it in ``multipart/mixed``.  Bcc recipients only appear in the envelope,
    and a content id repeated across attachments is kept only on the first.
    """
    if not to and not cc and not bcc:
        raise SendError("At least one recipient is required")
    attachments = unique_content_ids(attachments)

    domain = sender.email.rpartition("@")[2] or None
    message_id = make_msgid(domain=domain)

    msg = EmailMessage()
    msg["From"] = formataddr((sender.name, sender.email))
    if to:
        msg["To"] = ", ".join(formataddr((a.name, a.email)) for a in to)
    if cc:
        msg["Cc"] = ", ".join(formataddr((a.name, a.email)) for a in cc)
    msg["Subject"] = subject
    msg["Date"] = format_datetime(now)
    msg["Message-ID"] = message_id
    if in_reply_to:
        msg["In-Reply-To"] = in_reply_to
    if references:
        msg["References"] = " ".join(references)

    msg.set_content(body_text or "")
    if body_html:
        msg.add_alternative(body_html, subtype="html")

    for attachment in attachments:
        maintype, _, subtype = attachment.content_type.partition("/")
        msg.add_attachment(
            attachment.data,
            maintype=maintype or "application",
            subtype=subtype or "octet-stream",
            filename=attachment.file_name,
            disposition="inline" if attachment.is_inline else "attachment",
            cid=f"<{attachment.content_id}>" if attachment.content_id else None,
        )

    return ComposedMessage(
        message=msg,
        message_id=message_id,
        subject=subject,
        sender=sender,
        to=list(to),
        cc=list(cc),
        bcc=list(bcc),
        body_text=body_text or "",
        body_html=body_html,
        in_reply_to=in_reply_to,
        references=list(references),
        attachments=list(attachments),
    )


def quote_forwarded(
    *,
    sender: str,
    sent_at: datetime,
    subject: str,
    to: Sequence[str],
    body_text: str | None,
) -> str:
    """Plain-text header block and body of the message being forwarded."""
    lines = [
        FORWARD_SEPARATOR,
        f"From: {sender}",
        f"Date: {format_datetime(sent_at)}",
        f"Subject: {subject}",
        f"To: {', '.join(to)}",
        "",
        body_text or "",
    ]
    return "\n".join(lines)


def quote_forwarded_html(quoted_text: str) -> str:
    return f"<blockquote>{html.escape(quoted_text).replace(chr(10), '<br>')}</blockquote>"
