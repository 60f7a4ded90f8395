"""Conversation threading.

A message joins a conversation by, in order:

1. its ``In-Reply-To`` or ``References`` naming a message already stored
   for the user,
2. a stored message naming *this* message in its threading headers (so the
   outcome does not depend on which of the two arrived first),
3. the same normalized subject plus at least one shared participant.

Otherwise it starts a new conversation.  The first match wins and
conversations are never merged afterwards.
"""

from __future__ import annotations

import re
import uuid
from typing import Any

import structlog
from sqlalchemy import case, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from .db.models import Attachment, Conversation, Message
from .models import Address, NormalizedMessage
from .parser import NO_SUBJECT, make_snippet

logger = structlog.get_logger()

_REPLY_PREFIX_RE = re.compile(r"^\s*(?:re|fwd?)\s*(?:\[\d+\])?\s*:\s*", re.IGNORECASE)


def normalize_subject(subject: str | None) -> str:
    """Strip any run of leading ``Re:`` / ``Fw:`` / ``Fwd:`` tokens and trim."""
    text = (subject or "").strip()
    while True:
        stripped = _REPLY_PREFIX_RE.sub("", text, count=1)
        if stripped == text:
            return text.strip()
        text = stripped


def thread_key(subject: str | None) -> str:
    """Case-folded normalized subject; empty when the subject cannot group messages."""
    key = normalize_subject(subject).casefold()
    return "" if key in ("", NO_SUBJECT) else key


def merge_participants(
    existing: list[dict[str, Any]],
    incoming: list[tuple[str, Address]],
) -> list[dict[str, Any]]:
    """Append unseen participants, de-duplicated by case-insensitive email."""
    merged = [dict(p) for p in existing]
    seen = {p["email"].lower() for p in merged}
    for role, address in incoming:
        key = address.email.lower()
        if not key or key in seen:
            continue
        seen.add(key)
        merged.append({"role": role, "email": key, "name": address.name})
    return merged


class ThreadingEngine:
    """Assigns normalized messages to conversations inside a store transaction."""

    async def assign(
        self,
        session: AsyncSession,
        user_id: uuid.UUID,
        message: NormalizedMessage,
    ) -> Conversation:
        conversation = (
            await self._by_headers(session, user_id, message)
            or await self._by_reverse_headers(session, user_id, message)
            or await self._by_subject(session, user_id, message)
        )
        if conversation is None:
            conversation = Conversation(
                id=uuid.uuid4(),
                user_id=user_id,
                subject=normalize_subject(message.subject) or NO_SUBJECT,
                thread_key=thread_key(message.subject),
                participants=[],
            )
            session.add(conversation)
            logger.debug("conversation_created", conversation_id=str(conversation.id))

        conversation.participants = merge_participants(conversation.participants or [], message.participants())
        return conversation

    async def _by_headers(
        self,
        session: AsyncSession,
        user_id: uuid.UUID,
        message: NormalizedMessage,
    ) -> Conversation | None:
        candidates = [h for h in (message.in_reply_to, *message.references) if h]
        if not candidates:
            return None
        rows = await session.execute(
            select(Message.message_id_header, Message.conversation_id).where(
                Message.user_id == user_id,
                Message.message_id_header.in_(candidates),
            )
        )
        found = {header: conversation_id for header, conversation_id in rows.all()}
        for header in candidates:
            if header in found:
                return await session.get(Conversation, found[header])
        return None

    async def _by_reverse_headers(
        self,
        session: AsyncSession,
        user_id: uuid.UUID,
        message: NormalizedMessage,
    ) -> Conversation | None:
        if not message.message_id:
            return None
        rows = await session.execute(
            select(Message.conversation_id, Message.in_reply_to, Message.reference_ids)
            .where(
                Message.user_id == user_id,
                or_(
                    Message.in_reply_to == message.message_id,
                    Message.reference_ids.contains(message.message_id, autoescape=True),
                ),
            )
            .order_by(Message.sent_at, Message.created_at)
        )
        for conversation_id, in_reply_to, reference_ids in rows.all():
            if in_reply_to == message.message_id or message.message_id in reference_ids.split():
                return await session.get(Conversation, conversation_id)
        return None

    async def _by_subject(
        self,
        session: AsyncSession,
        user_id: uuid.UUID,
        message: NormalizedMessage,
    ) -> Conversation | None:
        key = thread_key(message.subject)
        if not key:
            return None
        emails = {address.email for _, address in message.participants() if address.email}
        if not emails:
            return None
        result = await session.execute(
            select(Conversation)
            .where(Conversation.user_id == user_id, Conversation.thread_key == key)
            .order_by(Conversation.created_at, Conversation.id)
        )
        for conversation in result.scalars():
            if emails & {p["email"].lower() for p in conversation.participants or []}:
                return conversation
        return None


async def recompute_aggregates(session: AsyncSession, conversation: Conversation) -> None:
    """Recompute counts, attachment flag, latest timestamp and snippet from member messages."""
    await session.flush()
    row = (
        await session.execute(
            select(
                func.count(Message.id),
                func.coalesce(func.sum(case((Message.is_read.is_(False), 1), else_=0)), 0),
                func.max(Message.sent_at),
            ).where(Message.conversation_id == conversation.id)
        )
    ).one()
    message_count, unread_count, latest = row

    attachment_count = (
        await session.execute(
            select(func.count(Attachment.id))
            .join(Message, Message.id == Attachment.message_id)
            .where(Message.conversation_id == conversation.id)
        )
    ).scalar_one()

    latest_message = (
        await session.execute(
            select(Message.snippet, Message.body_text, Message.body_html)
            .where(Message.conversation_id == conversation.id)
            .order_by(Message.sent_at.desc(), Message.created_at.desc())
            .limit(1)
        )
    ).first()

    conversation.message_count = int(message_count)
    conversation.unread_count = int(unread_count)
    conversation.has_attachments = attachment_count > 0
    conversation.latest_message_at = latest
    if latest_message is not None:
        snippet, body_text, body_html = latest_message
        conversation.snippet = snippet or make_snippet(body_text, body_html)

