"""Conversation store: durable messages, conversations, credentials and provider entries.

Writes that touch one user's conversations (page ingest, recording a sent
message, read/unread/archive) are serialized per user and lock the
conversation row.  Aggregate fields are always recomputed from the member
messages inside the same transaction, never set blindly.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import defaultdict
from datetime import UTC, datetime

import structlog
from sqlalchemy import Text, cast, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from .blobs import AttachmentBlobStore
from .composer import ComposedMessage
from .db.engine import Database
from .db.models import Attachment, Conversation, MailCredential, Message, ProviderSetting
from .errors import NotFoundError
from .models import (
    Address,
    ConversationFilters,
    DeliveryReceipt,
    DeliveryStatus,
    Direction,
    FetchedEmail,
    IngestResult,
    NormalizedMessage,
    ProviderDefaults,
    SecurityMode,
    ServerEndpoint,
)
from .parser import MimeParser, make_snippet
from .threader import ThreadingEngine, merge_participants, recompute_aggregates

logger = structlog.get_logger()


def _addresses(addresses) -> list[dict]:
    return [{"email": a.email, "name": a.name} for a in addresses]


def provider_defaults_from_row(row: ProviderSetting) -> ProviderDefaults:
    return ProviderDefaults(
        domain=row.domain,
        provider=row.provider,
        imap=ServerEndpoint(host=row.imap_host, port=row.imap_port, security=SecurityMode(row.imap_security)),
        smtp=ServerEndpoint(host=row.smtp_host, port=row.smtp_port, security=SecurityMode(row.smtp_security)),
        requires_app_password=row.requires_app_password,
    )


class ConversationStore:
    """Async persistence for everything the sync engine and the service read or write."""

    def __init__(
        self,
        db: Database,
        blobs: AttachmentBlobStore,
        *,
        parser: MimeParser | None = None,
        threader: ThreadingEngine | None = None,
    ) -> None:
        self._db = db
        self._blobs = blobs
        self._parser = parser or MimeParser()
        self._threader = threader or ThreadingEngine()
        self._user_locks: defaultdict[uuid.UUID, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ------------------------------------------------------------------
    # Provider entries
    # ------------------------------------------------------------------

    async def provider_entries(self) -> dict[str, ProviderDefaults]:
        return {p.domain: p for p in map(provider_defaults_from_row, await self.list_provider_settings())}

    async def list_provider_settings(self) -> list[ProviderSetting]:
        async with self._db.session() as session:
            result = await session.execute(select(ProviderSetting).order_by(ProviderSetting.domain))
            return list(result.scalars().all())

    async def save_provider_setting(self, defaults: ProviderDefaults) -> ProviderSetting:
        """Create or update the admin entry for ``defaults.domain``."""
        domain = defaults.domain.strip().lower()
        async with self._db.session() as session, session.begin():
            row = (
                await session.execute(select(ProviderSetting).where(ProviderSetting.domain == domain))
            ).scalar_one_or_none()
            if row is None:
                row = ProviderSetting(id=uuid.uuid4(), domain=domain)
                session.add(row)
            row.provider = defaults.provider
            row.imap_host = defaults.imap.host
            row.imap_port = defaults.imap.port
            row.imap_security = defaults.imap.security.value
            row.smtp_host = defaults.smtp.host
            row.smtp_port = defaults.smtp.port
            row.smtp_security = defaults.smtp.security.value
            row.requires_app_password = defaults.requires_app_password
        logger.info("provider_setting_saved", domain=domain, provider=defaults.provider)
        return row

    async def provider_setting_id(self, domain: str) -> uuid.UUID | None:
        async with self._db.session() as session:
            result = await session.execute(
                select(ProviderSetting.id).where(ProviderSetting.domain == domain.strip().lower())
            )
            return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    async def get_credential(self, user_id: uuid.UUID) -> MailCredential | None:
        async with self._db.session() as session:
            result = await session.execute(select(MailCredential).where(MailCredential.user_id == user_id))
            return result.scalar_one_or_none()

    async def save_credential(
        self,
        user_id: uuid.UUID,
        *,
        email: str,
        encrypted_password: str,
        imap: ServerEndpoint,
        smtp: ServerEndpoint,
        provider_setting_id: uuid.UUID | None = None,
    ) -> bool:
        """Insert or replace the user's credential.

        Returns whether the mailbox identity (address or IMAP host) changed,
        in which case the sync cursor no longer applies.
        """
        async with self._db.session() as session, session.begin():
            row = (
                await session.execute(select(MailCredential).where(MailCredential.user_id == user_id))
            ).scalar_one_or_none()
            if row is None:
                row = MailCredential(id=uuid.uuid4(), user_id=user_id)
                session.add(row)
                identity_changed = True
            else:
                identity_changed = row.email != email or row.imap_host != imap.host
            row.email = email
            row.encrypted_password = encrypted_password
            row.imap_host, row.imap_port, row.imap_security = imap.host, imap.port, imap.security.value
            row.smtp_host, row.smtp_port, row.smtp_security = smtp.host, smtp.port, smtp.security.value
            row.provider_setting_id = provider_setting_id
            row.sync_enabled = True
        logger.info("mail_credential_saved", user_id=str(user_id), identity_changed=identity_changed)
        return identity_changed

    async def list_sync_enabled_users(self) -> list[uuid.UUID]:
        async with self._db.session() as session:
            result = await session.execute(
                select(MailCredential.user_id).where(MailCredential.sync_enabled.is_(True))
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def ingest_page(
        self,
        user_id: uuid.UUID,
        items: list[tuple[FetchedEmail, NormalizedMessage]],
    ) -> IngestResult:
        """Persist one fetched page in a single transaction.

        Messages are applied in ascending ``sent_at`` order.  A message whose
        provider id is already stored counts as a duplicate and is skipped.
        """
        result = IngestResult()
        touched: dict[uuid.UUID, Conversation] = {}
        ordered = sorted(items, key=lambda item: (item[1].sent_at, item[0].uid))

        async with self._user_locks[user_id]:
            async with self._db.session() as session, session.begin():
                for fetched, message in ordered:
                    if await self._message_exists(session, user_id, message.provider_message_id):
                        result.duplicates += 1
                        continue
                    try:
                        async with session.begin_nested():
                            conversation = await self._threader.assign(session, user_id, message)
                            row = await self._build_message(user_id, conversation, fetched, message)
                            session.add(row)
                            await session.flush()
                    except IntegrityError:
                        # Inserted by a concurrent writer between the check and the flush
                        result.duplicates += 1
                        continue
                    touched[conversation.id] = conversation
                    result.inserted += 1

                for conversation in touched.values():
                    await self._lock_conversation(session, conversation.id)
                    await recompute_aggregates(session, conversation)

        result.conversation_ids = [str(cid) for cid in touched]
        logger.info(
            "page_ingested",
            user_id=str(user_id),
            inserted=result.inserted,
            duplicates=result.duplicates,
            conversations=len(touched),
        )
        return result

    async def _message_exists(self, session: AsyncSession, user_id: uuid.UUID, provider_message_id: str) -> bool:
        found = await session.execute(
            select(Message.id).where(
                Message.user_id == user_id,
                Message.provider_message_id == provider_message_id,
            )
        )
        return found.first() is not None

    async def _build_message(
        self,
        user_id: uuid.UUID,
        conversation: Conversation,
        fetched: FetchedEmail,
        message: NormalizedMessage,
    ) -> Message:
        row = Message(
            id=uuid.uuid4(),
            conversation_id=conversation.id,
            user_id=user_id,
            provider_message_id=message.provider_message_id,
            direction=message.direction.value,
            sender_email=message.sender.email,
            sender_name=message.sender.name,
            to_addresses=_addresses(message.to),
            cc_addresses=_addresses(message.cc),
            bcc_addresses=_addresses(message.bcc),
            subject=message.subject,
            body_text=message.body_text,
            body_html=message.body_html,
            snippet=message.snippet,
            sent_at=message.sent_at,
            is_read=message.is_seen or message.direction is Direction.SENT,
            imap_uid=message.imap_uid,
            message_id_header=message.message_id,
            in_reply_to=message.in_reply_to,
            reference_ids=" ".join(message.references),
            delivery_status=DeliveryStatus.RECEIVED.value,
        )
        attachments = []
        for position, meta in enumerate(message.attachments):
            data = self._parser.extract_attachment(fetched.raw_bytes, meta.part_index)
            key = self._blobs.build_key(user_id, message.provider_message_id, position, meta.file_name)
            await self._blobs.put(key, data, meta.content_type)
            attachments.append(
                Attachment(
                    id=uuid.uuid4(),
                    position=position,
                    file_name=meta.file_name,
                    content_type=meta.content_type,
                    size_bytes=meta.size_bytes,
                    is_inline=meta.is_inline,
                    content_id=meta.content_id,
                    blob_key=key,
                )
            )
        row.attachments = attachments
        return row

    async def record_sent(
        self,
        user_id: uuid.UUID,
        conversation_id: uuid.UUID,
        composed: ComposedMessage,
        receipt: DeliveryReceipt,
        *,
        linked_entity_id: uuid.UUID | None = None,
    ) -> Message:
        """Store a message the relay accepted and refresh the conversation."""
        async with self._user_locks[user_id]:
            async with self._db.session() as session, session.begin():
                conversation = await self._owned_conversation(session, user_id, conversation_id, lock=True)
                row = Message(
                    id=uuid.uuid4(),
                    conversation_id=conversation.id,
                    user_id=user_id,
                    provider_message_id=composed.message_id,
                    direction=Direction.SENT.value,
                    sender_email=composed.sender.email,
                    sender_name=composed.sender.name,
                    to_addresses=_addresses(composed.to),
                    cc_addresses=_addresses(composed.cc),
                    bcc_addresses=_addresses(composed.bcc),
                    subject=composed.subject,
                    body_text=composed.body_text,
                    body_html=composed.body_html,
                    snippet=make_snippet(composed.body_text, composed.body_html),
                    sent_at=receipt.accepted_at,
                    delivered_at=receipt.accepted_at,
                    is_read=True,
                    read_at=receipt.accepted_at,
                    message_id_header=composed.message_id,
                    in_reply_to=composed.in_reply_to,
                    reference_ids=" ".join(composed.references),
                    delivery_status=DeliveryStatus.ACCEPTED.value,
                )
                attachments = []
                for position, outgoing in enumerate(composed.attachments):
                    key = self._blobs.build_key(user_id, composed.message_id, position, outgoing.file_name)
                    await self._blobs.put(key, outgoing.data, outgoing.content_type)
                    attachments.append(
                        Attachment(
                            id=uuid.uuid4(),
                            position=position,
                            file_name=outgoing.file_name,
                            content_type=outgoing.content_type,
                            size_bytes=len(outgoing.data),
                            is_inline=outgoing.is_inline,
                            content_id=outgoing.content_id,
                            blob_key=key,
                        )
                    )
                row.attachments = attachments
                session.add(row)

                recipients: list[tuple[str, Address]] = [("to", a) for a in composed.to]
                recipients += [("cc", a) for a in composed.cc]
                recipients += [("bcc", a) for a in composed.bcc]
                conversation.participants = merge_participants(conversation.participants or [], recipients)
                if linked_entity_id is not None:
                    conversation.linked_entity_id = linked_entity_id
                await recompute_aggregates(session, conversation)

        logger.info(
            "sent_message_recorded",
            user_id=str(user_id),
            conversation_id=str(conversation_id),
            message_id=composed.message_id,
        )
        return row

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_conversations(
        self,
        user_id: uuid.UUID,
        filters: ConversationFilters,
    ) -> tuple[list[Conversation], int]:
        conditions = [Conversation.user_id == user_id, Conversation.is_archived.is_(filters.archived)]
        participants_text = func.lower(cast(Conversation.participants, Text))
        if filters.unread_only:
            conditions.append(Conversation.unread_count > 0)
        if filters.has_attachments is not None:
            conditions.append(Conversation.has_attachments.is_(filters.has_attachments))
        if filters.linked_entity_id is not None:
            conditions.append(Conversation.linked_entity_id == filters.linked_entity_id)
        if filters.participant:
            conditions.append(participants_text.contains(filters.participant.strip().lower(), autoescape=True))
        if filters.search:
            term = filters.search.strip().lower()
            conditions.append(
                or_(
                    func.lower(Conversation.subject).contains(term, autoescape=True),
                    func.lower(Conversation.snippet).contains(term, autoescape=True),
                    participants_text.contains(term, autoescape=True),
                )
            )

        async with self._db.session() as session:
            total = (
                await session.execute(select(func.count()).select_from(Conversation).where(*conditions))
            ).scalar_one()
            result = await session.execute(
                select(Conversation)
                .where(*conditions)
                .order_by(Conversation.latest_message_at.desc(), Conversation.created_at.desc())
                .offset((filters.page - 1) * filters.page_size)
                .limit(filters.page_size)
            )
            return list(result.scalars().all()), total

    async def get_conversation(self, user_id: uuid.UUID, conversation_id: uuid.UUID) -> Conversation:
        """Conversation with messages (oldest first) and their attachments loaded."""
        async with self._db.session() as session:
            result = await session.execute(
                select(Conversation)
                .options(selectinload(Conversation.messages).selectinload(Message.attachments))
                .where(Conversation.id == conversation_id, Conversation.user_id == user_id)
            )
            conversation = result.scalar_one_or_none()
        if conversation is None:
            raise NotFoundError("Conversation not found")
        return conversation

    async def get_attachment(
        self,
        user_id: uuid.UUID,
        conversation_id: uuid.UUID,
        attachment_id: uuid.UUID,
    ) -> Attachment:
        async with self._db.session() as session:
            result = await session.execute(
                select(Attachment)
                .join(Message, Message.id == Attachment.message_id)
                .where(
                    Attachment.id == attachment_id,
                    Message.conversation_id == conversation_id,
                    Message.user_id == user_id,
                )
            )
            attachment = result.scalar_one_or_none()
        if attachment is None:
            raise NotFoundError("Attachment not found")
        return attachment

    # ------------------------------------------------------------------
    # Read / archive state
    # ------------------------------------------------------------------

    async def mark_read(self, user_id: uuid.UUID, conversation_id: uuid.UUID) -> Conversation:
        async with self._user_locks[user_id]:
            async with self._db.session() as session, session.begin():
                conversation = await self._owned_conversation(session, user_id, conversation_id, lock=True)
                await self._mark_all_read(session, conversation.id)
                await recompute_aggregates(session, conversation)
        return conversation

    async def mark_unread(self, user_id: uuid.UUID, conversation_id: uuid.UUID) -> Conversation:
        """Flag the latest message unread so the conversation shows one unread."""
        async with self._user_locks[user_id]:
            async with self._db.session() as session, session.begin():
                conversation = await self._owned_conversation(session, user_id, conversation_id, lock=True)
                latest_id = (
                    await session.execute(
                        select(Message.id)
                        .where(Message.conversation_id == conversation.id)
                        .order_by(Message.sent_at.desc(), Message.created_at.desc())
                        .limit(1)
                    )
                ).scalar_one_or_none()
                if latest_id is not None:
                    await session.execute(
                        update(Message).where(Message.id == latest_id).values(is_read=False, read_at=None)
                    )
                await recompute_aggregates(session, conversation)
        return conversation

    async def set_archived(self, user_id: uuid.UUID, conversation_id: uuid.UUID, archived: bool) -> Conversation:
        """Archive (which also marks everything read) or unarchive."""
        async with self._user_locks[user_id]:
            async with self._db.session() as session, session.begin():
                conversation = await self._owned_conversation(session, user_id, conversation_id, lock=True)
                conversation.is_archived = archived
                if archived:
                    await self._mark_all_read(session, conversation.id)
                await recompute_aggregates(session, conversation)
        logger.info("conversation_archive_set", conversation_id=str(conversation_id), archived=archived)
        return conversation

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _mark_all_read(self, session: AsyncSession, conversation_id: uuid.UUID) -> None:
        await session.execute(
            update(Message)
            .where(Message.conversation_id == conversation_id, Message.is_read.is_(False))
            .values(is_read=True, read_at=datetime.now(UTC))
        )

    async def _owned_conversation(
        self,
        session: AsyncSession,
        user_id: uuid.UUID,
        conversation_id: uuid.UUID,
        *,
        lock: bool = False,
    ) -> Conversation:
        stmt = select(Conversation).where(Conversation.id == conversation_id, Conversation.user_id == user_id)
        if lock:
            stmt = stmt.with_for_update()
        conversation = (await session.execute(stmt)).scalar_one_or_none()
        if conversation is None:
            raise NotFoundError("Conversation not found")
        return conversation

    async def _lock_conversation(self, session: AsyncSession, conversation_id: uuid.UUID) -> None:
        await session.execute(
            select(Conversation.id).where(Conversation.id == conversation_id).with_for_update()
        )
