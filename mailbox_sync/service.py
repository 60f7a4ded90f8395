"""Boundary operations exposed to the HTTP layer.

Each method takes the already-authenticated user id; ownership of every
conversation and attachment is checked against it.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator
from datetime import UTC, datetime

import structlog

from .blobs import AttachmentBlobStore
from .composer import ComposedMessage, compose, forward_subject, quote_forwarded, quote_forwarded_html, reply_subject
from .config import Settings
from .connector import MailboxConnector
from .crypto import CredentialCipher
from .db.models import Attachment, Conversation, Message
from .errors import ConfigurationError, SendError
from .models import (
    Address,
    ConversationFilters,
    Direction,
    MailCredentials,
    OutgoingAttachment,
    ServerOverrides,
    SyncOutcome,
    SyncStatus,
)
from .orchestrator import SyncOrchestrator, credentials_from_row
from .providers import build_credentials, domain_of, resolve_provider_defaults, resolve_servers
from .schemas import (
    ConnectionTestOut,
    ConversationDetail,
    ConversationOut,
    ForwardIn,
    MailConfigOut,
    MailCredentialIn,
    PaginatedResponse,
    ProviderSettingIn,
    ProviderSettingOut,
    ReplyIn,
    SendResultOut,
    SyncStatusOut,
)
from .store import ConversationStore
from .sync_state import SyncStateRepository

logger = structlog.get_logger()


def _overrides(body: MailCredentialIn) -> ServerOverrides:
    return ServerOverrides(
        imap_host=body.imap_host,
        imap_port=body.imap_port,
        imap_security=body.imap_security,
        smtp_host=body.smtp_host,
        smtp_port=body.smtp_port,
        smtp_security=body.smtp_security,
    )


def _parse_recipients(values: list[str]) -> list[Address]:
    addresses: list[Address] = []
    for value in values:
        value = value.strip().lower()
        if not value:
            continue
        domain_of(value)
        addresses.append(Address(email=value))
    return addresses


class MailboxService:
    def __init__(
        self,
        settings: Settings,
        store: ConversationStore,
        states: SyncStateRepository,
        orchestrator: SyncOrchestrator,
        connector: MailboxConnector,
        cipher: CredentialCipher,
        blobs: AttachmentBlobStore,
    ) -> None:
        self._settings = settings
        self._store = store
        self._states = states
        self._orchestrator = orchestrator
        self._connector = connector
        self._cipher = cipher
        self._blobs = blobs

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    async def get_config(self, user_id: uuid.UUID) -> MailConfigOut:
        credential = await self._store.get_credential(user_id)
        state = await self._states.get(user_id)
        if credential is None:
            return MailConfigOut(configured=False)

        try:
            provider = resolve_provider_defaults(
                domain_of(credential.email),
                await self._store.provider_entries(),
                fallback_domain=self._settings.fallback_provider_domain,
            )
        except ConfigurationError:
            provider = None

        config = MailConfigOut(
            configured=True,
            email=credential.email,
            sync_enabled=credential.sync_enabled,
            provider=provider,
            imap={"host": credential.imap_host, "port": credential.imap_port, "security": credential.imap_security},
            smtp={"host": credential.smtp_host, "port": credential.smtp_port, "security": credential.smtp_security},
        )
        if state is not None:
            config.status = SyncStatus(state.status)
            config.last_synced_at = state.last_synced_at
            config.last_sync_attempt_at = state.last_sync_attempt_at
            config.last_error = state.last_error
        return config

    async def save_config(self, user_id: uuid.UUID, body: MailCredentialIn) -> MailConfigOut:
        """Persist the credential (encrypted) and reset the sync state.

        The server is not contacted; use :meth:`test_config` for that.
        """
        email = body.email.strip().lower()
        imap, smtp, defaults = resolve_servers(
            email,
            _overrides(body),
            await self._store.provider_entries(),
            fallback_domain=self._settings.fallback_provider_domain,
        )
        provider_setting_id = await self._store.provider_setting_id(defaults.domain) if defaults else None
        identity_changed = await self._store.save_credential(
            user_id,
            email=email,
            encrypted_password=self._cipher.encrypt(body.password.get_secret_value()),
            imap=imap,
            smtp=smtp,
            provider_setting_id=provider_setting_id,
        )
        await self._orchestrator.reset(user_id, clear_cursor=identity_changed)
        return await self.get_config(user_id)

    async def test_config(self, user_id: uuid.UUID, body: MailCredentialIn) -> ConnectionTestOut:
        """Connect and log out with *body* without storing anything."""
        credentials = build_credentials(
            body.email,
            body.password.get_secret_value(),
            _overrides(body),
            await self._store.provider_entries(),
            fallback_domain=self._settings.fallback_provider_domain,
        )
        await self._connector.test_connection(credentials)
        logger.info("mail_config_tested", user_id=str(user_id), host=credentials.imap.host)
        return ConnectionTestOut(success=True, message=f"Connected to {credentials.imap.host}")

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def trigger_sync(self, user_id: uuid.UUID) -> SyncOutcome:
        return await self._orchestrator.request_sync(user_id)

    async def get_sync_status(self, user_id: uuid.UUID) -> SyncStatusOut:
        state = await self._states.get(user_id)
        if state is None:
            return SyncStatusOut(status=SyncStatus.UNCONFIGURED)
        return SyncStatusOut(
            status=SyncStatus(state.status),
            running=self._orchestrator.is_running(user_id),
            last_synced_at=state.last_synced_at,
            last_sync_attempt_at=state.last_sync_attempt_at,
            last_error=state.last_error,
        )

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def list_conversations(
        self,
        user_id: uuid.UUID,
        filters: ConversationFilters,
    ) -> PaginatedResponse[ConversationOut]:
        conversations, total = await self._store.list_conversations(user_id, filters)
        return PaginatedResponse[ConversationOut](
            items=[ConversationOut.model_validate(c) for c in conversations],
            total=total,
            page=filters.page,
            page_size=filters.page_size,
        )

    async def get_conversation(self, user_id: uuid.UUID, conversation_id: uuid.UUID) -> ConversationDetail:
        conversation = await self._store.get_conversation(user_id, conversation_id)
        return ConversationDetail.model_validate(conversation)

    async def mark_read(self, user_id: uuid.UUID, conversation_id: uuid.UUID) -> ConversationOut:
        return ConversationOut.model_validate(await self._store.mark_read(user_id, conversation_id))

    async def mark_unread(self, user_id: uuid.UUID, conversation_id: uuid.UUID) -> ConversationOut:
        return ConversationOut.model_validate(await self._store.mark_unread(user_id, conversation_id))

    async def archive(self, user_id: uuid.UUID, conversation_id: uuid.UUID) -> ConversationOut:
        return ConversationOut.model_validate(await self._store.set_archived(user_id, conversation_id, True))

    async def unarchive(self, user_id: uuid.UUID, conversation_id: uuid.UUID) -> ConversationOut:
        return ConversationOut.model_validate(await self._store.set_archived(user_id, conversation_id, False))

    async def download_attachment(
        self,
        user_id: uuid.UUID,
        conversation_id: uuid.UUID,
        attachment_id: uuid.UUID,
    ) -> tuple[Attachment, AsyncIterator[bytes]]:
        attachment = await self._store.get_attachment(user_id, conversation_id, attachment_id)
        return attachment, await self._blobs.stream(attachment.blob_key)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def reply(self, user_id: uuid.UUID, conversation_id: uuid.UUID, body: ReplyIn) -> SendResultOut:
        credentials = await self._credentials(user_id)
        conversation = await self._store.get_conversation(user_id, conversation_id)
        own = credentials.email.lower()

        if body.to is not None:
            to = _parse_recipients(body.to)
        else:
            to = _reply_targets(conversation, own)

        latest = _latest_with_header(conversation)
        composed = compose(
            sender=Address(email=credentials.email),
            to=to,
            cc=_parse_recipients(body.cc),
            bcc=_parse_recipients(body.bcc),
            subject=reply_subject(conversation.subject),
            body_text=body.body_text,
            body_html=body.body_html,
            in_reply_to=latest.message_id_header if latest else None,
            references=[*latest.references, latest.message_id_header] if latest else [],
            attachments=[_outgoing(a) for a in body.attachments],
            now=datetime.now(UTC),
        )
        return await self._send(user_id, conversation_id, credentials, composed, body.linked_entity_id)

    async def forward(self, user_id: uuid.UUID, conversation_id: uuid.UUID, body: ForwardIn) -> SendResultOut:
        credentials = await self._credentials(user_id)
        conversation = await self._store.get_conversation(user_id, conversation_id)
        own = credentials.email.lower()

        if body.to is not None:
            to = _parse_recipients(body.to)
        else:
            to = [Address(email=p["email"], name=p.get("name", "")) for p in conversation.participants
                  if p["email"].lower() != own]

        latest = conversation.messages[-1] if conversation.messages else None
        body_text, body_html = body.body_text, body.body_html
        attachments = [_outgoing(a) for a in body.attachments]
        if latest is not None:
            quoted = quote_forwarded(
                sender=latest.sender_email,
                sent_at=latest.sent_at,
                subject=latest.subject,
                to=[a["email"] for a in latest.to_addresses],
                body_text=latest.body_text or latest.snippet,
            )
            body_text = f"{body_text}\n\n{quoted}"
            if body_html:
                body_html = f"{body_html}{quote_forwarded_html(quoted)}"
            if body.include_original_attachments:
                for original in latest.attachments:
                    attachments.append(
                        OutgoingAttachment(
                            file_name=original.file_name,
                            content_type=original.content_type,
                            data=await self._blobs.get(original.blob_key),
                            is_inline=original.is_inline,
                            content_id=original.content_id,
                        )
                    )

        composed = compose(
            sender=Address(email=credentials.email),
            to=to,
            cc=_parse_recipients(body.cc),
            bcc=_parse_recipients(body.bcc),
            subject=forward_subject(conversation.subject),
            body_text=body_text,
            body_html=body_html,
            attachments=attachments,
            now=datetime.now(UTC),
        )
        return await self._send(user_id, conversation_id, credentials, composed, body.linked_entity_id)

    async def _send(
        self,
        user_id: uuid.UUID,
        conversation_id: uuid.UUID,
        credentials: MailCredentials,
        composed: ComposedMessage,
        linked_entity_id: uuid.UUID | None,
    ) -> SendResultOut:
        try:
            receipt = await self._connector.send(credentials, composed.message, composed.envelope_recipients)
        except SendError as exc:
            logger.warning("send_failed", user_id=str(user_id), conversation_id=str(conversation_id), error=str(exc))
            raise

        await self._store.record_sent(
            user_id,
            conversation_id,
            composed,
            receipt,
            linked_entity_id=linked_entity_id,
        )
        return SendResultOut(
            conversation_id=conversation_id,
            message_id=receipt.message_id,
            accepted_recipients=receipt.accepted_recipients,
            rejected_recipients=receipt.rejected_recipients,
            delivered_at=receipt.accepted_at,
        )

    async def _credentials(self, user_id: uuid.UUID) -> MailCredentials:
        row = await self._store.get_credential(user_id)
        if row is None:
            raise ConfigurationError("Connect your inbox before sending mail")
        return credentials_from_row(row, self._cipher)

    # ------------------------------------------------------------------
    # Admin provider settings
    # ------------------------------------------------------------------

    async def list_providers(self) -> list[ProviderSettingOut]:
        return [ProviderSettingOut.model_validate(row) for row in await self._store.list_provider_settings()]

    async def save_provider(self, body: ProviderSettingIn) -> ProviderSettingOut:
        return ProviderSettingOut.model_validate(await self._store.save_provider_setting(body.to_defaults()))


def _reply_targets(conversation: Conversation, own: str) -> list[Address]:
    """Sender of the latest received message, else every ``from`` participant but us."""
    for message in reversed(conversation.messages):
        if message.direction == Direction.RECEIVED.value and message.sender_email and message.sender_email != own:
            return [Address(email=message.sender_email, name=message.sender_name)]
    return [
        Address(email=p["email"], name=p.get("name", ""))
        for p in conversation.participants
        if p.get("role") == "from" and p["email"].lower() != own
    ]


def _latest_with_header(conversation: Conversation) -> Message | None:
    for message in reversed(conversation.messages):
        if message.message_id_header:
            return message
    return None


def _outgoing(upload) -> OutgoingAttachment:
    return OutgoingAttachment(
        file_name=upload.file_name,
        content_type=upload.content_type,
        data=upload.content,
        is_inline=upload.is_inline,
        content_id=upload.content_id,
    )
