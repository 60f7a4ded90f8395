"""Request and response schemas for the HTTP boundary."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Generic, TypeVar

from pydantic import Base64Bytes, BaseModel, ConfigDict, Field, SecretStr

from .models import ProviderDefaults, SecurityMode, ServerEndpoint, SyncStatus

T = TypeVar("T")


class PaginatedResponse(BaseModel, Generic[T]):
    items: list[T]
    total: int
    page: int
    page_size: int


# ------------------------------------------------------------------
# Mailbox configuration
# ------------------------------------------------------------------


class MailCredentialIn(BaseModel):
    email: str = Field(description="Mailbox address, also the IMAP/SMTP username")
    password: SecretStr = Field(description="Account or app password")
    imap_host: str | None = None
    imap_port: int | None = Field(default=None, ge=1, le=65535)
    imap_security: SecurityMode | None = None
    smtp_host: str | None = None
    smtp_port: int | None = Field(default=None, ge=1, le=65535)
    smtp_security: SecurityMode | None = None


class MailConfigOut(BaseModel):
    """Stored configuration summary.  The password is never returned."""

    configured: bool
    email: str | None = None
    imap: ServerEndpoint | None = None
    smtp: ServerEndpoint | None = None
    provider: ProviderDefaults | None = None
    sync_enabled: bool = False
    status: SyncStatus = SyncStatus.UNCONFIGURED
    last_synced_at: datetime | None = None
    last_sync_attempt_at: datetime | None = None
    last_error: str | None = None


class ConnectionTestOut(BaseModel):
    success: bool
    message: str


class SyncStatusOut(BaseModel):
    status: SyncStatus
    running: bool = False
    last_synced_at: datetime | None = None
    last_sync_attempt_at: datetime | None = None
    last_error: str | None = None


# ------------------------------------------------------------------
# Conversations
# ------------------------------------------------------------------


class ParticipantOut(BaseModel):
    role: str
    email: str
    name: str = ""


class AddressOut(BaseModel):
    email: str
    name: str = ""


class AttachmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    file_name: str
    content_type: str
    size_bytes: int
    is_inline: bool
    content_id: str | None = None


class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    direction: str
    sender_email: str
    sender_name: str
    to_addresses: list[AddressOut]
    cc_addresses: list[AddressOut]
    bcc_addresses: list[AddressOut]
    subject: str
    body_text: str | None = None
    body_html: str | None = None
    snippet: str
    sent_at: datetime
    delivered_at: datetime | None = None
    read_at: datetime | None = None
    is_read: bool
    delivery_status: str
    attachments: list[AttachmentOut] = Field(default_factory=list)


class ConversationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    subject: str
    snippet: str
    participants: list[ParticipantOut]
    linked_entity_id: uuid.UUID | None = None
    latest_message_at: datetime | None = None
    message_count: int
    unread_count: int
    has_attachments: bool
    is_archived: bool


class ConversationDetail(ConversationOut):
    messages: list[MessageOut] = Field(default_factory=list)


# ------------------------------------------------------------------
# Outbound
# ------------------------------------------------------------------


class AttachmentUpload(BaseModel):
    file_name: str
    content_type: str = "application/octet-stream"
    content: Base64Bytes = Field(description="Base64-encoded file content")
    is_inline: bool = False
    content_id: str | None = None


class ReplyIn(BaseModel):
    body_text: str
    body_html: str | None = None
    to: list[str] | None = Field(default=None, description="Explicit recipients; defaults to the other side")
    cc: list[str] = Field(default_factory=list)
    bcc: list[str] = Field(default_factory=list)
    attachments: list[AttachmentUpload] = Field(default_factory=list)
    linked_entity_id: uuid.UUID | None = None


class ForwardIn(ReplyIn):
    include_original_attachments: bool = True


class SendResultOut(BaseModel):
    conversation_id: uuid.UUID
    message_id: str
    accepted_recipients: list[str]
    rejected_recipients: dict[str, str] = Field(default_factory=dict)
    delivered_at: datetime


# ------------------------------------------------------------------
# Admin provider settings
# ------------------------------------------------------------------


class ProviderSettingIn(BaseModel):
    domain: str
    provider: str = "custom"
    imap_host: str
    imap_port: int = Field(default=993, ge=1, le=65535)
    imap_security: SecurityMode = SecurityMode.SSL
    smtp_host: str
    smtp_port: int = Field(default=465, ge=1, le=65535)
    smtp_security: SecurityMode = SecurityMode.SSL
    requires_app_password: bool = False

    def to_defaults(self) -> ProviderDefaults:
        return ProviderDefaults(
            domain=self.domain.strip().lower(),
            provider=self.provider,
            imap=ServerEndpoint(host=self.imap_host, port=self.imap_port, security=self.imap_security),
            smtp=ServerEndpoint(host=self.smtp_host, port=self.smtp_port, security=self.smtp_security),
            requires_app_password=self.requires_app_password,
        )


class ProviderSettingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    domain: str
    provider: str
    imap_host: str
    imap_port: int
    imap_security: SecurityMode
    smtp_host: str
    smtp_port: int
    smtp_security: SecurityMode
    requires_app_password: bool
