"""Domain models shared by the connector, normalizer, threading engine and store."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, SecretStr


class SecurityMode(str, Enum):
    """Transport security for IMAP/SMTP.  There is no plaintext mode."""

    SSL = "ssl"
    STARTTLS = "starttls"


class SyncStatus(str, Enum):
    """Lifecycle of a user's mailbox sync."""

    UNCONFIGURED = "unconfigured"
    CONNECTING = "connecting"
    SYNCING = "syncing"
    CONNECTED = "connected"
    ERROR = "error"


class Direction(str, Enum):
    """Direction of a message relative to the mailbox owner."""

    SENT = "sent"
    RECEIVED = "received"


class DeliveryStatus(str, Enum):
    RECEIVED = "received"
    ACCEPTED = "accepted"


# ------------------------------------------------------------------
# Provider & credential configuration
# ------------------------------------------------------------------


class ServerEndpoint(BaseModel):
    """Host/port/security triple for one protocol."""

    host: str = Field(description="Server hostname")
    port: int = Field(ge=1, le=65535, description="Server port")
    security: SecurityMode = Field(default=SecurityMode.SSL, description="ssl or starttls")


class ProviderDefaults(BaseModel):
    """Server settings for every address under a mail domain."""

    domain: str = Field(description="Mail domain (lower-case)")
    imap: ServerEndpoint
    smtp: ServerEndpoint
    provider: str = Field(default="custom", description="Provider label shown to users")
    requires_app_password: bool = Field(
        default=False,
        description="Provider refuses the account password and needs an app password",
    )


class ServerOverrides(BaseModel):
    """Optional per-user host/port/security overrides."""

    imap_host: str | None = None
    imap_port: int | None = Field(default=None, ge=1, le=65535)
    imap_security: SecurityMode | None = None
    smtp_host: str | None = None
    smtp_port: int | None = Field(default=None, ge=1, le=65535)
    smtp_security: SecurityMode | None = None


class MailCredentials(BaseModel):
    """Everything needed to open a session for one mailbox."""

    email: str
    password: SecretStr
    imap: ServerEndpoint
    smtp: ServerEndpoint


# ------------------------------------------------------------------
# Fetching
# ------------------------------------------------------------------


@dataclass
class FetchedEmail:
    """Raw message as delivered by the mail store."""

    uid: int
    raw_bytes: bytes
    flags: tuple[str, ...] = ()
    internal_date: datetime | None = None


@dataclass
class FetchPage:
    """One bounded page of ``FetchSince`` results."""

    messages: list[FetchedEmail]
    next_cursor: str | None
    has_more: bool
    skipped_uids: list[int] = field(default_factory=list)


# ------------------------------------------------------------------
# Normalized messages
# ------------------------------------------------------------------


class Address(BaseModel):
    model_config = ConfigDict(frozen=True)

    email: str
    name: str = ""


class AttachmentMeta(BaseModel):
    """Attachment metadata; the payload stays in the raw message until needed."""

    model_config = ConfigDict(frozen=True)

    part_index: int = Field(description="Position of the part in a depth-first MIME walk")
    file_name: str
    content_type: str
    size_bytes: int
    is_inline: bool = False
    content_id: str | None = None


class NormalizedMessage(BaseModel):
    """Canonical, deterministic form of a fetched message."""

    model_config = ConfigDict(frozen=True)

    provider_message_id: str = Field(description="Dedup key: Message-ID header or raw-sha256:<digest>")
    message_id: str | None = Field(default=None, description="Message-ID header, opaque")
    in_reply_to: str | None = Field(default=None, description="In-Reply-To header, opaque")
    references: tuple[str, ...] = Field(default=(), description="References header tokens")
    subject: str
    sender: Address
    to: tuple[Address, ...] = ()
    cc: tuple[Address, ...] = ()
    bcc: tuple[Address, ...] = ()
    body_text: str | None = None
    body_html: str | None = None
    snippet: str = ""
    sent_at: datetime
    direction: Direction = Direction.RECEIVED
    is_seen: bool = False
    imap_uid: int | None = None
    attachments: tuple[AttachmentMeta, ...] = ()

    def participants(self) -> list[tuple[str, Address]]:
        """Return ``(role, address)`` pairs in from/to/cc/bcc order."""
        pairs: list[tuple[str, Address]] = [("from", self.sender)]
        pairs.extend(("to", a) for a in self.to)
        pairs.extend(("cc", a) for a in self.cc)
        pairs.extend(("bcc", a) for a in self.bcc)
        return pairs


# ------------------------------------------------------------------
# Outbound
# ------------------------------------------------------------------


@dataclass
class OutgoingAttachment:
    file_name: str
    content_type: str
    data: bytes
    is_inline: bool = False
    content_id: str | None = None


class DeliveryReceipt(BaseModel):
    """Relay acceptance of an outbound message."""

    message_id: str
    accepted_recipients: list[str] = Field(default_factory=list)
    rejected_recipients: dict[str, str] = Field(default_factory=dict)
    response: str = ""
    accepted_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


# ------------------------------------------------------------------
# Sync results
# ------------------------------------------------------------------


class IngestResult(BaseModel):
    inserted: int = 0
    duplicates: int = 0
    conversation_ids: list[str] = Field(default_factory=list)


class SyncOutcome(BaseModel):
    """What a sync request did, returned to every caller waiting on it."""

    user_id: str
    status: SyncStatus
    started: bool = Field(default=True, description="False when the request was dropped or deduplicated")
    fetched: int = 0
    ingested: int = 0
    duplicates: int = 0
    skipped: int = Field(default=0, description="Messages that failed to normalize")
    cursor: str | None = None
    error: str | None = None


class ConversationFilters(BaseModel):
    """Filters for listing a user's conversations."""

    search: str | None = Field(default=None, description="Case-insensitive match on subject, snippet or participants")
    unread_only: bool = False
    archived: bool = False
    has_attachments: bool | None = None
    linked_entity_id: uuid.UUID | None = None
    participant: str | None = Field(default=None, description="Participant email substring")
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=25, ge=1, le=200)
