"""Shared test fixtures for the mailbox sync test suite."""

from __future__ import annotations

import asyncio
import uuid
from datetime import UTC, datetime
from email.message import EmailMessage
from email.utils import format_datetime

import pytest

from mailbox_sync.config import DatabaseConfig, RetryConfig, S3Config, Settings, SyncConfig
from mailbox_sync.crypto import CredentialCipher
from mailbox_sync.db.engine import Database
from mailbox_sync.errors import NotFoundError
from mailbox_sync.imap_client import format_cursor, parse_cursor
from mailbox_sync.models import (
    DeliveryReceipt,
    FetchedEmail,
    FetchPage,
    SecurityMode,
    ServerEndpoint,
)
from mailbox_sync.orchestrator import SyncOrchestrator
from mailbox_sync.parser import MimeParser
from mailbox_sync.store import ConversationStore
from mailbox_sync.sync_state import SyncStateRepository
from mailbox_sync.threader import ThreadingEngine

KEY_HEX = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
MAILBOX = "me@example.com"


# ------------------------------------------------------------------
# Raw message builders
# ------------------------------------------------------------------


def make_eml(
    *,
    message_id: str | None = "<a1@example.com>",
    subject: str | None = "Intro",
    from_address: str = "Alice <alice@example.com>",
    to: list[str] | None = None,
    cc: list[str] | None = None,
    date: datetime | None = datetime(2025, 6, 1, 12, 0, tzinfo=UTC),
    in_reply_to: str | None = None,
    references: list[str] | None = None,
    body_text: str | None = "Hello there",
    body_html: str | None = None,
    attachments: list[tuple[str, str, bytes]] | None = None,
    inline_images: list[tuple[str, bytes]] | None = None,
) -> bytes:
    """Build raw RFC 822 bytes.

    *attachments* are ``(file_name, content_type, data)`` tuples;
    *inline_images* are ``(content_id, data)`` PNG parts attached inline.
    """
    msg = EmailMessage()
    msg["From"] = from_address
    msg["To"] = ", ".join(to or [MAILBOX])
    if cc:
        msg["Cc"] = ", ".join(cc)
    if subject is not None:
        msg["Subject"] = subject
    if date is not None:
        msg["Date"] = format_datetime(date)
    if message_id is not None:
        msg["Message-ID"] = message_id
    if in_reply_to:
        msg["In-Reply-To"] = in_reply_to
    if references:
        msg["References"] = " ".join(references)

    msg.set_content(body_text or "")
    if body_html:
        msg.add_alternative(body_html, subtype="html")
    for content_id, data in inline_images or []:
        msg.add_attachment(data, maintype="image", subtype="png", disposition="inline", cid=f"<{content_id}>")
    for file_name, content_type, data in attachments or []:
        maintype, _, subtype = content_type.partition("/")
        msg.add_attachment(data, maintype=maintype, subtype=subtype, filename=file_name)
    return msg.as_bytes()


def make_fetched(uid: int, raw_bytes: bytes | None = None, *, seen: bool = False, **eml) -> FetchedEmail:
    return FetchedEmail(
        uid=uid,
        raw_bytes=raw_bytes if raw_bytes is not None else make_eml(**eml),
        flags=("\\Seen",) if seen else (),
        internal_date=datetime(2025, 6, 1, 12, 0, tzinfo=UTC),
    )


def normalize(fetched: FetchedEmail, mailbox: str = MAILBOX):
    return MimeParser().normalize(fetched, mailbox_address=mailbox)


# ------------------------------------------------------------------
# Fakes
# ------------------------------------------------------------------


class FakeBlobStore:
    """In-memory stand-in for AttachmentBlobStore."""

    def __init__(self) -> None:
        self.objects: dict[str, tuple[bytes, str]] = {}

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    def build_key(self, user_id: uuid.UUID, provider_message_id: str, position: int, file_name: str) -> str:
        return f"attachments/{user_id}/{provider_message_id}/{position}_{file_name}"

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        self.objects[key] = (data, content_type)
        return key

    async def get(self, key: str) -> bytes:
        if key not in self.objects:
            raise NotFoundError(key)
        return self.objects[key][0]

    async def stream(self, key: str, chunk_size: int = 4):
        data = await self.get(key)

        async def _chunks():
            for i in range(0, len(data), chunk_size):
                yield data[i:i + chunk_size]

        return _chunks()


class FakeConnector:
    """Serves FetchedEmail objects from memory using the real cursor format.

    ``connect_errors`` and ``fetch_errors`` are consumed one per call; a
    ``None`` entry in ``fetch_errors`` means that call succeeds.  When
    ``connect_gate`` is set, connect waits on it after counting the call.
    """

    def __init__(self, messages: list[FetchedEmail] | None = None, *, uidvalidity: int = 7) -> None:
        self.messages = list(messages or [])
        self.uidvalidity = uidvalidity
        self.connect_errors: list[Exception] = []
        self.fetch_errors: list[Exception | None] = []
        self.send_error: Exception | None = None
        self.sent: list[tuple[EmailMessage, list[str]]] = []
        self.connects = 0
        self.closes = 0
        self.fetch_calls: list[str | None] = []
        self.connect_gate: asyncio.Event | None = None

    async def connect(self, credentials):
        self.connects += 1
        self.credentials = credentials
        if self.connect_gate is not None:
            await self.connect_gate.wait()
        if self.connect_errors:
            raise self.connect_errors.pop(0)
        return object()

    async def fetch_since(self, session, cursor, page_size):
        self.fetch_calls.append(cursor)
        if self.fetch_errors:
            error = self.fetch_errors.pop(0)
            if error is not None:
                raise error
        validity, last_uid = parse_cursor(cursor)
        if validity is not None and validity != self.uidvalidity:
            last_uid = 0
        pending = sorted((m for m in self.messages if m.uid > last_uid), key=lambda m: m.uid)
        batch = pending[:page_size]
        return FetchPage(
            messages=batch,
            next_cursor=format_cursor(self.uidvalidity, batch[-1].uid if batch else last_uid),
            has_more=len(pending) > page_size,
        )

    async def close(self, session):
        if session is not None:
            self.closes += 1

    async def send(self, credentials, message, recipients):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((message, list(recipients)))
        return DeliveryReceipt(
            message_id=str(message["Message-ID"]),
            accepted_recipients=list(recipients),
            accepted_at=datetime(2025, 6, 2, 9, 0, tzinfo=UTC),
        )

    async def test_connection(self, credentials):
        session = await self.connect(credentials)
        await self.close(session)


# ------------------------------------------------------------------
# Fixtures
# ------------------------------------------------------------------


@pytest.fixture
def user_id() -> uuid.UUID:
    return uuid.UUID("11111111-2222-3333-4444-555555555555")


@pytest.fixture
def retry_config() -> RetryConfig:
    return RetryConfig(max_attempts=3, initial_wait_seconds=0.01, max_wait_seconds=0.02)


@pytest.fixture
def sync_config() -> SyncConfig:
    return SyncConfig(page_size=2, debounce_seconds=0, scheduler_enabled=False)


@pytest.fixture
def settings(tmp_path, retry_config: RetryConfig, sync_config: SyncConfig) -> Settings:
    return Settings(
        encryption_key=KEY_HEX,
        log_json=False,
        database=DatabaseConfig(url=f"sqlite+aiosqlite:///{tmp_path / 'mailbox.db'}"),
        s3=S3Config(bucket="test-bucket", prefix="attachments", region="us-east-1"),
        retry=retry_config,
        sync=sync_config,
    )


@pytest.fixture
def cipher() -> CredentialCipher:
    return CredentialCipher.from_hex(KEY_HEX)


@pytest.fixture
async def db(settings: Settings):
    database = Database(settings.database)
    await database.create_all()
    yield database
    await database.close()


@pytest.fixture
def blobs() -> FakeBlobStore:
    return FakeBlobStore()


@pytest.fixture
def store(db: Database, blobs: FakeBlobStore) -> ConversationStore:
    return ConversationStore(db, blobs, parser=MimeParser(), threader=ThreadingEngine())


@pytest.fixture
def states(db: Database) -> SyncStateRepository:
    return SyncStateRepository(db)


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def orchestrator(store, states, connector, cipher, sync_config, retry_config) -> SyncOrchestrator:
    return SyncOrchestrator(store, states, connector, cipher, sync_config, retry_config, parser=MimeParser())


@pytest.fixture
async def configured_user(store: ConversationStore, states: SyncStateRepository, cipher, user_id):
    """A user with a stored credential and a fresh sync state."""
    await store.save_credential(
        user_id,
        email=MAILBOX,
        encrypted_password=cipher.encrypt("secret"),
        imap=ServerEndpoint(host="imap.example.com", port=993, security=SecurityMode.SSL),
        smtp=ServerEndpoint(host="smtp.example.com", port=465, security=SecurityMode.SSL),
    )
    await states.reset(user_id, clear_cursor=True)
    return user_id
