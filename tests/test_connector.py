"""Tests for mailbox_sync.connector."""

from __future__ import annotations

from email.message import EmailMessage
from unittest.mock import AsyncMock, patch

import pytest

from mailbox_sync.config import SyncConfig
from mailbox_sync.connector import MailboxConnector
from mailbox_sync.errors import AuthError
from mailbox_sync.models import DeliveryReceipt, FetchPage, MailCredentials, SecurityMode, ServerEndpoint


@pytest.fixture
def credentials() -> MailCredentials:
    return MailCredentials(
        email="me@example.com",
        password="hunter2",
        imap=ServerEndpoint(host="imap.example.com", port=993),
        smtp=ServerEndpoint(host="smtp.example.com", port=587, security=SecurityMode.STARTTLS),
    )


@pytest.fixture
def connector() -> MailboxConnector:
    return MailboxConnector(
        SyncConfig(
            mailbox="Archive",
            connect_timeout_seconds=5,
            fetch_timeout_seconds=7,
            send_timeout_seconds=9,
        )
    )


class TestMailboxConnector:
    @pytest.mark.asyncio
    async def test_connect_uses_imap_settings(self, connector, credentials):
        with patch("mailbox_sync.connector.ImapSession") as session_cls:
            session_cls.return_value.connect = AsyncMock()
            session = await connector.connect(credentials)

        session_cls.assert_called_once_with(credentials.imap, mailbox="Archive", timeout_seconds=5)
        session.connect.assert_awaited_once_with("me@example.com", "hunter2")

    @pytest.mark.asyncio
    async def test_fetch_since_passes_timeout(self, connector):
        session = AsyncMock()
        page = FetchPage(messages=[], next_cursor="7:10", has_more=False)
        session.fetch_since.return_value = page

        assert await connector.fetch_since(session, "7:3", 25) is page
        session.fetch_since.assert_awaited_once_with("7:3", 25, timeout=7)

    @pytest.mark.asyncio
    async def test_close_tolerates_missing_session(self, connector):
        await connector.close(None)
        session = AsyncMock()
        await connector.close(session)
        session.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_send_uses_smtp_settings(self, connector, credentials):
        receipt = DeliveryReceipt(message_id="<m@example.com>", accepted_recipients=["alice@example.com"])
        message = EmailMessage()
        with patch("mailbox_sync.connector.SmtpRelay") as relay_cls:
            relay_cls.return_value.send = AsyncMock(return_value=receipt)
            result = await connector.send(credentials, message, ["alice@example.com"])

        assert result is receipt
        relay_cls.assert_called_once_with(credentials.smtp, timeout_seconds=9)
        relay_cls.return_value.send.assert_awaited_once_with(
            "me@example.com", "hunter2", message, ["alice@example.com"]
        )

    @pytest.mark.asyncio
    async def test_connection_test_closes_session(self, connector, credentials):
        with patch("mailbox_sync.connector.ImapSession") as session_cls:
            session_cls.return_value.connect = AsyncMock()
            session_cls.return_value.close = AsyncMock()
            await connector.test_connection(credentials)
        session_cls.return_value.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_connection_test_propagates_auth_errors(self, connector, credentials):
        with patch("mailbox_sync.connector.ImapSession") as session_cls:
            session_cls.return_value.connect = AsyncMock(side_effect=AuthError("login rejected"))
            with pytest.raises(AuthError):
                await connector.test_connection(credentials)
