"""Mailbox connector: the single seam between the service and the mail servers."""

from __future__ import annotations

from email.message import EmailMessage

import structlog

from .config import SyncConfig
from .imap_client import ImapSession
from .models import DeliveryReceipt, FetchPage, MailCredentials
from .smtp_client import SmtpRelay

logger = structlog.get_logger()


class MailboxConnector:
    """Opens IMAP sessions and submits SMTP messages for one set of credentials.

    The orchestrator and the service only talk to this class, which keeps
    protocol details (and the test doubles that replace them) in one place.
    """

    def __init__(self, config: SyncConfig) -> None:
        self._config = config

    async def connect(self, credentials: MailCredentials) -> ImapSession:
        session = ImapSession(
            credentials.imap,
            mailbox=self._config.mailbox,
            timeout_seconds=self._config.connect_timeout_seconds,
        )
        await session.connect(credentials.email, credentials.password.get_secret_value())
        return session

    async def fetch_since(self, session: ImapSession, cursor: str | None, page_size: int) -> FetchPage:
        return await session.fetch_since(cursor, page_size, timeout=self._config.fetch_timeout_seconds)

    async def close(self, session: ImapSession | None) -> None:
        if session is not None:
            await session.close()

    async def send(
        self,
        credentials: MailCredentials,
        message: EmailMessage,
        recipients: list[str],
    ) -> DeliveryReceipt:
        relay = SmtpRelay(credentials.smtp, timeout_seconds=self._config.send_timeout_seconds)
        return await relay.send(
            credentials.email,
            credentials.password.get_secret_value(),
            message,
            recipients,
        )

    async def test_connection(self, credentials: MailCredentials) -> None:
        """Connect and log out again; raises the same errors as :meth:`connect`."""
        session = await self.connect(credentials)
        await self.close(session)
        logger.info("imap_credentials_verified", host=credentials.imap.host)
