"""Outbound delivery through the user's SMTP relay using aiosmtplib."""

from __future__ import annotations

import asyncio
import ssl
from datetime import UTC, datetime
from email.message import EmailMessage

import aiosmtplib
import structlog

from .errors import SendError
from .models import DeliveryReceipt, SecurityMode, ServerEndpoint

logger = structlog.get_logger()


class SmtpRelay:
    """Submits one message per connection: connect, TLS, login, send, quit.

    ``ssl`` endpoints use implicit TLS; ``starttls`` endpoints must
    advertise STARTTLS or the send fails.  Nothing is ever sent in the
    clear.
    """

    def __init__(
        self,
        endpoint: ServerEndpoint,
        *,
        timeout_seconds: float = 60.0,
        ssl_context: ssl.SSLContext | None = None,
    ) -> None:
        self._endpoint = endpoint
        self._timeout = timeout_seconds
        self._ssl_context = ssl_context or ssl.create_default_context()

    def _client(self) -> aiosmtplib.SMTP:
        implicit = self._endpoint.security is SecurityMode.SSL
        return aiosmtplib.SMTP(
            hostname=self._endpoint.host,
            port=self._endpoint.port,
            use_tls=implicit,
            start_tls=not implicit,
            tls_context=self._ssl_context,
            timeout=self._timeout,
        )

    async def send(
        self,
        username: str,
        password: str,
        message: EmailMessage,
        recipients: list[str],
    ) -> DeliveryReceipt:
        """Deliver *message* to the envelope *recipients*.

        Returns once the relay has accepted the message for at least one
        recipient; any failure is raised as :class:`SendError`.
        """
        if not recipients:
            raise SendError("At least one recipient is required")

        smtp = self._client()
        try:
            async with asyncio.timeout(self._timeout * 2):
                async with smtp:
                    await smtp.login(username, password)
                    errors, response = await smtp.send_message(
                        message,
                        sender=username,
                        recipients=recipients,
                    )
        except aiosmtplib.SMTPAuthenticationError as exc:
            raise SendError(f"SMTP login rejected for {username}: {exc.message}") from exc
        except aiosmtplib.SMTPRecipientsRefused as exc:
            raise SendError(f"All recipients were refused: {exc}") from exc
        except aiosmtplib.SMTPException as exc:
            raise SendError(f"SMTP delivery failed: {exc}") from exc
        except (OSError, TimeoutError) as exc:
            raise SendError(f"Cannot reach {self._endpoint.host}:{self._endpoint.port}: {exc}") from exc

        rejected = {addr: str(err) for addr, err in errors.items()}
        receipt = DeliveryReceipt(
            message_id=str(message.get("Message-ID", "")),
            accepted_recipients=[r for r in recipients if r not in rejected],
            rejected_recipients=rejected,
            response=response,
            accepted_at=datetime.now(UTC),
        )
        logger.info(
            "smtp_message_accepted",
            host=self._endpoint.host,
            message_id=receipt.message_id,
            accepted=len(receipt.accepted_recipients),
            rejected=len(rejected),
        )
        return receipt
