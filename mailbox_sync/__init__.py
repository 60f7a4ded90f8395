"""Mailbox synchronization and conversation threading service."""

from .config import Settings
from .errors import (
    AuthError,
    ConfigurationError,
    MailboxError,
    NetworkError,
    NotFoundError,
    ParseError,
    SendError,
)
from .logging import setup_logging

__all__ = [
    "AuthError",
    "ConfigurationError",
    "MailboxError",
    "NetworkError",
    "NotFoundError",
    "ParseError",
    "SendError",
    "Settings",
    "setup_logging",
]
