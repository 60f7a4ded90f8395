"""Error taxonomy shared by the connector, normalizer, store and service layers."""

from __future__ import annotations


class MailboxError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(MailboxError):
    """Provider or credential configuration is missing or unusable."""


class AuthError(MailboxError):
    """The mail server rejected the stored credential.

    Terminal for a sync run: the user has to re-enter the password.
    """


class NetworkError(MailboxError):
    """Transient transport failure (DNS, socket, TLS handshake, timeout)."""


class ParseError(MailboxError):
    """A fetched message could not be normalized."""


class SendError(MailboxError):
    """The outbound relay did not accept a message."""


class NotFoundError(MailboxError, LookupError):
    """A conversation or attachment does not exist for the requesting user."""
