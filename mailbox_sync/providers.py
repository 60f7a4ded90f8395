"""Provider default lookup by mail domain.

Resolution is a pure function of the address domain, the admin-managed
entries and an optional fallback domain, so it can be tested without a
database.
"""

from __future__ import annotations

from collections.abc import Mapping
from email.utils import parseaddr

from .errors import ConfigurationError
from .models import MailCredentials, ProviderDefaults, SecurityMode, ServerEndpoint, ServerOverrides


def _builtin(
    domain: str,
    provider: str,
    imap_host: str,
    smtp_host: str,
    *,
    smtp_port: int = 465,
    smtp_security: SecurityMode = SecurityMode.SSL,
    requires_app_password: bool = False,
) -> ProviderDefaults:
    return ProviderDefaults(
        domain=domain,
        provider=provider,
        imap=ServerEndpoint(host=imap_host, port=993, security=SecurityMode.SSL),
        smtp=ServerEndpoint(host=smtp_host, port=smtp_port, security=smtp_security),
        requires_app_password=requires_app_password,
    )


_GMAIL = {"provider": "gmail", "imap_host": "imap.gmail.com", "smtp_host": "smtp.gmail.com",
          "requires_app_password": True}
_OUTLOOK = {"provider": "outlook", "imap_host": "outlook.office365.com",
            "smtp_host": "smtp.office365.com", "smtp_port": 587, "smtp_security": SecurityMode.STARTTLS}
_ICLOUD = {"provider": "icloud", "imap_host": "imap.mail.me.com", "smtp_host": "smtp.mail.me.com",
           "smtp_port": 587, "smtp_security": SecurityMode.STARTTLS, "requires_app_password": True}
_YAHOO = {"provider": "yahoo", "imap_host": "imap.mail.yahoo.com", "smtp_host": "smtp.mail.yahoo.com",
          "requires_app_password": True}
_FASTMAIL = {"provider": "fastmail", "imap_host": "imap.fastmail.com", "smtp_host": "smtp.fastmail.com",
             "requires_app_password": True}
_ZOHO = {"provider": "zoho", "imap_host": "imap.zoho.com", "smtp_host": "smtp.zoho.com"}
_STACKMAIL = {"provider": "stackmail", "imap_host": "imap.stackmail.com", "smtp_host": "smtp.stackmail.com"}

BUILTIN_PROVIDERS: dict[str, ProviderDefaults] = {
    domain: _builtin(domain, **entry)
    for domain, entry in (
        ("gmail.com", _GMAIL),
        ("googlemail.com", _GMAIL),
        ("outlook.com", _OUTLOOK),
        ("hotmail.com", _OUTLOOK),
        ("live.com", _OUTLOOK),
        ("icloud.com", _ICLOUD),
        ("me.com", _ICLOUD),
        ("yahoo.com", _YAHOO),
        ("fastmail.com", _FASTMAIL),
        ("zoho.com", _ZOHO),
        ("stackmail.com", _STACKMAIL),
    )
}


def domain_of(address: str) -> str:
    """Return the lower-cased domain part of *address*."""
    _, parsed = parseaddr(address.strip())
    local, sep, domain = parsed.rpartition("@")
    if not sep or not local or not domain or "." not in domain:
        raise ConfigurationError(f"Not a valid email address: {address!r}")
    return domain.strip().lower()


def resolve_provider_defaults(
    domain: str,
    admin_entries: Mapping[str, ProviderDefaults],
    *,
    fallback_domain: str | None = None,
) -> ProviderDefaults:
    """Return the provider defaults for *domain*.

    Admin entries win over the built-in table.  When neither knows the
    domain, the entry for *fallback_domain* is used if one is configured;
    otherwise a :class:`ConfigurationError` asks for explicit settings.
    """
    key = domain.strip().lower()
    for candidate in (key, (fallback_domain or "").strip().lower()):
        if not candidate:
            continue
        if candidate in admin_entries:
            return admin_entries[candidate]
        if candidate in BUILTIN_PROVIDERS:
            return BUILTIN_PROVIDERS[candidate]
    raise ConfigurationError(
        f"No provider settings are known for {key!r}; enter the IMAP and SMTP servers manually"
    )


def _has_complete_overrides(overrides: ServerOverrides) -> bool:
    return all(
        v is not None
        for v in (overrides.imap_host, overrides.imap_port, overrides.smtp_host, overrides.smtp_port)
    )


def resolve_servers(
    email: str,
    overrides: ServerOverrides,
    admin_entries: Mapping[str, ProviderDefaults],
    *,
    fallback_domain: str | None = None,
) -> tuple[ServerEndpoint, ServerEndpoint, ProviderDefaults | None]:
    """Merge explicit overrides over the provider defaults for *email*.

    Returns ``(imap, smtp, defaults)``; *defaults* is ``None`` when the
    overrides are complete and no provider entry matched.
    """
    domain = domain_of(email)
    try:
        defaults: ProviderDefaults | None = resolve_provider_defaults(
            domain, admin_entries, fallback_domain=fallback_domain
        )
    except ConfigurationError:
        if not _has_complete_overrides(overrides):
            raise
        defaults = None

    def _pick(value, default):
        return value if value is not None else default

    imap = ServerEndpoint(
        host=_pick(overrides.imap_host, defaults.imap.host if defaults else None),
        port=_pick(overrides.imap_port, defaults.imap.port if defaults else None),
        security=_pick(
            overrides.imap_security, defaults.imap.security if defaults else SecurityMode.SSL
        ),
    )
    smtp = ServerEndpoint(
        host=_pick(overrides.smtp_host, defaults.smtp.host if defaults else None),
        port=_pick(overrides.smtp_port, defaults.smtp.port if defaults else None),
        security=_pick(
            overrides.smtp_security, defaults.smtp.security if defaults else SecurityMode.SSL
        ),
    )
    return imap, smtp, defaults


def build_credentials(
    email: str,
    password: str,
    overrides: ServerOverrides,
    admin_entries: Mapping[str, ProviderDefaults],
    *,
    fallback_domain: str | None = None,
) -> MailCredentials:
    imap, smtp, _ = resolve_servers(email, overrides, admin_entries, fallback_domain=fallback_domain)
    return MailCredentials(email=email.strip().lower(), password=password, imap=imap, smtp=smtp)
