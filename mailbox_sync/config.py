"""Service configuration loaded from environment variables.

Every concern gets its own ``BaseSettings`` class and env prefix; the root
:class:`Settings` nests them so a single ``Settings()`` call picks up the
whole environment.
"""

from __future__ import annotations

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseConfig(BaseSettings):
    """Async SQLAlchemy connection settings."""

    model_config = {"env_prefix": "DB_"}

    url: str = Field(
        default="sqlite+aiosqlite:///./mailbox.db",
        description="Async SQLAlchemy URL (postgresql+asyncpg://... in production)",
    )
    echo: bool = Field(default=False, description="Log every SQL statement")
    pool_size: int = Field(default=5, description="Connection pool size (ignored for SQLite)")
    max_overflow: int = Field(default=10, description="Pool overflow (ignored for SQLite)")


class S3Config(BaseSettings):
    """S3 bucket holding attachment payloads."""

    model_config = {"env_prefix": "S3_"}

    bucket: str = Field(default="mailbox-attachments", description="S3 bucket name")
    prefix: str = Field(default="attachments", description="Key prefix for attachment objects")
    region: str = Field(default="us-east-1", description="AWS region")
    endpoint_url: str | None = Field(
        default=None,
        description="Custom S3 endpoint (for MinIO / LocalStack)",
    )


class RetryConfig(BaseSettings):
    """Backoff settings for transient mailbox failures."""

    model_config = {"env_prefix": "RETRY_"}

    max_attempts: int = Field(default=4, description="Attempts per sync run before giving up")
    initial_wait_seconds: float = Field(default=1.0, description="Initial backoff wait in seconds")
    max_wait_seconds: float = Field(default=30.0, description="Maximum backoff wait in seconds")
    multiplier: float = Field(default=2.0, description="Exponential backoff multiplier")


class SyncConfig(BaseSettings):
    """Sync loop, paging and per-call timeout settings."""

    model_config = {"env_prefix": "SYNC_"}

    interval_seconds: float = Field(default=300.0, description="Seconds between scheduled sync ticks")
    page_size: int = Field(default=50, ge=1, description="Messages fetched per page")
    mailbox: str = Field(default="INBOX", description="IMAP mailbox to sync")
    connect_timeout_seconds: float = Field(default=30.0, description="Timeout for connect + login")
    fetch_timeout_seconds: float = Field(default=120.0, description="Timeout for one page fetch")
    send_timeout_seconds: float = Field(default=60.0, description="Timeout for one SMTP send")
    debounce_seconds: float = Field(
        default=30.0,
        description="A request arriving this soon after a successful sync is dropped",
    )
    max_concurrent_users: int = Field(
        default=4,
        ge=1,
        description="Maximum mailboxes synced in parallel by the scheduler",
    )
    scheduler_enabled: bool = Field(default=True, description="Run the periodic sync scheduler")


class Settings(BaseSettings):
    """Top-level settings for the mailbox service.

    All env vars are prefixed with ``MAILSYNC_``; nested configs use their
    own prefixes.  Example: ``MAILSYNC_ENCRYPTION_KEY=<64 hex chars>``
    """

    model_config = SettingsConfigDict(env_prefix="MAILSYNC_")

    encryption_key: SecretStr = Field(
        description="Hex-encoded 32-byte AES-256-GCM key for stored mailbox passwords",
    )
    fallback_provider_domain: str | None = Field(
        default=None,
        description="Provider entry used when an address domain has no known defaults",
    )

    # --- Server -------------------------------------------------------------
    host: str = Field(default="0.0.0.0", description="Bind address")
    port: int = Field(default=8000, description="Bind port")
    log_level: str = Field(default="INFO", description="Log level")
    log_json: bool = Field(
        default=True,
        description="Use JSON log output (True for prod, False for dev)",
    )

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    s3: S3Config = Field(default_factory=S3Config)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
