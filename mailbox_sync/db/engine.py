"""Async SQLAlchemy engine and session factory."""

from __future__ import annotations

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from mailbox_sync.config import DatabaseConfig
from mailbox_sync.db.models import Base


def _make_engine(config: DatabaseConfig) -> AsyncEngine:
    if not config.url.startswith("sqlite"):
        return create_async_engine(
            config.url,
            echo=config.echo,
            pool_size=config.pool_size,
            max_overflow=config.max_overflow,
            pool_pre_ping=True,
        )

    # SQLite serializes writers; wait instead of failing with "database is locked".
    engine = create_async_engine(config.url, echo=config.echo, connect_args={"timeout": 30})

    # Let SQLAlchemy own BEGIN so SAVEPOINTs nest inside the page transaction.
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


class Database:
    """Holds the engine and its session factory.

    Created once at startup and stored on ``app.state``.
    """

    def __init__(self, config: DatabaseConfig) -> None:
        self.engine = _make_engine(config)
        self.session = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    async def create_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()
