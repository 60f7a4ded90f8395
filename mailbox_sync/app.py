"""FastAPI application factory."""

from __future__ import annotations

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from mailbox_sync.blobs import AttachmentBlobStore
from mailbox_sync.config import Settings
from mailbox_sync.connector import MailboxConnector
from mailbox_sync.crypto import CredentialCipher
from mailbox_sync.db.engine import Database
from mailbox_sync.errors import (
    AuthError,
    ConfigurationError,
    MailboxError,
    NetworkError,
    NotFoundError,
    ParseError,
    SendError,
)
from mailbox_sync.orchestrator import SyncOrchestrator
from mailbox_sync.parser import MimeParser
from mailbox_sync.scheduler import SyncScheduler
from mailbox_sync.service import MailboxService
from mailbox_sync.store import ConversationStore
from mailbox_sync.sync_state import SyncStateRepository
from mailbox_sync.threader import ThreadingEngine

logger = structlog.get_logger()

_ERROR_STATUS: list[tuple[type[MailboxError], int]] = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (AuthError, status.HTTP_401_UNAUTHORIZED),
    (ConfigurationError, status.HTTP_400_BAD_REQUEST),
    (SendError, status.HTTP_400_BAD_REQUEST),
    (ParseError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NetworkError, status.HTTP_502_BAD_GATEWAY),
]


def status_for(exc: MailboxError) -> int:
    for error_type, code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def _mailbox_error_handler(request: Request, exc: MailboxError) -> JSONResponse:
    code = status_for(exc)
    logger.info("request_failed", path=request.url.path, status=code, error=str(exc))
    return JSONResponse(
        status_code=code,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: database, blob store, sync machinery. Shutdown: reverse order."""
    settings: Settings = app.state.settings

    db = Database(settings.database)
    await db.create_all()
    blobs = AttachmentBlobStore(settings.s3)
    await blobs.start()
    logger.info("storage_ready", database=db.engine.url.render_as_string(hide_password=True))

    parser = MimeParser()
    cipher = CredentialCipher.from_hex(settings.encryption_key.get_secret_value())
    connector = MailboxConnector(settings.sync)
    store = ConversationStore(db, blobs, parser=parser, threader=ThreadingEngine())
    states = SyncStateRepository(db)
    orchestrator = SyncOrchestrator(
        store,
        states,
        connector,
        cipher,
        settings.sync,
        settings.retry,
        parser=parser,
    )
    recovered = await orchestrator.recover_interrupted()
    if recovered:
        logger.warning("interrupted_syncs_recovered", count=recovered)

    app.state.db = db
    app.state.service = MailboxService(settings, store, states, orchestrator, connector, cipher, blobs)

    scheduler: SyncScheduler | None = None
    if settings.sync.scheduler_enabled:
        scheduler = SyncScheduler(
            orchestrator,
            store,
            interval_seconds=settings.sync.interval_seconds,
            max_concurrency=settings.sync.max_concurrent_users,
        )
        scheduler.start()

    yield

    if scheduler is not None:
        await scheduler.stop()
    await orchestrator.shutdown()
    await blobs.stop()
    await db.close()
    logger.info("shutdown_complete")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build and return the FastAPI application."""
    if settings is None:
        settings = Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="Mailbox Sync",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.add_exception_handler(MailboxError, _mailbox_error_handler)

    from mailbox_sync.routers.conversations import router as conversations_router
    from mailbox_sync.routers.mailbox import router as mailbox_router
    from mailbox_sync.routers.providers import router as providers_router

    app.include_router(mailbox_router)
    app.include_router(conversations_router)
    app.include_router(providers_router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "mailbox-sync"}

    return app
