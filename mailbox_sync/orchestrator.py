"""Sync orchestrator: drives one user's connect, fetch, normalize, ingest cycle.

At most one run per user is in flight.  Inside a process concurrent
requests share the running task; across processes the compare-and-swap to
``connecting`` admits a single winner.  The persisted cursor only moves
when a run completes successfully.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import UTC, datetime, timedelta

import structlog

from .config import RetryConfig, SyncConfig
from .connector import MailboxConnector
from .crypto import CredentialCipher
from .db.models import MailCredential
from .errors import AuthError, ConfigurationError, NetworkError, ParseError
from .imap_client import ImapSession
from .logging import bind_user, unbind_user
from .models import MailCredentials, SecurityMode, ServerEndpoint, SyncOutcome, SyncStatus
from .parser import MimeParser
from .retry import with_retry
from .store import ConversationStore
from .sync_state import SyncStateRepository

logger = structlog.get_logger()

AUTH_FAILED_MESSAGE = "Authentication failed. Reconnect your inbox to resume syncing."


def credentials_from_row(row: MailCredential, cipher: CredentialCipher) -> MailCredentials:
    return MailCredentials(
        email=row.email,
        password=cipher.decrypt(row.encrypted_password),
        imap=ServerEndpoint(host=row.imap_host, port=row.imap_port, security=SecurityMode(row.imap_security)),
        smtp=ServerEndpoint(host=row.smtp_host, port=row.smtp_port, security=SecurityMode(row.smtp_security)),
    )


class _RunProgress:
    """Counters and the in-run cursor carried across retry attempts."""

    def __init__(self, cursor: str | None, started_at: datetime) -> None:
        self.cursor = cursor
        self.started_at = started_at
        self.fetched = 0
        self.ingested = 0
        self.duplicates = 0
        self.skipped = 0
        self.attempts = 0


class SyncOrchestrator:
    def __init__(
        self,
        store: ConversationStore,
        states: SyncStateRepository,
        connector: MailboxConnector,
        cipher: CredentialCipher,
        sync_config: SyncConfig,
        retry_config: RetryConfig,
        *,
        parser: MimeParser | None = None,
    ) -> None:
        self._store = store
        self._states = states
        self._connector = connector
        self._cipher = cipher
        self._sync = sync_config
        self._retry = retry_config
        self._parser = parser or MimeParser()
        self._inflight: dict[uuid.UUID, asyncio.Task[SyncOutcome]] = {}
        self._tasks: set[asyncio.Task[SyncOutcome]] = set()

    def is_running(self, user_id: uuid.UUID) -> bool:
        return user_id in self._inflight

    async def request_sync(self, user_id: uuid.UUID) -> SyncOutcome:
        """Run a sync for *user_id*, or wait for the one already running."""
        task = self._inflight.get(user_id)
        if task is None:
            task = asyncio.create_task(self._guarded_run(user_id), name=f"mailbox-sync-{user_id}")
            self._inflight[user_id] = task
            self._tasks.add(task)
            task.add_done_callback(lambda t, uid=user_id: self._forget(uid, t))
        else:
            logger.info("sync_already_running", user_id=str(user_id))
        return await asyncio.shield(task)

    def _forget(self, user_id: uuid.UUID, task: asyncio.Task[SyncOutcome]) -> None:
        self._tasks.discard(task)
        if self._inflight.get(user_id) is task:
            del self._inflight[user_id]

    async def reset(self, user_id: uuid.UUID, *, clear_cursor: bool) -> None:
        """Reset the user's state after a credential change.

        A run still in flight is detached: it finishes on its own but can no
        longer write state, and the next request starts a fresh run.
        """
        self._inflight.pop(user_id, None)
        await self._states.reset(user_id, clear_cursor=clear_cursor)

    async def recover_interrupted(self) -> int:
        return await self._states.recover_interrupted()

    async def shutdown(self) -> None:
        """Cancel in-flight runs; their state is recovered on next start."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def _guarded_run(self, user_id: uuid.UUID) -> SyncOutcome:
        bind_user(user_id)
        try:
            return await self._run(user_id)
        finally:
            unbind_user()

    async def _run(self, user_id: uuid.UUID) -> SyncOutcome:
        credential = await self._store.get_credential(user_id)
        state = await self._states.get(user_id)
        if credential is None or state is None:
            return SyncOutcome(user_id=str(user_id), status=SyncStatus.UNCONFIGURED, started=False)

        if state.status == SyncStatus.CONNECTED.value and state.last_synced_at is not None:
            age = datetime.now(UTC) - state.last_synced_at
            if age < timedelta(seconds=self._sync.debounce_seconds):
                logger.info("sync_debounced", seconds_since_last=round(age.total_seconds(), 1))
                return SyncOutcome(
                    user_id=str(user_id), status=SyncStatus.CONNECTED, started=False, cursor=state.cursor
                )

        started_at = datetime.now(UTC)
        if not await self._states.transition(user_id, SyncStatus.CONNECTING, last_sync_attempt_at=started_at):
            # Another worker owns this user's run
            current = await self._states.get(user_id)
            status = SyncStatus(current.status) if current else SyncStatus.UNCONFIGURED
            return SyncOutcome(user_id=str(user_id), status=status, started=False)

        progress = _RunProgress(state.cursor, started_at)
        try:
            credentials = credentials_from_row(credential, self._cipher)
            await self._attempt_with_retry(user_id, credentials, progress)
        except AuthError as exc:
            logger.warning("sync_auth_failed", error=str(exc))
            return await self._fail(user_id, progress, AUTH_FAILED_MESSAGE)
        except NetworkError as exc:
            logger.warning("sync_network_failed", attempts=progress.attempts, error=str(exc))
            message = (
                f"Could not reach the mail server after {progress.attempts} attempts ({exc}). "
                "Syncing will be retried; reconnect your inbox if this persists."
            )
            return await self._fail(user_id, progress, message)
        except ConfigurationError as exc:
            logger.warning("sync_configuration_error", error=str(exc))
            return await self._fail(user_id, progress, str(exc))
        except asyncio.CancelledError:
            await self._states.transition(
                user_id, SyncStatus.ERROR, run_started_at=started_at, last_error="Sync was cancelled"
            )
            raise
        except Exception:
            logger.exception("sync_failed_unexpectedly")
            await self._states.transition(
                user_id, SyncStatus.ERROR, run_started_at=started_at, last_error="Sync failed unexpectedly"
            )
            raise

        finished_at = datetime.now(UTC)
        stored = await self._states.transition(
            user_id,
            SyncStatus.CONNECTED,
            run_started_at=started_at,
            cursor=progress.cursor,
            last_synced_at=finished_at,
            last_error=None,
        )
        if not stored:
            logger.warning("sync_result_discarded", reason="state changed during run")
        logger.info(
            "sync_completed",
            fetched=progress.fetched,
            ingested=progress.ingested,
            duplicates=progress.duplicates,
            skipped=progress.skipped,
            cursor=progress.cursor,
            duration_seconds=round((finished_at - started_at).total_seconds(), 2),
        )
        return SyncOutcome(
            user_id=str(user_id),
            status=SyncStatus.CONNECTED if stored else SyncStatus.UNCONFIGURED,
            fetched=progress.fetched,
            ingested=progress.ingested,
            duplicates=progress.duplicates,
            skipped=progress.skipped,
            cursor=progress.cursor if stored else None,
        )

    async def _fail(self, user_id: uuid.UUID, progress: _RunProgress, message: str) -> SyncOutcome:
        await self._states.transition(
            user_id, SyncStatus.ERROR, run_started_at=progress.started_at, last_error=message
        )
        return SyncOutcome(
            user_id=str(user_id),
            status=SyncStatus.ERROR,
            fetched=progress.fetched,
            ingested=progress.ingested,
            duplicates=progress.duplicates,
            skipped=progress.skipped,
            error=message,
        )

    async def _attempt_with_retry(
        self,
        user_id: uuid.UUID,
        credentials: MailCredentials,
        progress: _RunProgress,
    ) -> None:
        @with_retry(self._retry, retryable_exceptions=(NetworkError,))
        async def attempt() -> None:
            progress.attempts += 1
            await self._attempt(user_id, credentials, progress)

        await attempt()

    async def _attempt(self, user_id: uuid.UUID, credentials: MailCredentials, progress: _RunProgress) -> None:
        session: ImapSession | None = None
        try:
            session = await self._connector.connect(credentials)
            if not await self._states.transition(user_id, SyncStatus.SYNCING, run_started_at=progress.started_at):
                logger.warning("sync_run_detached", reason="state changed before fetch")
                return
            while True:
                page = await self._connector.fetch_since(session, progress.cursor, self._sync.page_size)
                progress.fetched += len(page.messages)
                progress.skipped += len(page.skipped_uids)

                items = []
                for fetched in page.messages:
                    try:
                        items.append((fetched, self._parser.normalize(fetched, mailbox_address=credentials.email)))
                    except ParseError as exc:
                        progress.skipped += 1
                        logger.warning("message_parse_failed", uid=fetched.uid, error=str(exc))

                if items:
                    result = await self._store.ingest_page(user_id, items)
                    progress.ingested += result.inserted
                    progress.duplicates += result.duplicates
                progress.cursor = page.next_cursor

                if not page.has_more:
                    break
        finally:
            await self._connector.close(session)
