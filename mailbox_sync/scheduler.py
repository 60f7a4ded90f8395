"""Periodic sync of every enabled mailbox."""

from __future__ import annotations

import asyncio
import contextlib
import uuid

import structlog

from .orchestrator import SyncOrchestrator
from .store import ConversationStore

logger = structlog.get_logger()


class SyncScheduler:
    """Requests a sync for every enabled user once per interval.

    Users are synced concurrently up to ``max_concurrency``; a failing
    mailbox is logged and never stops the others.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        store: ConversationStore,
        *,
        interval_seconds: float,
        max_concurrency: int,
    ) -> None:
        self._orchestrator = orchestrator
        self._store = store
        self._interval = interval_seconds
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._task: asyncio.Task | None = None
        self._shutdown = asyncio.Event()

    def start(self) -> None:
        self._shutdown.clear()
        self._task = asyncio.create_task(self.run(self._shutdown), name="mailbox-sync-scheduler")
        logger.info("sync_scheduler_started", interval_seconds=self._interval)

    async def stop(self) -> None:
        self._shutdown.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("sync_scheduler_stopped")

    async def run(self, shutdown_event: asyncio.Event) -> None:
        while not shutdown_event.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("sync_tick_failed")
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(shutdown_event.wait(), timeout=self._interval)

    async def tick(self) -> int:
        """Sync every enabled user once; returns how many were attempted."""
        user_ids = await self._store.list_sync_enabled_users()
        if not user_ids:
            return 0
        logger.info("sync_tick", users=len(user_ids))
        async with asyncio.TaskGroup() as group:
            for user_id in user_ids:
                group.create_task(self._sync_one(user_id))
        return len(user_ids)

    async def _sync_one(self, user_id: uuid.UUID) -> None:
        async with self._semaphore:
            try:
                outcome = await self._orchestrator.request_sync(user_id)
            except Exception:
                logger.exception("scheduled_sync_failed", user_id=str(user_id))
                return
        if outcome.error:
            logger.warning("scheduled_sync_error", user_id=str(user_id), error=outcome.error)
