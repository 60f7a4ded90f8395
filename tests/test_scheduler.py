"""Tests for mailbox_sync.scheduler."""

from __future__ import annotations

import asyncio
import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

from mailbox_sync.models import SyncOutcome, SyncStatus
from mailbox_sync.scheduler import SyncScheduler


def _outcome(user_id: uuid.UUID, error: str | None = None) -> SyncOutcome:
    status = SyncStatus.ERROR if error else SyncStatus.CONNECTED
    return SyncOutcome(user_id=str(user_id), status=status, error=error)


def _scheduler(user_ids, request_sync, *, max_concurrency: int = 2, interval: float = 60.0):
    store = MagicMock()
    store.list_sync_enabled_users = AsyncMock(return_value=user_ids)
    orchestrator = MagicMock()
    orchestrator.request_sync = request_sync
    return SyncScheduler(orchestrator, store, interval_seconds=interval, max_concurrency=max_concurrency)


class TestTick:
    @pytest.mark.asyncio
    async def test_syncs_every_enabled_user(self):
        users = [uuid.uuid4() for _ in range(3)]
        request_sync = AsyncMock(side_effect=lambda uid: _outcome(uid))
        scheduler = _scheduler(users, request_sync)

        assert await scheduler.tick() == 3
        assert {c.args[0] for c in request_sync.await_args_list} == set(users)

    @pytest.mark.asyncio
    async def test_no_users(self):
        request_sync = AsyncMock()
        scheduler = _scheduler([], request_sync)
        assert await scheduler.tick() == 0
        request_sync.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_others(self):
        users = [uuid.uuid4() for _ in range(3)]

        async def request_sync(uid):
            if uid == users[0]:
                raise RuntimeError("boom")
            return _outcome(uid)

        scheduler = _scheduler(users, AsyncMock(side_effect=request_sync))
        assert await scheduler.tick() == 3

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self):
        users = [uuid.uuid4() for _ in range(6)]
        active = 0
        peak = 0

        async def request_sync(uid):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return _outcome(uid)

        scheduler = _scheduler(users, AsyncMock(side_effect=request_sync), max_concurrency=2)
        await scheduler.tick()
        assert peak == 2


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        user = uuid.uuid4()
        request_sync = AsyncMock(side_effect=lambda uid: _outcome(uid))
        scheduler = _scheduler([user], request_sync, interval=60.0)

        scheduler.start()
        await asyncio.sleep(0.05)
        await asyncio.wait_for(scheduler.stop(), timeout=1.0)

        request_sync.assert_awaited_once_with(user)

    @pytest.mark.asyncio
    async def test_tick_failure_is_logged_and_loop_continues(self):
        scheduler = _scheduler([], AsyncMock(), interval=0.01)
        scheduler._store.list_sync_enabled_users = AsyncMock(side_effect=[RuntimeError("db down"), []])
        shutdown = asyncio.Event()

        task = asyncio.create_task(scheduler.run(shutdown))
        await asyncio.sleep(0.05)
        shutdown.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert scheduler._store.list_sync_enabled_users.await_count >= 2
