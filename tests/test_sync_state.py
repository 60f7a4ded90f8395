"""Tests for mailbox_sync.sync_state (compare-and-swap transitions)."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from mailbox_sync.models import SyncStatus
from mailbox_sync.sync_state import ALLOWED_SOURCES


class TestTransitions:
    @pytest.mark.asyncio
    async def test_missing_row_never_transitions(self, states, user_id):
        assert await states.transition(user_id, SyncStatus.CONNECTING) is False
        assert await states.get(user_id) is None

    @pytest.mark.asyncio
    async def test_happy_path(self, states, user_id):
        await states.reset(user_id, clear_cursor=True)

        assert await states.transition(user_id, SyncStatus.CONNECTING) is True
        assert await states.transition(user_id, SyncStatus.SYNCING) is True
        assert await states.transition(user_id, SyncStatus.CONNECTED, cursor="7:10") is True

        state = await states.get(user_id)
        assert state.status == "connected"
        assert state.cursor == "7:10"

    @pytest.mark.asyncio
    async def test_second_connecting_is_rejected(self, states, user_id):
        await states.reset(user_id, clear_cursor=True)
        assert await states.transition(user_id, SyncStatus.CONNECTING) is True
        assert await states.transition(user_id, SyncStatus.CONNECTING) is False

    @pytest.mark.asyncio
    async def test_connected_requires_syncing(self, states, user_id):
        await states.reset(user_id, clear_cursor=True)
        assert await states.transition(user_id, SyncStatus.CONNECTED, cursor="1:1") is False
        assert (await states.get(user_id)).cursor is None

    @pytest.mark.asyncio
    async def test_error_records_message(self, states, user_id):
        await states.reset(user_id, clear_cursor=True)
        await states.transition(user_id, SyncStatus.CONNECTING)
        assert await states.transition(user_id, SyncStatus.ERROR, last_error="boom") is True

        state = await states.get(user_id)
        assert state.status == "error"
        assert state.last_error == "boom"

    @pytest.mark.asyncio
    async def test_run_token_must_match(self, states, user_id):
        await states.reset(user_id, clear_cursor=True)
        old_run = datetime(2025, 6, 1, 9, 0, tzinfo=UTC)
        new_run = datetime(2025, 6, 1, 9, 5, tzinfo=UTC)
        await states.transition(user_id, SyncStatus.CONNECTING, last_sync_attempt_at=new_run)

        assert await states.transition(user_id, SyncStatus.SYNCING, run_started_at=old_run) is False
        assert await states.transition(user_id, SyncStatus.SYNCING, run_started_at=new_run) is True
        assert await states.transition(user_id, SyncStatus.CONNECTED, run_started_at=old_run, cursor="7:1") is False
        assert (await states.get(user_id)).status == "syncing"

    def test_every_target_has_sources(self):
        assert set(ALLOWED_SOURCES) == {
            SyncStatus.CONNECTING,
            SyncStatus.SYNCING,
            SyncStatus.CONNECTED,
            SyncStatus.ERROR,
        }
        assert SyncStatus.UNCONFIGURED not in ALLOWED_SOURCES[SyncStatus.CONNECTED]


class TestReset:
    @pytest.mark.asyncio
    async def test_keeps_cursor_unless_asked(self, states, user_id):
        await states.reset(user_id, clear_cursor=True)
        await states.transition(user_id, SyncStatus.CONNECTING)
        await states.transition(user_id, SyncStatus.SYNCING)
        synced_at = datetime(2025, 6, 1, tzinfo=UTC)
        await states.transition(user_id, SyncStatus.CONNECTED, cursor="7:10", last_synced_at=synced_at)

        await states.reset(user_id, clear_cursor=False)
        state = await states.get(user_id)
        assert state.status == "unconfigured"
        assert state.cursor == "7:10"
        assert state.last_synced_at == synced_at

        await states.reset(user_id, clear_cursor=True)
        state = await states.get(user_id)
        assert state.cursor is None
        assert state.last_synced_at is None

    @pytest.mark.asyncio
    async def test_reset_abandons_running_sync(self, states, user_id):
        await states.reset(user_id, clear_cursor=True)
        await states.transition(user_id, SyncStatus.CONNECTING)
        await states.transition(user_id, SyncStatus.SYNCING)

        await states.reset(user_id, clear_cursor=True)
        # The interrupted run cannot write its result back
        assert await states.transition(user_id, SyncStatus.CONNECTED, cursor="7:99") is False


class TestRecoverInterrupted:
    @pytest.mark.asyncio
    async def test_marks_in_progress_as_error(self, states, user_id):
        await states.reset(user_id, clear_cursor=True)
        await states.transition(user_id, SyncStatus.CONNECTING)

        assert await states.recover_interrupted() == 1
        state = await states.get(user_id)
        assert state.status == "error"
        assert "interrupted" in state.last_error

    @pytest.mark.asyncio
    async def test_ignores_idle_users(self, states, user_id):
        await states.reset(user_id, clear_cursor=True)
        assert await states.recover_interrupted() == 0
