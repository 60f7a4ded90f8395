"""Per-user sync state record with compare-and-swap transitions.

Every status change is a single conditional ``UPDATE`` that only matches
when the current status is an allowed source for the target status.  Two
workers racing for the same user therefore cannot both move it to
``connecting``, and a run that lost its state to a credential reset cannot
write its result back.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

import structlog
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from .db.engine import Database
from .db.models import SyncState
from .models import SyncStatus

logger = structlog.get_logger()

ALLOWED_SOURCES: dict[SyncStatus, frozenset[SyncStatus]] = {
    SyncStatus.CONNECTING: frozenset({SyncStatus.UNCONFIGURED, SyncStatus.CONNECTED, SyncStatus.ERROR}),
    SyncStatus.SYNCING: frozenset({SyncStatus.CONNECTING, SyncStatus.SYNCING}),
    SyncStatus.CONNECTED: frozenset({SyncStatus.SYNCING}),
    SyncStatus.ERROR: frozenset({SyncStatus.CONNECTING, SyncStatus.SYNCING, SyncStatus.CONNECTED}),
}

IN_PROGRESS = frozenset({SyncStatus.CONNECTING, SyncStatus.SYNCING})


class SyncStateRepository:
    """Reads and conditionally updates ``sync_states`` rows."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def get(self, user_id: uuid.UUID) -> SyncState | None:
        async with self._db.session() as session:
            return await session.get(SyncState, user_id)

    async def transition(
        self,
        user_id: uuid.UUID,
        target: SyncStatus,
        *,
        run_started_at: datetime | None = None,
        **fields,
    ) -> bool:
        """Move *user_id* to *target* if its current status allows it.

        With *run_started_at* the row must also still belong to the run that
        set that ``last_sync_attempt_at``.  Extra *fields* (cursor,
        last_error, timestamps) are written in the same statement.  Returns
        whether the row changed.
        """
        sources = [s.value for s in ALLOWED_SOURCES[target]]
        conditions = [SyncState.user_id == user_id, SyncState.status.in_(sources)]
        if run_started_at is not None:
            conditions.append(SyncState.last_sync_attempt_at == run_started_at)
        async with self._db.session() as session:
            result = await session.execute(
                update(SyncState)
                .where(*conditions)
                .values(status=target.value, updated_at=datetime.now(UTC), **fields)
            )
            await session.commit()
        changed = result.rowcount == 1
        if changed:
            logger.info("sync_state_transition", user_id=str(user_id), status=target.value)
        else:
            logger.info("sync_state_transition_rejected", user_id=str(user_id), status=target.value)
        return changed

    async def reset(self, user_id: uuid.UUID, *, clear_cursor: bool) -> None:
        """Create or reset the record after the user saved new credentials."""
        values: dict = {
            "status": SyncStatus.UNCONFIGURED.value,
            "last_error": None,
            "updated_at": datetime.now(UTC),
        }
        if clear_cursor:
            values.update(cursor=None, last_synced_at=None)

        async with self._db.session() as session:
            result = await session.execute(
                update(SyncState).where(SyncState.user_id == user_id).values(**values)
            )
            if result.rowcount == 0:
                session.add(SyncState(user_id=user_id, status=SyncStatus.UNCONFIGURED.value))
            try:
                await session.commit()
            except IntegrityError:
                # Created concurrently by another request; apply the reset to it.
                await session.rollback()
                await session.execute(
                    update(SyncState).where(SyncState.user_id == user_id).values(**values)
                )
                await session.commit()
        logger.info("sync_state_reset", user_id=str(user_id), cleared_cursor=clear_cursor)

    async def recover_interrupted(self) -> int:
        """Mark runs left in progress by a previous process as failed."""
        async with self._db.session() as session:
            result = await session.execute(
                update(SyncState)
                .where(SyncState.status.in_([s.value for s in IN_PROGRESS]))
                .values(
                    status=SyncStatus.ERROR.value,
                    last_error="Sync was interrupted and will be retried",
                    updated_at=datetime.now(UTC),
                )
            )
            await session.commit()
        if result.rowcount:
            logger.warning("interrupted_syncs_recovered", count=result.rowcount)
        return result.rowcount

