"""Activity trail writer fed by dispatched outbox events."""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledger_engine.audit.diff import ActivityDiffRecorder, FieldChange
from ledger_engine.database import transaction
from ledger_engine.events.outbox import OutboxRecord
from ledger_engine.models import ActivityAction, LedgerActivityTrack, LedgerFieldChange

logger = logging.getLogger(__name__)

ACTION_BY_EVENT = {
    "LedgerCreated": ActivityAction.CREATED,
    "LedgerUpdated": ActivityAction.UPDATED,
    "LedgerLineItemRemoved": ActivityAction.LINE_ITEM_DELETED,
    "LedgerStatusChanged": ActivityAction.STATUS_CHANGED,
}

# Actions whose before/after snapshots are diffed into field-change rows
DIFFED_ACTIONS = {ActivityAction.UPDATED, ActivityAction.STATUS_CHANGED}

DATE_FIELDS = frozenset({"ledger_date", "due_date"})


def format_value(field_name: str, value: Any, date_format: str) -> str | None:
    """Render a snapshot value for display in the activity log."""
    if value is None:
        return None
    if field_name in DATE_FIELDS and isinstance(value, str):
        try:
            return date.fromisoformat(value).strftime(date_format)
        except ValueError:
            return value
    return str(value)


class ActivityTrackWriter:
    """Writes one activity row (plus field changes) per ledger event.

    Rows are keyed by the outbox ``event_id``; redelivery of the same event
    is a no-op.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        date_format: str = "%m/%d/%Y",
        diff: ActivityDiffRecorder | None = None,
    ):
        self._session_factory = session_factory
        self.date_format = date_format
        self.diff = diff or ActivityDiffRecorder()

    def changes_for(self, record: OutboxRecord) -> list[FieldChange]:
        action = ACTION_BY_EVENT[record.event_type]
        if action not in DIFFED_ACTIONS:
            return []
        return self.diff.diff_snapshots(
            record.payload.get("before", {}), record.payload.get("after", {})
        )

    async def record(self, record: OutboxRecord) -> LedgerActivityTrack | None:
        """Persist the activity for one dispatched event."""
        action = ACTION_BY_EVENT.get(record.event_type)
        if action is None:
            logger.debug("No activity mapping for %s", record.event_type)
            return None

        ledger_id = UUID(record.payload["ledger_id"])
        changes = self.changes_for(record)

        async with transaction(self._session_factory) as session:
            existing = await session.execute(
                select(LedgerActivityTrack.activity_track_id).where(
                    LedgerActivityTrack.event_id == record.event_id
                )
            )
            if existing.first() is not None:
                logger.debug("Activity for event %s already recorded", record.event_id)
                return None

            track = LedgerActivityTrack(
                ledger_id=ledger_id,
                event_id=record.event_id,
                action_type=action.value,
                actor_id=record.actor_id,
            )
            session.add(track)
            await session.flush()

            for change in changes:
                session.add(
                    LedgerFieldChange(
                        activity_track_id=track.activity_track_id,
                        line_item_id=change.line_item_id,
                        field_name=change.field_name,
                        label=change.label,
                        old_value=format_value(
                            change.field_name, change.old_value, self.date_format
                        ),
                        new_value=format_value(
                            change.field_name, change.new_value, self.date_format
                        ),
                    )
                )

        logger.info(
            "Recorded activity %s for ledger %s with %d field changes",
            action.name,
            ledger_id,
            len(changes),
        )
        return track


async def get_activity(
    session: AsyncSession,
    ledger_id: UUID,
) -> Sequence[tuple[LedgerActivityTrack, list[LedgerFieldChange]]]:
    """Activity rows of a ledger with their field changes, oldest first."""
    tracks = (
        await session.execute(
            select(LedgerActivityTrack)
            .where(LedgerActivityTrack.ledger_id == ledger_id)
            .order_by(LedgerActivityTrack.activity_track_id)
        )
    ).scalars().all()
    if not tracks:
        return []
    changes = (
        await session.execute(
            select(LedgerFieldChange)
            .where(
                LedgerFieldChange.activity_track_id.in_([t.activity_track_id for t in tracks])
            )
            .order_by(LedgerFieldChange.field_change_id)
        )
    ).scalars().all()
    by_track: dict[int, list[LedgerFieldChange]] = {t.activity_track_id: [] for t in tracks}
    for change in changes:
        by_track[change.activity_track_id].append(change)
    return [(t, by_track[t.activity_track_id]) for t in tracks]
