"""Transactional outbox for ledger domain events.

Events are appended to ``ledger_outbox`` inside the caller's transaction, so
they become visible exactly when the financial change commits. The
dispatcher drains them afterwards and hands them to the emitter:

- At-least-once delivery (a row stays pending until every handler succeeds)
- Failures recorded on the row (``attempts``, ``last_error``)
- Rows past ``max_attempts`` are left for manual inspection
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledger_engine.events.emitter import AsyncEventEmitter
from ledger_engine.events.types import DomainEvent
from ledger_engine.models import OutboxEvent
from ledger_engine.models.base import utcnow

logger = logging.getLogger(__name__)


@dataclass
class OutboxRecord:
    """A persisted event as seen by handlers."""

    event_id: UUID
    event_type: str
    category: str
    correlation_id: UUID
    payload: dict[str, Any]
    version: int = 1
    attempts: int = 0
    created_at: datetime | None = None

    @classmethod
    def from_event(cls, event: DomainEvent) -> OutboxRecord:
        """Create record from domain event."""
        return cls(
            event_id=event.metadata.event_id,
            event_type=event.event_type,
            category=event.category.value,
            correlation_id=event.metadata.correlation_id,
            payload=event.to_dict(),
            version=event.metadata.version,
        )

    @classmethod
    def from_row(cls, row: OutboxEvent) -> OutboxRecord:
        return cls(
            event_id=row.event_id,
            event_type=row.event_type,
            category=row.category,
            correlation_id=row.correlation_id,
            payload=row.payload,
            version=row.version,
            attempts=row.attempts,
            created_at=row.created_at,
        )

    @property
    def actor_id(self) -> UUID | None:
        raw = self.payload.get("metadata", {}).get("actor_id")
        return UUID(raw) if raw else None


class OutboxStore:
    """Outbox persistence bound to one session/transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._pending: list[DomainEvent] = []

    def append(self, event: DomainEvent) -> OutboxRecord:
        """Stage an event in the current transaction."""
        record = OutboxRecord.from_event(event)
        self._session.add(
            OutboxEvent(
                event_id=record.event_id,
                event_type=record.event_type,
                category=record.category,
                correlation_id=record.correlation_id,
                payload=record.payload,
                version=record.version,
                attempts=0,
            )
        )
        self._pending.append(event)
        logger.debug("Staged %s (%s) in outbox", record.event_type, record.event_id)
        return record

    @property
    def staged(self) -> list[DomainEvent]:
        """Events staged through this store (not yet necessarily committed)."""
        return list(self._pending)

    async def fetch_pending(
        self,
        limit: int,
        max_attempts: int,
        event_ids: Sequence[UUID] | None = None,
    ) -> list[OutboxRecord]:
        """Oldest undispatched rows still under the attempt limit."""
        query = (
            select(OutboxEvent)
            .where(OutboxEvent.dispatched_at.is_(None))
            .where(OutboxEvent.attempts < max_attempts)
        )
        if event_ids is not None:
            query = query.where(OutboxEvent.event_id.in_(list(event_ids)))
        result = await self._session.execute(
            query.order_by(OutboxEvent.outbox_id.asc()).limit(limit)
        )
        return [OutboxRecord.from_row(row) for row in result.scalars().all()]

    async def mark_dispatched(self, event_id: UUID) -> None:
        await self._session.execute(
            update(OutboxEvent)
            .where(OutboxEvent.event_id == event_id)
            .values(dispatched_at=utcnow(), last_error=None)
        )

    async def mark_failed(self, event_id: UUID, error: str) -> None:
        await self._session.execute(
            update(OutboxEvent)
            .where(OutboxEvent.event_id == event_id)
            .values(attempts=OutboxEvent.attempts + 1, last_error=error[:2000])
        )

    async def count_pending(self, max_attempts: int) -> int:
        result = await self._session.execute(
            select(func.count())
            .select_from(OutboxEvent)
            .where(OutboxEvent.dispatched_at.is_(None))
            .where(OutboxEvent.attempts < max_attempts)
        )
        return int(result.scalar_one())


@dataclass
class DrainResult:
    """Outcome of one drain pass."""

    dispatched: list[UUID] = field(default_factory=list)
    failed: dict[UUID, str] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.dispatched) + len(self.failed)


class OutboxDispatcher:
    """Drains committed outbox rows into the event emitter.

    Usage:
        dispatcher = OutboxDispatcher(session_factory, emitter)
        result = await dispatcher.drain()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        emitter: AsyncEventEmitter,
        batch_size: int = 100,
        max_attempts: int = 5,
    ) -> None:
        self._session_factory = session_factory
        self._emitter = emitter
        self._batch_size = batch_size
        self._max_attempts = max_attempts

    async def drain(self, event_ids: Sequence[UUID] | None = None) -> DrainResult:
        """Dispatch one batch of pending events.

        With ``event_ids`` only those rows are considered, so a caller can
        deliver the events of its own transaction without picking up
        anyone else's backlog.

        Handler errors are recorded on the row and logged; they are never
        raised to the caller.
        """
        if event_ids is not None and not event_ids:
            return DrainResult()
        async with self._session_factory() as session:
            records = await OutboxStore(session).fetch_pending(
                self._batch_size, self._max_attempts, event_ids
            )

        result = DrainResult()
        for record in records:
            errors = await self._emitter.emit(record)
            if errors:
                message = "; ".join(f"{type(e).__name__}: {e}" for e in errors)
                result.failed[record.event_id] = message
                logger.warning(
                    "Outbox event %s (%s) failed attempt %d: %s",
                    record.event_id,
                    record.event_type,
                    record.attempts + 1,
                    message,
                )
            else:
                result.dispatched.append(record.event_id)

        if records:
            async with self._session_factory() as session:
                async with session.begin():
                    store = OutboxStore(session)
                    for event_id in result.dispatched:
                        await store.mark_dispatched(event_id)
                    for event_id, message in result.failed.items():
                        await store.mark_failed(event_id, message)

            logger.info(
                "Outbox drain: %d dispatched, %d failed",
                len(result.dispatched),
                len(result.failed),
            )
        return result

    async def drain_all(self) -> DrainResult:
        """Drain until a pass dispatches nothing new."""
        combined = DrainResult()
        while True:
            result = await self.drain()
            combined.dispatched.extend(result.dispatched)
            combined.failed.update(result.failed)
            if not result.dispatched:
                return combined

    async def run_forever(self, interval_seconds: float = 5.0) -> None:
        """Poll the outbox until cancelled."""
        while True:
            try:
                await self.drain_all()
            except Exception:
                logger.exception("Outbox drain pass failed")
            await asyncio.sleep(interval_seconds)
