"""Default subscribers for dispatched ledger events."""

from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledger_engine.audit.recorder import ActivityTrackWriter
from ledger_engine.collaborators import DocumentRenderer, NotificationDispatcher
from ledger_engine.events.emitter import AsyncEventEmitter
from ledger_engine.events.outbox import OutboxRecord
from ledger_engine.events.types import (
    ApprovalRequested,
    LedgerApproved,
    LedgerCreated,
    LedgerLineItemRemoved,
    LedgerRejected,
    LedgerStatusChanged,
    LedgerUpdated,
)
from ledger_engine.schemas import NotificationPayload

logger = logging.getLogger(__name__)


class NotificationBuilder:
    """Builds notification payloads for approval events.

    Delivery belongs to the dispatcher collaborator; approved ledgers are
    rendered first so the document can be attached.
    """

    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        renderer: DocumentRenderer | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ):
        self.dispatcher = dispatcher
        self.renderer = renderer
        self._session_factory = session_factory

    def build(
        self,
        record: OutboxRecord,
        attachments: list[str] | None = None,
    ) -> NotificationPayload:
        payload = record.payload
        ledger_type = payload["ledger_type"]
        reference_id = payload["reference_id"]
        title = ledger_type.capitalize()

        if record.event_type == ApprovalRequested.__name__:
            recipients = [UUID(a) for a in payload.get("approver_ids", [])]
            subject = f"{title} {reference_id} is waiting for your approval"
            level = payload["approval_level"]
            body = f"{title} {reference_id} requires approval at level {level}."
            slug = f"{ledger_type}-approval-request"
        elif record.event_type == LedgerRejected.__name__:
            recipients = [UUID(payload["created_by"])] if payload.get("created_by") else []
            subject = f"{title} {reference_id} was rejected"
            body = f"{title} {reference_id} was rejected: {payload['reject_reason']}"
            slug = f"{ledger_type}-rejected"
        else:
            recipients = [UUID(payload["created_by"])] if payload.get("created_by") else []
            subject = f"{title} {reference_id} was approved"
            body = f"{title} {reference_id} has been approved."
            slug = f"{ledger_type}-approved"

        return NotificationPayload(
            slug=slug,
            ledger_id=UUID(payload["ledger_id"]),
            reference_id=reference_id,
            recipients=recipients,
            subject=subject,
            body=body,
            attachments=attachments or [],
        )

    async def render_approved(self, record: OutboxRecord) -> list[str]:
        """Ask the renderer for the approved ledger's document."""
        if self.renderer is None:
            return []
        view = dict(record.payload)
        if self._session_factory is not None:
            # Imported lazily: the service layer imports this package.
            from ledger_engine.services.ledger_service import LedgerService

            async with self._session_factory() as session:
                service = LedgerService(session)
                ledger = await service.get_ledger(UUID(record.payload["ledger_id"]))
                view["document"] = await service.snapshot(ledger)
        return [await self.renderer.render(view)]

    async def handle(self, record: OutboxRecord) -> None:
        attachments: list[str] = []
        if record.event_type == LedgerApproved.__name__:
            attachments = await self.render_approved(record)

        notification = self.build(record, attachments)
        if not notification.recipients:
            logger.info(
                "No recipients for %s on %s, skipping",
                notification.slug,
                notification.reference_id,
            )
            return
        await self.dispatcher.send(notification)
        logger.info(
            "Dispatched %s to %d recipient(s)", notification.slug, len(notification.recipients)
        )


def register_default_handlers(
    emitter: AsyncEventEmitter,
    session_factory: async_sessionmaker[AsyncSession],
    notifier: NotificationDispatcher | None = None,
    renderer: DocumentRenderer | None = None,
    date_format: str = "%m/%d/%Y",
) -> AsyncEventEmitter:
    """Wire the activity writer and, when a notifier exists, notifications."""
    writer = ActivityTrackWriter(session_factory, date_format)
    emitter.on(
        [LedgerCreated, LedgerUpdated, LedgerLineItemRemoved, LedgerStatusChanged],
        writer.record,
    )
    if notifier is not None:
        builder = NotificationBuilder(notifier, renderer, session_factory)
        emitter.on([ApprovalRequested, LedgerApproved, LedgerRejected], builder.handle)
    return emitter
