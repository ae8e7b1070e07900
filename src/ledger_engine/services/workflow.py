"""Ledger workflow facade - the single service boundary for callers.

Usage:
    workflow = LedgerWorkflow(session_factory, dispatcher=dispatcher)

    # Raise an invoice from consolidated timesheet hours
    preview = await workflow.preview_line_items(placement_id, hour_ids)
    result = await workflow.create_ledger({..., "line_items": preview.data["line_items"]})

    # Walk it through the approval chain
    result = await workflow.approve(ledger_id, approver_id)

The facade:
- Validates payloads before any transaction opens
- Runs every operation as one transaction (commit or full rollback)
- Converts engine errors into a failed OperationResult
- Dispatches the events it committed; failures stay queued for the worker
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Sequence, TypeVar
from uuid import UUID

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledger_engine.audit.recorder import get_activity
from ledger_engine.collaborators import FileStorage
from ledger_engine.config import Settings, get_settings
from ledger_engine.database import transaction
from ledger_engine.events.outbox import OutboxDispatcher, OutboxStore
from ledger_engine.exceptions import LedgerEngineError, ValidationError
from ledger_engine.models import Ledger
from ledger_engine.schemas import LedgerCreate, LedgerUpdate
from ledger_engine.services.approval_service import ApprovalService
from ledger_engine.services.ledger_service import LedgerService, line_item_input_from_candidate
from ledger_engine.services.reference_ids import ReferenceIdGenerator
from ledger_engine.services.state_machine import LedgerStatus

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class OperationStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class OperationResult:
    """Outcome of a workflow operation."""

    status: OperationStatus
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    code: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == OperationStatus.SUCCESS

    @classmethod
    def success(cls, data: dict[str, Any] | None = None) -> OperationResult:
        return cls(status=OperationStatus.SUCCESS, data=data or {})

    @classmethod
    def failure(cls, exc: LedgerEngineError) -> OperationResult:
        return cls(
            status=OperationStatus.FAILED,
            error=exc.message,
            code=exc.code,
            details=exc.details,
        )


def parse_payload(model: type[M], payload: M | dict[str, Any]) -> M:
    """Validate a raw payload, raising the engine's ValidationError."""
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except PydanticValidationError as exc:
        errors = [
            {
                "loc": ".".join(str(part) for part in err["loc"]),
                "msg": err["msg"],
                "type": err["type"],
            }
            for err in exc.errors()
        ]
        raise ValidationError(f"Invalid {model.__name__} payload", errors=errors) from exc


class LedgerWorkflow:
    """Async facade over the ledger, approval and outbox services."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: OutboxDispatcher | None = None,
        settings: Settings | None = None,
        file_storage: FileStorage | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._dispatcher = dispatcher
        self._settings = settings or get_settings()
        self._file_storage = file_storage

    def _services(
        self, session: AsyncSession, outbox: OutboxStore
    ) -> tuple[LedgerService, ApprovalService]:
        ledgers = LedgerService(
            session,
            outbox=outbox,
            reference_ids=ReferenceIdGenerator(
                session, self._settings.reference_id_max_attempts
            ),
            file_storage=self._file_storage,
            date_format=self._settings.date_format,
            engine_version=self._settings.engine_version,
        )
        return ledgers, ApprovalService(session, ledgers)

    async def _run(
        self,
        operation: str,
        work: Callable[[AsyncSession, OutboxStore], Awaitable[dict[str, Any]]],
        dispatch: bool = True,
    ) -> OperationResult:
        try:
            async with transaction(self._session_factory) as session:
                outbox = OutboxStore(session)
                data = await work(session, outbox)
        except LedgerEngineError as exc:
            logger.warning("%s failed [%s]: %s", operation, exc.code, exc.message)
            return OperationResult.failure(exc)
        except Exception:
            logger.exception("%s failed unexpectedly", operation)
            return OperationResult(
                status=OperationStatus.FAILED,
                error=f"{operation} failed unexpectedly",
                code="INTERNAL_ERROR",
            )

        if dispatch:
            await self._dispatch_after_commit([e.metadata.event_id for e in outbox.staged])
        return OperationResult.success(data)

    async def _dispatch_after_commit(self, event_ids: list[UUID]) -> None:
        """One delivery attempt for the events this operation committed.

        Older or failed rows belong to the background worker.
        """
        if self._dispatcher is None or not self._settings.dispatch_after_commit:
            return
        try:
            result = await self._dispatcher.drain(event_ids)
        except Exception:
            # The financial change is already committed
            logger.exception("Outbox dispatch after commit failed")
            return
        if result.failed:
            logger.warning("%d outbox events failed to dispatch", len(result.failed))

    @staticmethod
    async def _view(ledgers: LedgerService, ledger: Ledger) -> dict[str, Any]:
        return {
            "ledger_id": str(ledger.ledger_id),
            "reference_id": ledger.reference_id,
            "ledger_type": ledger.ledger_type,
            "status": ledger.status,
            "approval_level": ledger.approval_level,
            "document": await ledgers.snapshot(ledger),
        }

    # ------------------------------------------------------------------
    # Ledger document
    # ------------------------------------------------------------------

    async def create_ledger(self, payload: LedgerCreate | dict[str, Any]) -> OperationResult:
        """Raise an invoice or bill; submitted ledgers enter approval at once."""
        try:
            data = parse_payload(LedgerCreate, payload)
        except ValidationError as exc:
            return OperationResult.failure(exc)

        async def work(session: AsyncSession, outbox: OutboxStore) -> dict[str, Any]:
            ledgers, approvals = self._services(session, outbox)
            ledger = await ledgers.create(data)
            if ledger.status == LedgerStatus.SUBMITTED.value:
                await approvals.start_approval(ledger, data.actor_id)
            return await self._view(ledgers, ledger)

        return await self._run("create_ledger", work)

    async def update_ledger(
        self,
        ledger_id: UUID,
        payload: LedgerUpdate | dict[str, Any],
    ) -> OperationResult:
        try:
            data = parse_payload(LedgerUpdate, payload)
        except ValidationError as exc:
            return OperationResult.failure(exc)

        async def work(session: AsyncSession, outbox: OutboxStore) -> dict[str, Any]:
            ledgers, _ = self._services(session, outbox)
            ledger = await ledgers.update(ledger_id, data)
            return await self._view(ledgers, ledger)

        return await self._run("update_ledger", work)

    async def delete_line_item(
        self,
        line_item_id: int,
        actor_id: UUID | None = None,
    ) -> OperationResult:
        async def work(session: AsyncSession, outbox: OutboxStore) -> dict[str, Any]:
            ledgers, _ = self._services(session, outbox)
            ledger = await ledgers.delete_line_item(line_item_id, actor_id)
            return await self._view(ledgers, ledger)

        return await self._run("delete_line_item", work)

    async def get_ledger(self, ledger_id: UUID) -> OperationResult:
        """Ledger document with its approval track and activity trail."""

        async def work(session: AsyncSession, outbox: OutboxStore) -> dict[str, Any]:
            ledgers, approvals = self._services(session, outbox)
            ledger = await ledgers.get_ledger(ledger_id)
            view = await self._view(ledgers, ledger)
            view["approval_track"] = [
                {
                    "action": row.action,
                    "approval_level": row.approval_level,
                    "from_status": row.from_status,
                    "to_status": row.to_status,
                    "actor_id": str(row.actor_id) if row.actor_id else None,
                }
                for row in await approvals.get_approval_track(ledger_id)
            ]
            view["activity"] = [
                {
                    "action_type": track.action_type,
                    "actor_id": str(track.actor_id) if track.actor_id else None,
                    "changes": [
                        {
                            "label": change.label,
                            "line_item_id": change.line_item_id,
                            "old_value": change.old_value,
                            "new_value": change.new_value,
                        }
                        for change in changes
                    ],
                }
                for track, changes in await get_activity(session, ledger_id)
            ]
            return view

        return await self._run("get_ledger", work, dispatch=False)

    # ------------------------------------------------------------------
    # Timesheet hours
    # ------------------------------------------------------------------

    async def uninvoiced_hours(
        self,
        placement_id: UUID,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> OperationResult:
        async def work(session: AsyncSession, outbox: OutboxStore) -> dict[str, Any]:
            ledgers, _ = self._services(session, outbox)
            entries = await ledgers.get_uninvoiced_hour_entries(
                placement_id, start_date, end_date
            )
            return {
                "hour_entries": [
                    {
                        "id": entry.id,
                        "work_date": entry.work_date.isoformat(),
                        "regular_hours": entry.regular_hours,
                        "ot_hours": entry.ot_hours,
                    }
                    for entry in entries
                ]
            }

        return await self._run("uninvoiced_hours", work, dispatch=False)

    async def preview_line_items(
        self,
        placement_id: UUID,
        hour_ids: Sequence[int],
    ) -> OperationResult:
        """Consolidated line items for hour entries, ready for create_ledger."""
        if not hour_ids:
            return OperationResult.failure(
                ValidationError("At least one hour entry is required", errors=[{"loc": "hour_ids"}])
            )

        async def work(session: AsyncSession, outbox: OutboxStore) -> dict[str, Any]:
            ledgers, _ = self._services(session, outbox)
            candidates = await ledgers.build_line_items(placement_id, hour_ids)
            return {
                "line_items": [
                    line_item_input_from_candidate(c).model_dump(
                        mode="json", exclude={"id", "document_id"}
                    )
                    for c in candidates
                ],
                "sub_total_amount": str(sum((c.amount for c in candidates), Decimal("0"))),
            }

        return await self._run("preview_line_items", work, dispatch=False)

    # ------------------------------------------------------------------
    # Approval
    # ------------------------------------------------------------------

    async def submit_draft(self, ledger_id: UUID, actor_id: UUID | None = None) -> OperationResult:
        async def work(session: AsyncSession, outbox: OutboxStore) -> dict[str, Any]:
            ledgers, approvals = self._services(session, outbox)
            ledger = await approvals.submit_draft(ledger_id, actor_id)
            return await self._view(ledgers, ledger)

        return await self._run("submit_draft", work)

    async def approve(self, ledger_id: UUID, approver_id: UUID) -> OperationResult:
        async def work(session: AsyncSession, outbox: OutboxStore) -> dict[str, Any]:
            ledgers, approvals = self._services(session, outbox)
            ledger = await approvals.approve(ledger_id, approver_id)
            return await self._view(ledgers, ledger)

        return await self._run("approve", work)

    async def reject(
        self,
        ledger_id: UUID,
        approver_id: UUID,
        reason: str | None,
    ) -> OperationResult:
        if not reason or not reason.strip():
            return OperationResult.failure(
                ValidationError("A reject reason is required", errors=[{"loc": "reason"}])
            )

        async def work(session: AsyncSession, outbox: OutboxStore) -> dict[str, Any]:
            ledgers, approvals = self._services(session, outbox)
            ledger = await approvals.reject(ledger_id, approver_id, reason)
            return await self._view(ledgers, ledger)

        return await self._run("reject", work)

    async def record_payment(
        self,
        ledger_id: UUID,
        paid_amount: Decimal,
        actor_id: UUID | None = None,
    ) -> OperationResult:
        async def work(session: AsyncSession, outbox: OutboxStore) -> dict[str, Any]:
            ledgers, approvals = self._services(session, outbox)
            ledger = await approvals.record_payment(ledger_id, paid_amount, actor_id)
            return await self._view(ledgers, ledger)

        return await self._run("record_payment", work)
