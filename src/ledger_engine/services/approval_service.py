"""Approval workflow - drives ledgers through the configured sign-off chain."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import distinct, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_engine.calculators import round_to_cents
from ledger_engine.events.types import (
    ApprovalRequested,
    EventMetadata,
    LedgerApproved,
    LedgerRejected,
    LedgerStatusChanged,
)
from ledger_engine.exceptions import NotFoundError, StateConflictError, ValidationError
from ledger_engine.models import (
    ApprovalLevel,
    ApprovalUser,
    Company,
    Ledger,
    LedgerApprovalTrack,
    LedgerLineItem,
    LedgerType,
    Placement,
)
from ledger_engine.models.base import utcnow
from ledger_engine.services.ledger_service import LedgerService
from ledger_engine.services.state_machine import (
    ApprovalAction,
    InvalidTransitionError,
    LedgerStateMachine,
    LedgerStatus,
)

logger = logging.getLogger(__name__)


class IneligibleApproverError(StateConflictError):
    """Raised when an identity is not an approver of the ledger's current level."""

    code = "INELIGIBLE_APPROVER"

    def __init__(self, approver_id: UUID, ledger_id: UUID, level: int):
        self.approver_id = approver_id
        self.ledger_id = ledger_id
        self.level = level
        super().__init__(
            f"{approver_id} is not an approver for level {level} of ledger {ledger_id}",
            approver_id=approver_id,
            ledger_id=ledger_id,
            level=level,
        )


class ApprovalService:
    """Service for ledger status transitions.

    Operations:
    - submit_draft: Drafted → Submitted, then start the approval flow
    - start_approval: Submitted → Approval In Progress for multi-level flows
    - approve: advance one level, or approve at the final level
    - reject: terminal rejection with a mandatory reason
    - record_payment: Approved / Partially Paid → Partially Paid / Paid

    Approvers come from the approval setting of the single placement the
    live line items reference; items spanning several placements (or none)
    are governed by the owning company's setting.
    """

    def __init__(self, session: AsyncSession, ledgers: LedgerService):
        self.session = session
        self.ledgers = ledgers
        self.outbox = ledgers.outbox

    # ------------------------------------------------------------------
    # Approver resolution
    # ------------------------------------------------------------------

    @staticmethod
    def _setting_column(ledger_type: str) -> str:
        if ledger_type == LedgerType.INVOICE.value:
            return "invoice_approval_id"
        return "bill_approval_id"

    async def get_placement_ids(self, ledger_id: UUID) -> list[UUID]:
        result = await self.session.execute(
            select(distinct(LedgerLineItem.placement_id)).where(
                LedgerLineItem.ledger_id == ledger_id,
                LedgerLineItem.deleted_at.is_(None),
                LedgerLineItem.placement_id.is_not(None),
            )
        )
        return list(result.scalars().all())

    async def resolve_approval_setting_id(self, ledger: Ledger) -> UUID | None:
        """Approval setting governing a ledger.

        Exactly one placement: that placement's setting (falling back to the
        company's when the placement has none). Otherwise the company's.
        """
        column = self._setting_column(ledger.ledger_type)
        placement_ids = await self.get_placement_ids(ledger.ledger_id)

        if len(placement_ids) == 1:
            placement = await self.session.get(Placement, placement_ids[0])
            if placement is None:
                raise NotFoundError("Placement", placement_ids[0])
            setting_id = getattr(placement, column)
            if setting_id is not None:
                return setting_id

        company = await self.session.get(Company, ledger.company_id)
        if company is None:
            raise NotFoundError("Company", ledger.company_id)
        return getattr(company, column)

    async def get_max_level(self, approval_setting_id: UUID | None) -> int:
        if approval_setting_id is None:
            return 1
        result = await self.session.execute(
            select(func.max(ApprovalLevel.level)).where(
                ApprovalLevel.approval_setting_id == approval_setting_id
            )
        )
        return result.scalar_one_or_none() or 1

    async def get_approvers(self, approval_setting_id: UUID | None, level: int) -> list[UUID]:
        """Approver identities configured for one level of a setting."""
        if approval_setting_id is None:
            return []
        result = await self.session.execute(
            select(ApprovalUser.approver_id)
            .join(ApprovalLevel, ApprovalLevel.approval_level_id == ApprovalUser.approval_level_id)
            .where(
                ApprovalLevel.approval_setting_id == approval_setting_id,
                ApprovalLevel.level == level,
            )
            .order_by(ApprovalUser.approver_id)
        )
        return list(result.scalars().all())

    async def get_current_approvers(self, ledger: Ledger) -> list[UUID]:
        setting_id = await self.resolve_approval_setting_id(ledger)
        return await self.get_approvers(setting_id, ledger.approval_level)

    async def _ensure_eligible(
        self,
        ledger: Ledger,
        approver_id: UUID,
        setting_id: UUID | None,
    ) -> None:
        # An unconfigured flow has a single open level
        if setting_id is None:
            return
        approvers = await self.get_approvers(setting_id, ledger.approval_level)
        if approver_id not in approvers:
            raise IneligibleApproverError(approver_id, ledger.ledger_id, ledger.approval_level)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _transition(
        self,
        ledger: Ledger,
        to_status: LedgerStatus,
        to_level: int,
        action: ApprovalAction,
        actor_id: UUID | None,
        **values: Any,
    ) -> dict[str, Any]:
        """Guarded status change with approval-track row and outbox event.

        The UPDATE is conditioned on the status and level that were read,
        so a concurrent transition makes this one fail instead of
        overwriting it. Returns the snapshot taken before the change.
        """
        from_status, from_level = ledger.status, ledger.approval_level
        LedgerStateMachine.validate_transition(from_status, to_status)

        before = await self.ledgers.snapshot(ledger)
        now = utcnow()
        result = await self.session.execute(
            update(Ledger)
            .where(
                Ledger.ledger_id == ledger.ledger_id,
                Ledger.status == from_status,
                Ledger.approval_level == from_level,
            )
            .values(
                status=to_status.value,
                approval_level=to_level,
                updated_at=now,
                updated_by=actor_id,
                **values,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StateConflictError(
                f"Ledger {ledger.reference_id} changed concurrently; retry the action",
                ledger_id=ledger.ledger_id,
            )
        await self.session.refresh(ledger)

        self.session.add(
            LedgerApprovalTrack(
                ledger_id=ledger.ledger_id,
                actor_id=actor_id,
                action=action.value,
                approval_level=from_level,
                from_status=from_status,
                to_status=to_status.value,
            )
        )
        await self.session.flush()

        self.outbox.append(
            LedgerStatusChanged(
                metadata=EventMetadata.create(correlation_id=ledger.ledger_id, actor_id=actor_id),
                ledger_id=ledger.ledger_id,
                from_status=from_status,
                to_status=to_status.value,
                approval_level=ledger.approval_level,
                before=before,
                after=await self.ledgers.snapshot(ledger),
            )
        )
        logger.info(
            "Ledger %s: %s (level %d) -> %s (level %d) by %s",
            ledger.reference_id,
            from_status,
            from_level,
            to_status.value,
            to_level,
            actor_id,
        )
        return before

    async def _request_approval(self, ledger: Ledger, actor_id: UUID | None) -> list[UUID]:
        approvers = await self.get_current_approvers(ledger)
        self.outbox.append(
            ApprovalRequested(
                metadata=EventMetadata.create(correlation_id=ledger.ledger_id, actor_id=actor_id),
                ledger_id=ledger.ledger_id,
                ledger_type=ledger.ledger_type,
                reference_id=ledger.reference_id,
                approval_level=ledger.approval_level,
                approver_ids=tuple(approvers),
            )
        )
        return approvers

    async def start_approval(self, ledger: Ledger, actor_id: UUID | None = None) -> Ledger:
        """Open the approval flow of a freshly submitted ledger.

        Multi-level configurations move the ledger to Approval In Progress
        at level 1; level-1 approvers are asked to act either way.
        """
        if ledger.status != LedgerStatus.SUBMITTED.value:
            return ledger
        setting_id = await self.resolve_approval_setting_id(ledger)
        if await self.get_max_level(setting_id) > 1:
            await self._transition(
                ledger,
                LedgerStatus.APPROVAL_IN_PROGRESS,
                1,
                ApprovalAction.REQUEST,
                actor_id,
            )
        await self._request_approval(ledger, actor_id)
        return ledger

    async def submit_draft(self, ledger_id: UUID, actor_id: UUID | None = None) -> Ledger:
        """Finalize a drafted ledger."""
        ledger = await self.ledgers.get_ledger(ledger_id)
        await self._transition(
            ledger,
            LedgerStatus.SUBMITTED,
            1,
            ApprovalAction.SUBMIT,
            actor_id,
            submitted_on=utcnow(),
        )
        return await self.start_approval(ledger, actor_id)

    async def approve(self, ledger_id: UUID, approver_id: UUID) -> Ledger:
        """Sign off the ledger's current level.

        Raises:
            InvalidTransitionError: Ledger is terminal or not awaiting approval
            IneligibleApproverError: approver_id is not a current-level approver
        """
        ledger = await self.ledgers.get_ledger(ledger_id)
        self._ensure_awaiting(ledger, LedgerStatus.APPROVED)

        setting_id = await self.resolve_approval_setting_id(ledger)
        await self._ensure_eligible(ledger, approver_id, setting_id)

        max_level = await self.get_max_level(setting_id)
        to_status, to_level = LedgerStateMachine.approval_target(ledger.approval_level, max_level)
        extra = {"approved_on": utcnow()} if to_status == LedgerStatus.APPROVED else {}
        await self._transition(
            ledger, to_status, to_level, ApprovalAction.APPROVE, approver_id, **extra
        )

        if to_status == LedgerStatus.APPROVED:
            self.outbox.append(
                LedgerApproved(
                    metadata=EventMetadata.create(
                        correlation_id=ledger.ledger_id, actor_id=approver_id
                    ),
                    ledger_id=ledger.ledger_id,
                    ledger_type=ledger.ledger_type,
                    reference_id=ledger.reference_id,
                    approval_level=ledger.approval_level,
                    created_by=ledger.created_by,
                )
            )
        else:
            await self._request_approval(ledger, approver_id)
        return ledger

    async def reject(self, ledger_id: UUID, approver_id: UUID, reason: str | None) -> Ledger:
        """Reject the ledger at its current level. Terminal."""
        if not reason or not reason.strip():
            raise ValidationError(
                "A reject reason is required", errors=[{"field": "reject_reason"}]
            )
        ledger = await self.ledgers.get_ledger(ledger_id)
        self._ensure_awaiting(ledger, LedgerStatus.REJECTED)

        setting_id = await self.resolve_approval_setting_id(ledger)
        await self._ensure_eligible(ledger, approver_id, setting_id)

        await self._transition(
            ledger,
            LedgerStatus.REJECTED,
            ledger.approval_level,
            ApprovalAction.REJECT,
            approver_id,
            reject_reason=reason.strip(),
        )
        self.outbox.append(
            LedgerRejected(
                metadata=EventMetadata.create(
                    correlation_id=ledger.ledger_id, actor_id=approver_id
                ),
                ledger_id=ledger.ledger_id,
                ledger_type=ledger.ledger_type,
                reference_id=ledger.reference_id,
                approval_level=ledger.approval_level,
                reject_reason=reason.strip(),
                created_by=ledger.created_by,
            )
        )
        return ledger

    async def record_payment(
        self,
        ledger_id: UUID,
        paid_amount: Decimal,
        actor_id: UUID | None = None,
    ) -> Ledger:
        """Apply a payment recorded by the payments collaborator."""
        paid = round_to_cents(Decimal(paid_amount))
        ledger = await self.ledgers.get_ledger(ledger_id)
        if paid <= 0 or paid > ledger.balance_amount:
            raise ValidationError(
                f"Payment must be between 0.01 and the balance {ledger.balance_amount}",
                errors=[{"field": "paid_amount", "value": str(paid)}],
            )
        balance = ledger.balance_amount - paid
        to_status = LedgerStatus.PAID if balance == 0 else LedgerStatus.PARTIALLY_PAID
        await self._transition(
            ledger,
            to_status,
            ledger.approval_level,
            ApprovalAction.PAYMENT,
            actor_id,
            balance_amount=balance,
        )
        return ledger

    def _ensure_awaiting(self, ledger: Ledger, to_status: LedgerStatus) -> None:
        if not LedgerStateMachine.is_awaiting_approval(ledger.status):
            reason = (
                "ledger is in a terminal state"
                if LedgerStateMachine.is_terminal(ledger.status)
                else "ledger is not awaiting approval"
            )
            raise InvalidTransitionError(ledger.status, to_status.value, reason)

    async def get_approval_track(self, ledger_id: UUID) -> Sequence[LedgerApprovalTrack]:
        result = await self.session.execute(
            select(LedgerApprovalTrack)
            .where(LedgerApprovalTrack.ledger_id == ledger_id)
            .order_by(LedgerApprovalTrack.approval_track_id)
        )
        return result.scalars().all()
