"""Tests for the approval workflow."""

from __future__ import annotations

from decimal import Decimal
from uuid import uuid4

import pytest

from ledger_engine.events.types import ApprovalRequested, LedgerApproved, LedgerRejected
from ledger_engine.exceptions import StateConflictError, ValidationError
from ledger_engine.models import Company, ImmutableRecordError
from ledger_engine.schemas import LedgerCreate
from ledger_engine.services.approval_service import ApprovalService, IneligibleApproverError
from ledger_engine.services.ledger_service import LedgerService
from ledger_engine.services.state_machine import InvalidTransitionError


@pytest.fixture
def ledgers(session) -> LedgerService:
    return LedgerService(session)


@pytest.fixture
def approvals(session, ledgers) -> ApprovalService:
    return ApprovalService(session, ledgers)


@pytest.fixture
def raise_ledger(ledgers, approvals, seed, manual_line):
    """Create a ledger and open its approval flow."""

    async def build(lines=None, **overrides):
        payload = {
            "company_id": seed.company_id,
            "ledger_type": "invoice",
            "line_items": lines or [manual_line()],
            "actor_id": seed.creator,
        }
        payload.update(overrides)
        ledger = await ledgers.create(LedgerCreate(**payload))
        return await approvals.start_approval(ledger, seed.creator)

    return build


def staged_of(approvals: ApprovalService, event_type):
    return [e for e in approvals.outbox.staged if isinstance(e, event_type)]


class TestApproverResolution:
    async def test_single_placement_uses_placement_setting(self, approvals, raise_ledger, seed):
        ledger = await raise_ledger()
        assert await approvals.resolve_approval_setting_id(ledger) == seed.placement_setting_id

    async def test_several_placements_use_company_setting(
        self, approvals, raise_ledger, seed, manual_line
    ):
        ledger = await raise_ledger(
            [
                manual_line(),
                manual_line(employee_id=seed.employee_b, placement_id=seed.placement_b),
            ]
        )
        assert await approvals.resolve_approval_setting_id(ledger) == seed.company_setting_id

    async def test_no_placement_uses_company_setting(
        self, approvals, raise_ledger, manual_line, seed
    ):
        ledger = await raise_ledger([manual_line(placement_id=None)])
        assert await approvals.resolve_approval_setting_id(ledger) == seed.company_setting_id

    async def test_placement_without_bill_setting_falls_back(self, approvals, raise_ledger, seed):
        bill = await raise_ledger(ledger_type="bill")
        assert await approvals.resolve_approval_setting_id(bill) == seed.company_setting_id
        assert await approvals.get_current_approvers(bill) == [seed.company_approver]

    async def test_max_level(self, approvals, seed):
        assert await approvals.get_max_level(seed.placement_setting_id) == 2
        assert await approvals.get_max_level(seed.company_setting_id) == 1
        assert await approvals.get_max_level(None) == 1


class TestMultiLevelApproval:
    async def test_levels_are_walked_in_order(self, approvals, raise_ledger, seed):
        ledger = await raise_ledger()
        assert ledger.status == "Approval In Progress"
        assert ledger.approval_level == 1
        (request,) = staged_of(approvals, ApprovalRequested)
        assert request.approver_ids == (seed.level_one,)

        ledger = await approvals.approve(ledger.ledger_id, seed.level_one)
        assert ledger.status == "Approval In Progress"
        assert ledger.approval_level == 2
        assert staged_of(approvals, ApprovalRequested)[-1].approver_ids == (seed.level_two,)

        ledger = await approvals.approve(ledger.ledger_id, seed.level_two)
        assert ledger.status == "Approved"
        assert ledger.approval_level == 2
        assert ledger.approved_on is not None

        (approved,) = staged_of(approvals, LedgerApproved)
        assert approved.created_by == seed.creator

    async def test_approval_track_records_every_step(self, approvals, raise_ledger, seed):
        ledger = await raise_ledger()
        await approvals.approve(ledger.ledger_id, seed.level_one)
        await approvals.approve(ledger.ledger_id, seed.level_two)

        track = await approvals.get_approval_track(ledger.ledger_id)
        assert [(t.action, t.approval_level, t.from_status, t.to_status) for t in track] == [
            ("request", 1, "Submitted", "Approval In Progress"),
            ("approve", 1, "Approval In Progress", "Approval In Progress"),
            ("approve", 2, "Approval In Progress", "Approved"),
        ]
        assert [t.actor_id for t in track] == [seed.creator, seed.level_one, seed.level_two]

    async def test_level_two_approver_cannot_skip_level_one(self, approvals, raise_ledger, seed):
        ledger = await raise_ledger()

        with pytest.raises(IneligibleApproverError) as exc_info:
            await approvals.approve(ledger.ledger_id, seed.level_two)

        assert exc_info.value.level == 1
        assert exc_info.value.code == "INELIGIBLE_APPROVER"
        assert ledger.status == "Approval In Progress"
        assert ledger.approval_level == 1

    async def test_approved_ledger_cannot_be_approved_again(self, approvals, raise_ledger, seed):
        ledger = await raise_ledger()
        await approvals.approve(ledger.ledger_id, seed.level_one)
        await approvals.approve(ledger.ledger_id, seed.level_two)

        with pytest.raises(InvalidTransitionError) as exc_info:
            await approvals.approve(ledger.ledger_id, seed.level_two)
        assert exc_info.value.reason == "ledger is not awaiting approval"


class TestCompanyApproval:
    async def test_multi_placement_ledger_goes_to_company_chain(
        self, approvals, raise_ledger, seed, manual_line
    ):
        ledger = await raise_ledger(
            [
                manual_line(),
                manual_line(employee_id=seed.employee_b, placement_id=seed.placement_b),
            ]
        )
        # Single-level chain: the ledger stays Submitted until approved
        assert ledger.status == "Submitted"
        (request,) = staged_of(approvals, ApprovalRequested)
        assert request.approver_ids == (seed.company_approver,)

        with pytest.raises(IneligibleApproverError):
            await approvals.approve(ledger.ledger_id, seed.level_one)

        ledger = await approvals.approve(ledger.ledger_id, seed.company_approver)
        assert ledger.status == "Approved"
        assert ledger.approval_level == 1

    async def test_unconfigured_chain_is_open(self, session, approvals, ledgers, seed, manual_line):
        company = Company(company_id=uuid4(), name="No Approvals Ltd")
        session.add(company)
        await session.flush()

        ledger = await ledgers.create(
            LedgerCreate(
                company_id=company.company_id,
                ledger_type="invoice",
                line_items=[manual_line(placement_id=None)],
            )
        )
        await approvals.start_approval(ledger)
        assert ledger.status == "Submitted"

        ledger = await approvals.approve(ledger.ledger_id, uuid4())
        assert ledger.status == "Approved"


class TestReject:
    async def test_reject_is_terminal(self, approvals, raise_ledger, seed):
        ledger = await raise_ledger()

        ledger = await approvals.reject(ledger.ledger_id, seed.level_one, "  Wrong rate  ")

        assert ledger.status == "Rejected"
        assert ledger.reject_reason == "Wrong rate"
        (event,) = staged_of(approvals, LedgerRejected)
        assert event.reject_reason == "Wrong rate"
        assert event.created_by == seed.creator

        with pytest.raises(InvalidTransitionError) as exc_info:
            await approvals.approve(ledger.ledger_id, seed.level_one)
        assert exc_info.value.reason == "ledger is in a terminal state"

    @pytest.mark.parametrize("reason", [None, "", "   "])
    async def test_reason_is_required(self, approvals, raise_ledger, seed, reason):
        ledger = await raise_ledger()

        with pytest.raises(ValidationError):
            await approvals.reject(ledger.ledger_id, seed.level_one, reason)
        assert ledger.status == "Approval In Progress"

    async def test_only_current_level_may_reject(self, approvals, raise_ledger, seed):
        ledger = await raise_ledger()
        with pytest.raises(IneligibleApproverError):
            await approvals.reject(ledger.ledger_id, seed.level_two, "Not mine")


class TestDrafts:
    async def test_submit_draft_starts_approval(self, approvals, raise_ledger, seed):
        ledger = await raise_ledger(save_as_draft=True)
        assert ledger.status == "Drafted"
        assert staged_of(approvals, ApprovalRequested) == []

        ledger = await approvals.submit_draft(ledger.ledger_id, seed.creator)

        assert ledger.status == "Approval In Progress"
        assert ledger.submitted_on is not None
        track = await approvals.get_approval_track(ledger.ledger_id)
        assert [t.action for t in track] == ["submit", "request"]

    async def test_draft_cannot_be_approved(self, approvals, raise_ledger, seed):
        ledger = await raise_ledger(save_as_draft=True)
        with pytest.raises(InvalidTransitionError):
            await approvals.approve(ledger.ledger_id, seed.level_one)

    async def test_submitted_ledger_cannot_be_submitted_again(self, approvals, raise_ledger, seed):
        ledger = await raise_ledger()
        with pytest.raises(InvalidTransitionError):
            await approvals.submit_draft(ledger.ledger_id, seed.creator)


class TestPayments:
    async def approved_ledger(self, approvals, raise_ledger, seed):
        ledger = await raise_ledger()
        await approvals.approve(ledger.ledger_id, seed.level_one)
        return await approvals.approve(ledger.ledger_id, seed.level_two)

    async def test_partial_then_full_payment(self, approvals, raise_ledger, seed):
        ledger = await self.approved_ledger(approvals, raise_ledger, seed)
        assert ledger.balance_amount == Decimal("500")

        ledger = await approvals.record_payment(ledger.ledger_id, Decimal("200"))
        assert ledger.status == "Partially Paid"
        assert ledger.balance_amount == Decimal("300")

        ledger = await approvals.record_payment(ledger.ledger_id, Decimal("300"))
        assert ledger.status == "Paid"
        assert ledger.balance_amount == Decimal("0")

    @pytest.mark.parametrize("paid", ["0", "-5", "500.01"])
    async def test_payment_bounds(self, approvals, raise_ledger, seed, paid):
        ledger = await self.approved_ledger(approvals, raise_ledger, seed)
        with pytest.raises(ValidationError):
            await approvals.record_payment(ledger.ledger_id, Decimal(paid))

    async def test_unapproved_ledger_cannot_be_paid(self, approvals, raise_ledger):
        ledger = await raise_ledger()
        with pytest.raises(StateConflictError):
            await approvals.record_payment(ledger.ledger_id, Decimal("100"))


class TestAppendOnlyTrack:
    async def test_track_rows_cannot_be_edited(self, session, approvals, raise_ledger):
        ledger = await raise_ledger()
        row = (await approvals.get_approval_track(ledger.ledger_id))[0]

        row.to_status = "Approved"
        with pytest.raises(ImmutableRecordError):
            await session.flush()

    async def test_track_rows_cannot_be_deleted(self, session, approvals, raise_ledger):
        ledger = await raise_ledger()
        row = (await approvals.get_approval_track(ledger.ledger_id))[0]

        await session.delete(row)
        with pytest.raises(ImmutableRecordError):
            await session.flush()
