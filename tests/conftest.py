"""Pytest fixtures for ledger engine tests."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, AsyncGenerator, Callable
from uuid import UUID, uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledger_engine.config import Settings
from ledger_engine.database import create_schema, get_engine, make_session_factory
from ledger_engine.events.emitter import AsyncEventEmitter
from ledger_engine.events.handlers import register_default_handlers
from ledger_engine.events.outbox import OutboxDispatcher
from ledger_engine.models import (
    ApprovalLevel,
    ApprovalSetting,
    ApprovalUser,
    BillingRatePeriod,
    Company,
    Employee,
    LedgerLineItem,
    Placement,
    Prefix,
    Timesheet,
    TimesheetHourEntry,
)
from ledger_engine.schemas import NotificationPayload
from ledger_engine.services.workflow import LedgerWorkflow


# =============================================================================
# Fake collaborators
# =============================================================================


class FakeNotifier:
    """Collects notifications instead of sending them."""

    def __init__(self) -> None:
        self.sent: list[NotificationPayload] = []

    async def send(self, payload: NotificationPayload) -> None:
        self.sent.append(payload)

    def slugs(self) -> list[str]:
        return [p.slug for p in self.sent]


class FakeRenderer:
    def __init__(self) -> None:
        self.views: list[dict[str, Any]] = []

    async def render(self, ledger_view: dict[str, Any]) -> str:
        self.views.append(ledger_view)
        return f"https://docs.example.test/{ledger_view['reference_id']}.pdf"


class FakeStorage:
    def __init__(self) -> None:
        self.moved: list[str] = []

    async def move_to_permanent(self, document_id: str, entity: str, entity_id: UUID) -> str:
        self.moved.append(document_id)
        return f"https://files.example.test/{entity}/{entity_id}/{document_id}"


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
async def engine(tmp_path):
    """File-backed SQLite database per test."""
    engine = get_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(engine)


@pytest.fixture
async def session(
    session_factory: async_sessionmaker[AsyncSession], seed: "Seed"
) -> AsyncGenerator[AsyncSession, None]:
    """Session on top of the committed seed data; rolled back after the test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        engine_version="test",
        date_format="%m/%d/%Y",
        outbox_batch_size=100,
        outbox_max_attempts=5,
        dispatch_after_commit=True,
        reference_id_max_attempts=50,
        log_level="DEBUG",
    )


# =============================================================================
# Seed data
# =============================================================================

PERIOD_A_FROM = date(2024, 1, 1)
PERIOD_A_TO = date(2024, 1, 15)
PERIOD_B_FROM = date(2024, 1, 16)


@dataclass
class Seed:
    """Identifiers of the committed reference data."""

    company_id: UUID
    company_setting_id: UUID
    placement_setting_id: UUID
    employee_a: UUID
    employee_b: UUID
    placement_a: UUID
    placement_b: UUID
    period_a: UUID
    period_b: UUID
    hours: dict[str, int]
    # Approver identities
    level_one: UUID
    level_two: UUID
    company_approver: UUID
    creator: UUID


def _approval_setting(name: str, approvers_by_level: dict[int, list[UUID]]) -> list[Any]:
    setting = ApprovalSetting(approval_setting_id=uuid4(), name=name)
    rows: list[Any] = [setting]
    for level, approvers in approvers_by_level.items():
        level_row = ApprovalLevel(
            approval_level_id=uuid4(),
            approval_setting_id=setting.approval_setting_id,
            level=level,
        )
        rows.append(level_row)
        rows.extend(
            ApprovalUser(
                approval_user_id=uuid4(),
                approval_level_id=level_row.approval_level_id,
                approver_id=approver,
            )
            for approver in approvers
        )
    return rows


@pytest.fixture
async def seed(session_factory: async_sessionmaker[AsyncSession]) -> Seed:
    """Company with two placements, rate periods, timesheets and approval chains.

    Placement A (Alice): Period A 50/75 from 2024-01-01 to 2024-01-15,
    Period B 60/90 from 2024-01-16, open-ended. Two-level approval.
    Placement B (Bob): 40/60 from 2024-01-01. Same two-level approval.
    The company itself has a single-level approval chain.
    """
    level_one, level_two, company_approver, creator = uuid4(), uuid4(), uuid4(), uuid4()

    placement_rows = _approval_setting(
        "Placement two-level", {1: [level_one], 2: [level_two]}
    )
    company_rows = _approval_setting("Company single-level", {1: [company_approver]})
    placement_setting_id = placement_rows[0].approval_setting_id
    company_setting_id = company_rows[0].approval_setting_id

    company = Company(
        company_id=uuid4(),
        name="Acme Staffing Client",
        invoice_approval_id=company_setting_id,
        bill_approval_id=company_setting_id,
    )
    alice = Employee(employee_id=uuid4(), display_name="Alice Smith", email="alice@example.test")
    bob = Employee(employee_id=uuid4(), display_name="Bob Jones", email="bob@example.test")

    placement_a = Placement(
        placement_id=uuid4(),
        company_id=company.company_id,
        employee_id=alice.employee_id,
        reference_id="PL-1",
        invoice_approval_id=placement_setting_id,
        bill_approval_id=None,
    )
    placement_b = Placement(
        placement_id=uuid4(),
        company_id=company.company_id,
        employee_id=bob.employee_id,
        reference_id="PL-2",
        invoice_approval_id=placement_setting_id,
        bill_approval_id=None,
    )

    period_a = BillingRatePeriod(
        billing_rate_period_id=uuid4(),
        placement_id=placement_a.placement_id,
        effective_from=PERIOD_A_FROM,
        effective_to=PERIOD_A_TO,
        regular_rate=Decimal("50"),
        ot_rate=Decimal("75"),
        discount_value=Decimal("0"),
    )
    period_b = BillingRatePeriod(
        billing_rate_period_id=uuid4(),
        placement_id=placement_a.placement_id,
        effective_from=PERIOD_B_FROM,
        effective_to=None,
        regular_rate=Decimal("60"),
        ot_rate=Decimal("90"),
        discount_value=Decimal("0"),
    )
    period_bob = BillingRatePeriod(
        billing_rate_period_id=uuid4(),
        placement_id=placement_b.placement_id,
        effective_from=PERIOD_A_FROM,
        effective_to=None,
        regular_rate=Decimal("40"),
        ot_rate=Decimal("60"),
        discount_value=Decimal("0"),
    )

    approved_a = Timesheet(
        timesheet_id=uuid4(),
        placement_id=placement_a.placement_id,
        from_date=date(2024, 1, 8),
        to_date=date(2024, 1, 21),
        status="Approved",
    )
    pending_a = Timesheet(
        timesheet_id=uuid4(),
        placement_id=placement_a.placement_id,
        from_date=date(2024, 1, 22),
        to_date=date(2024, 1, 28),
        status="Submitted",
    )
    approved_b = Timesheet(
        timesheet_id=uuid4(),
        placement_id=placement_b.placement_id,
        from_date=date(2024, 1, 8),
        to_date=date(2024, 1, 14),
        status="Approved",
    )
    entries = {
        "jan10": TimesheetHourEntry(
            timesheet_id=approved_a.timesheet_id,
            work_date=date(2024, 1, 10),
            regular_hours="08:00",
            ot_hours="00:00",
        ),
        "jan20": TimesheetHourEntry(
            timesheet_id=approved_a.timesheet_id,
            work_date=date(2024, 1, 20),
            regular_hours="06:00",
            ot_hours="02:00",
        ),
        "jan23_pending": TimesheetHourEntry(
            timesheet_id=pending_a.timesheet_id,
            work_date=date(2024, 1, 23),
            regular_hours="08:00",
            ot_hours="00:00",
        ),
        "bob_jan11": TimesheetHourEntry(
            timesheet_id=approved_b.timesheet_id,
            work_date=date(2024, 1, 11),
            regular_hours="05:00",
            ot_hours="00:00",
        ),
    }

    async with session_factory() as session:
        async with session.begin():
            session.add_all(placement_rows + company_rows)
            session.add_all(
                [
                    Prefix(slug="invoice", prefix_name="INV", separator="-", number=1),
                    Prefix(slug="bill", prefix_name="BILL", separator="-", number=1),
                ]
            )
            session.add_all([company, alice, bob])
            await session.flush()
            session.add_all([placement_a, placement_b])
            await session.flush()
            session.add_all([period_a, period_b, period_bob, approved_a, pending_a, approved_b])
            await session.flush()
            session.add_all(entries.values())
            await session.flush()
            hours = {name: entry.id for name, entry in entries.items()}

    return Seed(
        company_id=company.company_id,
        company_setting_id=company_setting_id,
        placement_setting_id=placement_setting_id,
        employee_a=alice.employee_id,
        employee_b=bob.employee_id,
        placement_a=placement_a.placement_id,
        placement_b=placement_b.placement_id,
        period_a=period_a.billing_rate_period_id,
        period_b=period_b.billing_rate_period_id,
        hours=hours,
        level_one=level_one,
        level_two=level_two,
        company_approver=company_approver,
        creator=creator,
    )


# =============================================================================
# Payloads & helpers
# =============================================================================


@pytest.fixture
def manual_line(seed: Seed) -> Callable[..., dict[str, Any]]:
    """Hand-entered line item for placement A (no hour entries)."""

    def build(**overrides: Any) -> dict[str, Any]:
        line = {
            "employee_id": seed.employee_a,
            "placement_id": seed.placement_a,
            "description": "Consulting",
            "hours": Decimal("10"),
            "rate": Decimal("50"),
        }
        line.update(overrides)
        return line

    return build


@pytest.fixture
def invoice_payload(
    seed: Seed, manual_line: Callable[..., dict[str, Any]]
) -> Callable[..., dict[str, Any]]:
    def build(**overrides: Any) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "company_id": seed.company_id,
            "ledger_type": "invoice",
            "ledger_date": date(2024, 2, 1),
            "due_date": date(2024, 3, 1),
            "line_items": [manual_line()],
            "billing_address": {"address_line_one": "1 Main St", "city": "Springfield"},
            "actor_id": seed.creator,
        }
        payload.update(overrides)
        return payload

    return build


async def hour_flag(session: AsyncSession, hour_id: int) -> bool:
    result = await session.execute(
        select(TimesheetHourEntry.invoice_raised).where(TimesheetHourEntry.id == hour_id)
    )
    return result.scalar_one()


async def assert_hour_exclusivity(session: AsyncSession) -> None:
    """Flagged hour entries are exactly those referenced by live line items."""
    await session.flush()
    live = await session.execute(
        select(LedgerLineItem.timesheet_hour_ids).where(LedgerLineItem.deleted_at.is_(None))
    )
    referenced: list[int] = [i for ids in live.scalars().all() for i in ids or []]
    assert len(referenced) == len(set(referenced)), "hour entry linked twice"

    flagged = await session.execute(
        select(TimesheetHourEntry.id).where(TimesheetHourEntry.invoice_raised.is_(True))
    )
    assert set(flagged.scalars().all()) == set(referenced)


# =============================================================================
# Workflow
# =============================================================================


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def renderer() -> FakeRenderer:
    return FakeRenderer()


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def emitter(session_factory, notifier, renderer) -> AsyncEventEmitter:
    return register_default_handlers(AsyncEventEmitter(), session_factory, notifier, renderer)


@pytest.fixture
def dispatcher(session_factory, emitter) -> OutboxDispatcher:
    return OutboxDispatcher(session_factory, emitter)


@pytest.fixture
def workflow(session_factory, dispatcher, settings, storage, seed) -> LedgerWorkflow:
    return LedgerWorkflow(session_factory, dispatcher, settings, storage)
