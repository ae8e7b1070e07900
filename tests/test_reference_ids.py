"""Tests for reference id generation."""

import pytest
from sqlalchemy import select

from ledger_engine.exceptions import NotFoundError, StateConflictError
from ledger_engine.models import Prefix
from ledger_engine.schemas import LedgerCreate
from ledger_engine.services.ledger_service import LedgerService
from ledger_engine.services.reference_ids import ReferenceIdGenerator


@pytest.fixture
def generator(session) -> ReferenceIdGenerator:
    return ReferenceIdGenerator(session)


@pytest.fixture
def make_ledger(session, seed, manual_line):
    async def build(ledger_type: str = "invoice"):
        return await LedgerService(session).create(
            LedgerCreate(
                company_id=seed.company_id, ledger_type=ledger_type, line_items=[manual_line()]
            )
        )

    return build


class TestReferenceIdGenerator:
    async def test_first_reference(self, generator):
        assert await generator.generate("invoice") == "INV-1"
        assert await generator.generate("bill") == "BILL-1"

    async def test_counts_existing_ledgers_of_the_type(self, generator, make_ledger):
        await make_ledger("invoice")
        await make_ledger("invoice")
        await make_ledger("bill")

        assert await generator.generate("invoice") == "INV-3"
        assert await generator.generate("bill") == "BILL-2"

    async def test_prefix_number_offsets_the_count(self, session, generator):
        prefix = (
            await session.execute(select(Prefix).where(Prefix.slug == "invoice"))
        ).scalar_one()
        prefix.number = 1000
        prefix.separator = "/"
        await session.flush()

        assert await generator.generate("invoice") == "INV/1000"

    async def test_collision_bumps_the_counter(self, session, generator, make_ledger):
        bill = await make_ledger("bill")
        bill.reference_id = "INV-1"
        await session.flush()

        assert await generator.generate("invoice") == "INV-2"

    async def test_explicit_slug(self, generator):
        assert await generator.generate("invoice", slug="bill") == "BILL-1"

    async def test_unknown_slug(self, generator):
        with pytest.raises(NotFoundError):
            await generator.generate("credit_note")

    async def test_gives_up_after_max_attempts(self, session, make_ledger):
        bill = await make_ledger("bill")
        bill.reference_id = "INV-1"
        await session.flush()

        with pytest.raises(StateConflictError):
            await ReferenceIdGenerator(session, max_attempts=1).generate("invoice")
