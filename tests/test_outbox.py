"""Tests for outbox dispatch, activity tracking and notifications."""

from __future__ import annotations

from dataclasses import replace
from datetime import date
from uuid import UUID

import pytest
from sqlalchemy import func, select

from ledger_engine.audit.recorder import ActivityTrackWriter, format_value
from ledger_engine.events.emitter import AsyncEventEmitter
from ledger_engine.events.handlers import register_default_handlers
from ledger_engine.events.outbox import OutboxDispatcher, OutboxStore
from ledger_engine.events.types import LedgerCreated
from ledger_engine.models import LedgerActivityTrack, OutboxEvent
from ledger_engine.services.workflow import LedgerWorkflow


async def pending_count(session_factory, max_attempts: int = 5) -> int:
    async with session_factory() as session:
        return await OutboxStore(session).count_pending(max_attempts)


async def outbox_row(session_factory, event_type: str) -> OutboxEvent:
    async with session_factory() as session:
        result = await session.execute(
            select(OutboxEvent).where(OutboxEvent.event_type == event_type)
        )
        return result.scalar_one()


async def create_invoice(workflow, invoice_payload, **overrides) -> UUID:
    result = await workflow.create_ledger(invoice_payload(**overrides))
    assert result.ok, result.error
    return UUID(result.data["ledger_id"])


class TestDispatchAfterCommit:
    async def test_create_records_activity_and_notifies(
        self, workflow, invoice_payload, notifier, session_factory, seed
    ):
        ledger_id = await create_invoice(workflow, invoice_payload)

        assert notifier.slugs() == ["invoice-approval-request"]
        (request,) = notifier.sent
        assert request.recipients == [seed.level_one]
        assert request.reference_id == "INV-1"
        assert "level 1" in request.body
        assert await pending_count(session_factory) == 0

        view = (await workflow.get_ledger(ledger_id)).data
        assert [a["action_type"] for a in view["activity"]] == [1, 4]
        created, status_changed = view["activity"]
        assert created["changes"] == []
        assert created["actor_id"] == str(seed.creator)
        assert status_changed["changes"] == [
            {
                "label": "Status",
                "line_item_id": None,
                "old_value": "Submitted",
                "new_value": "Approval In Progress",
            }
        ]

    async def test_update_records_field_changes(self, workflow, invoice_payload, seed):
        ledger_id = await create_invoice(workflow, invoice_payload)

        result = await workflow.update_ledger(
            ledger_id, {"due_date": date(2024, 3, 15), "actor_id": seed.creator}
        )
        assert result.ok

        activity = (await workflow.get_ledger(ledger_id)).data["activity"]
        assert activity[-1]["action_type"] == 2
        assert activity[-1]["changes"] == [
            {
                "label": "Due Date",
                "line_item_id": None,
                "old_value": "03/01/2024",
                "new_value": "03/15/2024",
            }
        ]

    async def test_line_item_changes_carry_line_item_id(self, workflow, invoice_payload, seed):
        ledger_id = await create_invoice(workflow, invoice_payload)
        document = (await workflow.get_ledger(ledger_id)).data["document"]
        line_item_id = document["line_items"][0]["line_item_id"]

        await workflow.update_ledger(
            ledger_id,
            {
                "line_items": [
                    {
                        "id": line_item_id,
                        "employee_id": seed.employee_a,
                        "placement_id": seed.placement_a,
                        "description": "Consulting",
                        "hours": "12",
                        "rate": "50",
                    }
                ]
            },
        )

        changes = (await workflow.get_ledger(ledger_id)).data["activity"][-1]["changes"]
        item_changes = [
            (c["label"], c["old_value"], c["new_value"]) for c in changes if c["line_item_id"]
        ]
        assert item_changes == [("Hours", "10", "12"), ("Amount", "500", "600")]
        assert {c["line_item_id"] for c in changes if c["line_item_id"]} == {line_item_id}

    async def test_approval_notifications(
        self, workflow, invoice_payload, notifier, renderer, seed
    ):
        ledger_id = await create_invoice(workflow, invoice_payload)
        await workflow.approve(ledger_id, seed.level_one)
        result = await workflow.approve(ledger_id, seed.level_two)
        assert result.data["status"] == "Approved"

        assert notifier.slugs() == [
            "invoice-approval-request",
            "invoice-approval-request",
            "invoice-approved",
        ]
        assert notifier.sent[1].recipients == [seed.level_two]

        approved = notifier.sent[-1]
        assert approved.recipients == [seed.creator]
        assert approved.attachments == ["https://docs.example.test/INV-1.pdf"]
        (view,) = renderer.views
        assert view["document"]["header"]["status"] == "Approved"

    async def test_rejection_notifies_creator(self, workflow, invoice_payload, notifier, seed):
        ledger_id = await create_invoice(workflow, invoice_payload)

        result = await workflow.reject(ledger_id, seed.level_one, "Hours do not match")

        assert result.ok
        assert notifier.slugs()[-1] == "invoice-rejected"
        assert notifier.sent[-1].recipients == [seed.creator]
        assert "Hours do not match" in notifier.sent[-1].body

    async def test_draft_notifies_nobody(self, workflow, invoice_payload, notifier):
        await create_invoice(workflow, invoice_payload, save_as_draft=True)
        assert notifier.sent == []

    async def test_dispatch_can_be_deferred(
        self, session_factory, dispatcher, settings, invoice_payload, notifier
    ):
        workflow = LedgerWorkflow(
            session_factory, dispatcher, replace(settings, dispatch_after_commit=False)
        )
        await create_invoice(workflow, invoice_payload)

        assert notifier.sent == []
        assert await pending_count(session_factory) == 3

        result = await dispatcher.drain_all()

        assert len(result.dispatched) == 3
        assert notifier.slugs() == ["invoice-approval-request"]
        assert await pending_count(session_factory) == 0

    async def test_only_the_operations_own_events_are_dispatched(
        self, session_factory, dispatcher, settings, workflow, invoice_payload, notifier
    ):
        deferred = LedgerWorkflow(
            session_factory, dispatcher, replace(settings, dispatch_after_commit=False)
        )
        await create_invoice(deferred, invoice_payload)
        assert await pending_count(session_factory) == 3

        await create_invoice(workflow, invoice_payload)

        (request,) = notifier.sent
        assert request.reference_id == "INV-2"
        assert await pending_count(session_factory) == 3


class TestFailures:
    async def test_failing_handler_is_isolated(
        self, workflow, invoice_payload, emitter, dispatcher, notifier, session_factory
    ):
        async def flaky(record) -> None:
            raise RuntimeError("search index down")

        emitter.on(LedgerCreated, flaky)

        ledger_id = await create_invoice(workflow, invoice_payload)

        # Other handlers still ran
        assert notifier.slugs() == ["invoice-approval-request"]
        activity = (await workflow.get_ledger(ledger_id)).data["activity"]
        assert [a["action_type"] for a in activity] == [1, 4]

        row = await outbox_row(session_factory, "LedgerCreated")
        assert row.dispatched_at is None
        # One attempt after commit; retries belong to the worker
        assert row.attempts == 1
        assert row.last_error == "RuntimeError: search index down"

        emitter.off(flaky)
        result = await dispatcher.drain_all()

        assert result.dispatched == [row.event_id]
        row = await outbox_row(session_factory, "LedgerCreated")
        assert row.dispatched_at is not None
        assert row.last_error is None
        # Redelivery does not duplicate the activity row
        activity = (await workflow.get_ledger(ledger_id)).data["activity"]
        assert [a["action_type"] for a in activity] == [1, 4]

    async def test_rows_past_max_attempts_are_left(
        self, session_factory, settings, invoice_payload
    ):
        async def broken(record) -> None:
            raise ValueError("nope")

        emitter = AsyncEventEmitter()
        emitter.on_all(broken)
        dispatcher = OutboxDispatcher(session_factory, emitter, max_attempts=1)
        workflow = LedgerWorkflow(session_factory, dispatcher, settings)

        await create_invoice(workflow, invoice_payload)

        assert await pending_count(session_factory, max_attempts=1) == 0
        assert (await dispatcher.drain()).total == 0
        row = await outbox_row(session_factory, "LedgerCreated")
        assert row.attempts == 1

    async def test_notifier_failure_does_not_fail_operation(
        self, session_factory, settings, invoice_payload, seed
    ):
        class DownNotifier:
            async def send(self, payload) -> None:
                raise ConnectionError("smtp unreachable")

        emitter = register_default_handlers(
            AsyncEventEmitter(), session_factory, DownNotifier()
        )
        workflow = LedgerWorkflow(
            session_factory, OutboxDispatcher(session_factory, emitter), settings
        )

        result = await workflow.create_ledger(invoice_payload())

        assert result.ok
        assert result.data["reference_id"] == "INV-1"
        row = await outbox_row(session_factory, "ApprovalRequested")
        assert row.attempts >= 1
        assert "smtp unreachable" in row.last_error


class TestActivityTrackWriter:
    async def test_redelivery_is_a_no_op(self, session_factory, settings, invoice_payload):
        workflow = LedgerWorkflow(session_factory, None, settings)
        await create_invoice(workflow, invoice_payload)
        async with session_factory() as session:
            (record, *_) = await OutboxStore(session).fetch_pending(10, 5)
        assert record.event_type == "LedgerCreated"

        writer = ActivityTrackWriter(session_factory)
        first = await writer.record(record)
        second = await writer.record(record)

        assert first is not None
        assert second is None
        async with session_factory() as session:
            count = await session.execute(
                select(func.count()).select_from(LedgerActivityTrack)
            )
            assert count.scalar_one() == 1

    async def test_unmapped_events_are_skipped(self, session_factory, settings, invoice_payload):
        workflow = LedgerWorkflow(session_factory, None, settings)
        await create_invoice(workflow, invoice_payload)
        async with session_factory() as session:
            records = await OutboxStore(session).fetch_pending(10, 5)

        request = next(r for r in records if r.event_type == "ApprovalRequested")
        assert await ActivityTrackWriter(session_factory).record(request) is None


@pytest.mark.parametrize(
    "date_format,expected", [("%m/%d/%Y", "03/01/2024"), ("%d.%m.%Y", "01.03.2024")]
)
def test_format_value_dates(date_format, expected):
    assert format_value("due_date", "2024-03-01", date_format) == expected
    assert format_value("order_number", "2024-03-01", date_format) == "2024-03-01"
    assert format_value("due_date", None, date_format) is None
