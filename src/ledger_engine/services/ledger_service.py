"""Ledger service - aggregate operations on invoices and bills."""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Any, Iterable, Sequence
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_engine.calculators import (
    AmountRecalculator,
    HourEntryInput,
    LedgerTotals,
    LineItemCandidate,
    RateScheduleResolver,
    TimesheetConsolidator,
    parse_hours,
    round_to_cents,
)
from ledger_engine.collaborators import FileStorage
from ledger_engine.events.outbox import OutboxStore
from ledger_engine.events.types import (
    EventMetadata,
    LedgerCreated,
    LedgerLineItemRemoved,
    LedgerUpdated,
    to_jsonable,
)
from ledger_engine.exceptions import NotFoundError, StateConflictError, ValidationError
from ledger_engine.models import (
    TIMESHEET_APPROVED,
    AddressType,
    Company,
    Employee,
    Ledger,
    LedgerAddress,
    LedgerLineItem,
    LedgerType,
    Placement,
    Timesheet,
    TimesheetHourEntry,
)
from ledger_engine.models.base import utcnow
from ledger_engine.schemas import (
    AddressInput,
    LedgerCreate,
    LedgerSnapshot,
    LedgerUpdate,
    LineItemInput,
)
from ledger_engine.services.reference_ids import ReferenceIdGenerator
from ledger_engine.services.state_machine import LedgerStateMachine, LedgerStatus

logger = logging.getLogger(__name__)

# Header fields captured in snapshots and activity diffs
TRACKED_HEADER_FIELDS = (
    "order_number",
    "ledger_date",
    "due_date",
    "status",
    "approval_level",
    "sub_total_amount",
    "discount_type",
    "discount_value",
    "discount_amount",
    "adjustment_amount",
    "amount",
    "balance_amount",
    "customer_note",
    "terms_and_conditions",
    "reject_reason",
)
TRACKED_LINE_ITEM_FIELDS = (
    "line_item_id",
    "employee_id",
    "placement_id",
    "description",
    "hours",
    "rate",
    "amount",
    "information",
    "document_url",
)
TRACKED_ADDRESS_FIELDS = (
    "address_type",
    "address_line_one",
    "address_line_two",
    "city",
    "zip_code",
    "state",
    "country",
)


class HourEntryConflictError(StateConflictError):
    """Raised when an hour entry is already linked to another line item."""

    code = "HOUR_ENTRY_CONFLICT"

    def __init__(self, hour_ids: Iterable[int]):
        self.hour_ids = sorted(hour_ids)
        super().__init__(
            f"Hour entries already invoiced or unavailable: {self.hour_ids}",
            hour_ids=self.hour_ids,
        )


def _plain(value: Any) -> Any:
    """Snapshot value: decimals without scale noise, everything JSON-safe."""
    if isinstance(value, Decimal):
        return format(value.normalize(), "f")
    return to_jsonable(value)


def line_item_input_from_candidate(candidate: LineItemCandidate) -> LineItemInput:
    """Turn a consolidated candidate into a line item payload."""
    return LineItemInput(
        employee_id=candidate.employee_id,
        placement_id=candidate.placement_id,
        description=candidate.description,
        hours=candidate.hours,
        rate=candidate.rate,
        amount=candidate.amount,
        timesheet_hour_ids=list(candidate.timesheet_hour_ids),
        information=candidate.information,
    )


class LedgerService:
    """Service for the ledger aggregate (header, line items, addresses).

    Operations:
    - create: persist a new ledger with its line items and addresses
    - update: apply header / line item / address changes
    - delete_line_item: soft-delete a line item and release its hours
    - recompute_totals: re-sum live line items into the header
    - build_line_items: consolidate hour entries into candidates (no writes)

    Every mutation stages its domain event in the outbox; the caller owns
    the transaction.
    """

    def __init__(
        self,
        session: AsyncSession,
        outbox: OutboxStore | None = None,
        reference_ids: ReferenceIdGenerator | None = None,
        file_storage: FileStorage | None = None,
        date_format: str = "%m/%d/%Y",
        engine_version: str | None = None,
    ):
        self.session = session
        self.engine_version = engine_version
        self.outbox = outbox or OutboxStore(session)
        self.reference_ids = reference_ids or ReferenceIdGenerator(session)
        self.file_storage = file_storage
        self.consolidator = TimesheetConsolidator(date_format)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def get_ledger(self, ledger_id: UUID) -> Ledger:
        result = await self.session.execute(select(Ledger).where(Ledger.ledger_id == ledger_id))
        ledger = result.scalar_one_or_none()
        if ledger is None:
            raise NotFoundError("Ledger", ledger_id)
        return ledger

    async def get_line_items(
        self,
        ledger_id: UUID,
        include_deleted: bool = False,
    ) -> Sequence[LedgerLineItem]:
        query = select(LedgerLineItem).where(LedgerLineItem.ledger_id == ledger_id)
        if not include_deleted:
            query = query.where(LedgerLineItem.deleted_at.is_(None))
        result = await self.session.execute(query.order_by(LedgerLineItem.line_item_id))
        return result.scalars().all()

    async def get_addresses(self, ledger_id: UUID) -> Sequence[LedgerAddress]:
        result = await self.session.execute(
            select(LedgerAddress)
            .where(LedgerAddress.ledger_id == ledger_id)
            .order_by(LedgerAddress.address_type)
        )
        return result.scalars().all()

    async def _get_line_item(self, line_item_id: int) -> LedgerLineItem:
        result = await self.session.execute(
            select(LedgerLineItem).where(
                LedgerLineItem.line_item_id == line_item_id,
                LedgerLineItem.deleted_at.is_(None),
            )
        )
        item = result.scalar_one_or_none()
        if item is None:
            raise NotFoundError("LedgerLineItem", line_item_id)
        return item

    async def _get_placements(self, placement_ids: Iterable[UUID]) -> dict[UUID, Placement]:
        ids = set(placement_ids)
        if not ids:
            return {}
        result = await self.session.execute(
            select(Placement).where(Placement.placement_id.in_(sorted(ids)))
        )
        placements = {p.placement_id: p for p in result.scalars().all()}
        missing = ids - placements.keys()
        if missing:
            raise NotFoundError("Placement", sorted(str(m) for m in missing)[0])
        return placements

    async def _check_employees(self, employee_ids: Iterable[UUID]) -> None:
        ids = set(employee_ids)
        if not ids:
            return
        result = await self.session.execute(
            select(Employee.employee_id).where(Employee.employee_id.in_(sorted(ids)))
        )
        missing = ids - set(result.scalars().all())
        if missing:
            raise NotFoundError("Employee", sorted(str(m) for m in missing)[0])

    # ------------------------------------------------------------------
    # Hour entries
    # ------------------------------------------------------------------

    async def get_uninvoiced_hour_entries(
        self,
        placement_id: UUID,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> Sequence[TimesheetHourEntry]:
        """Approved hour entries of a placement not yet linked to an invoice."""
        query = (
            select(TimesheetHourEntry)
            .join(Timesheet, Timesheet.timesheet_id == TimesheetHourEntry.timesheet_id)
            .where(
                Timesheet.placement_id == placement_id,
                Timesheet.status == TIMESHEET_APPROVED,
                TimesheetHourEntry.invoice_raised.is_(False),
            )
        )
        if start_date is not None:
            query = query.where(TimesheetHourEntry.work_date >= start_date)
        if end_date is not None:
            query = query.where(TimesheetHourEntry.work_date <= end_date)
        result = await self.session.execute(
            query.order_by(TimesheetHourEntry.work_date.asc(), TimesheetHourEntry.id.asc())
            .execution_options(populate_existing=True)
        )
        return result.scalars().all()

    async def _load_hour_entries(
        self,
        hour_ids: Sequence[int],
        placement_id: UUID,
    ) -> Sequence[TimesheetHourEntry]:
        """Load hour entries and check they are approved and belong to the placement."""
        result = await self.session.execute(
            select(TimesheetHourEntry, Timesheet.placement_id, Timesheet.status)
            .join(Timesheet, Timesheet.timesheet_id == TimesheetHourEntry.timesheet_id)
            .where(TimesheetHourEntry.id.in_(sorted(set(hour_ids))))
            .execution_options(populate_existing=True)
        )
        rows = result.all()
        found = {row[0].id for row in rows}
        missing = set(hour_ids) - found
        if missing:
            raise NotFoundError("TimesheetHourEntry", sorted(missing)[0])

        errors: list[dict[str, Any]] = []
        for entry, entry_placement_id, timesheet_status in rows:
            if timesheet_status != TIMESHEET_APPROVED:
                errors.append({"hour_id": entry.id, "error": "timesheet is not approved"})
            elif entry_placement_id != placement_id:
                errors.append({"hour_id": entry.id, "error": "belongs to another placement"})
        if errors:
            raise ValidationError("Hour entries are not eligible for invoicing", errors=errors)
        return sorted((row[0] for row in rows), key=lambda e: (e.work_date, e.id))

    async def reserve_hours(self, hour_ids: Sequence[int]) -> None:
        """Flip ``invoice_raised`` on, failing if any entry is already taken.

        The predicate on ``invoice_raised`` makes the write itself the
        reservation check, so two transactions cannot both claim an entry.
        """
        ids = set(hour_ids)
        if not ids:
            return
        result = await self.session.execute(
            update(TimesheetHourEntry)
            .where(
                TimesheetHourEntry.id.in_(sorted(ids)),
                TimesheetHourEntry.invoice_raised.is_(False),
            )
            .values(invoice_raised=True)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != len(ids):
            taken = await self.session.execute(
                select(TimesheetHourEntry.id).where(
                    TimesheetHourEntry.id.in_(sorted(ids)),
                    TimesheetHourEntry.invoice_raised.is_(True),
                )
            )
            raise HourEntryConflictError(taken.scalars().all() or ids)

    async def release_hours(self, hour_ids: Sequence[int]) -> None:
        ids = set(hour_ids)
        if not ids:
            return
        await self.session.execute(
            update(TimesheetHourEntry)
            .where(TimesheetHourEntry.id.in_(sorted(ids)))
            .values(invoice_raised=False)
            .execution_options(synchronize_session=False)
        )

    async def build_line_items(
        self,
        placement_id: UUID,
        hour_ids: Sequence[int],
    ) -> list[LineItemCandidate]:
        """Consolidate hour entries into candidate line items without persisting.

        Raises:
            NotFoundError: Unknown placement or hour entry
            ValidationError: Entries not approved or from another placement
            HourEntryConflictError: Entries already invoiced
            RateNotFoundError: An entry date has no billing rate period
        """
        placements = await self._get_placements([placement_id])
        placement = placements[placement_id]
        employee = await self.session.get(Employee, placement.employee_id)
        if employee is None:
            raise NotFoundError("Employee", placement.employee_id)

        entries = await self._load_hour_entries(hour_ids, placement_id)
        already = [e.id for e in entries if e.invoice_raised]
        if already:
            raise HourEntryConflictError(already)

        schedule = await RateScheduleResolver(self.session).get_schedule(placement_id)
        inputs = [
            HourEntryInput(
                hour_entry_id=e.id,
                work_date=e.work_date,
                regular_hours=parse_hours(e.regular_hours),
                ot_hours=parse_hours(e.ot_hours),
            )
            for e in entries
        ]
        return self.consolidator.consolidate(
            inputs,
            schedule,
            employee_id=employee.employee_id,
            placement_id=placement_id,
            employee_name=employee.display_name,
        )

    # ------------------------------------------------------------------
    # Totals & snapshots
    # ------------------------------------------------------------------

    async def recompute_totals(
        self,
        ledger: Ledger,
        previous_amount: Decimal | None = None,
        previous_balance: Decimal | None = None,
    ) -> LedgerTotals:
        """Re-sum the persisted live line items into the ledger header."""
        await self.session.flush()
        result = await self.session.execute(
            select(LedgerLineItem.amount).where(
                LedgerLineItem.ledger_id == ledger.ledger_id,
                LedgerLineItem.deleted_at.is_(None),
            )
        )
        totals = AmountRecalculator.compute_totals(
            result.scalars().all(),
            discount_type=ledger.discount_type,
            discount_value=ledger.discount_value,
            discount_amount=ledger.discount_amount,
            adjustment_amount=ledger.adjustment_amount,
        )
        ledger.sub_total_amount = totals.sub_total_amount
        ledger.discount_amount = totals.discount_amount
        ledger.adjustment_amount = totals.adjustment_amount
        ledger.amount = totals.amount
        ledger.balance_amount = AmountRecalculator.carry_balance(
            totals.amount, previous_amount, previous_balance
        )
        await self.session.flush()
        return totals

    async def snapshot(self, ledger: Ledger) -> dict[str, Any]:
        """JSON-safe, versioned view of the ledger for activity diffs."""
        items = await self.get_line_items(ledger.ledger_id)
        addresses = await self.get_addresses(ledger.ledger_id)
        return LedgerSnapshot(
            engine_version=self.engine_version,
            header={f: _plain(getattr(ledger, f)) for f in TRACKED_HEADER_FIELDS},
            line_items=[
                {f: _plain(getattr(item, f)) for f in TRACKED_LINE_ITEM_FIELDS} for item in items
            ],
            addresses=[
                {f: _plain(getattr(addr, f)) for f in TRACKED_ADDRESS_FIELDS} for addr in addresses
            ],
        ).model_dump(mode="json")

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def create(self, payload: LedgerCreate) -> Ledger:
        """Persist a new ledger with its line items and addresses.

        Raises:
            NotFoundError: Unknown company, placement, employee or hour entry
            ValidationError: Ineligible hour entries or document without storage
            HourEntryConflictError: Hour entries already invoiced
        """
        company = await self.session.get(Company, payload.company_id)
        if company is None:
            raise NotFoundError("Company", payload.company_id)

        status = LedgerStateMachine.initial_status(payload.save_as_draft)
        now = utcnow()
        ledger = Ledger(
            company_id=payload.company_id,
            ledger_type=payload.ledger_type,
            reference_id=await self.reference_ids.generate(payload.ledger_type),
            status=status.value,
            approval_level=1,
            order_number=payload.order_number,
            ledger_date=payload.ledger_date,
            due_date=payload.due_date,
            discount_type=payload.discount_type,
            discount_value=payload.discount_value,
            discount_amount=payload.discount_amount,
            adjustment_amount=payload.adjustment_amount,
            customer_note=payload.customer_note,
            terms_and_conditions=payload.terms_and_conditions,
            tax_information=(
                payload.tax_information.model_dump(mode="json")
                if payload.tax_information
                else None
            ),
            submitted_on=now if status == LedgerStatus.SUBMITTED else None,
            drafted_on=now if status == LedgerStatus.DRAFTED else None,
            created_by=payload.actor_id,
        )
        self.session.add(ledger)
        await self.session.flush()

        await self._add_line_items(ledger, payload.line_items, payload.actor_id)
        await self._upsert_address(ledger, AddressType.BILLING, payload.billing_address)
        await self._upsert_address(ledger, AddressType.SHIPPING, payload.shipping_address)
        await self.recompute_totals(ledger)

        self.outbox.append(
            LedgerCreated(
                metadata=EventMetadata.create(
                    correlation_id=ledger.ledger_id, actor_id=payload.actor_id
                ),
                ledger_id=ledger.ledger_id,
                ledger_type=ledger.ledger_type,
                reference_id=ledger.reference_id,
                status=ledger.status,
                amount=ledger.amount,
                snapshot=await self.snapshot(ledger),
            )
        )
        logger.info(
            "Created %s %s (%s) amount=%s",
            ledger.ledger_type,
            ledger.reference_id,
            ledger.status,
            ledger.amount,
        )
        return ledger

    async def update(self, ledger_id: UUID, payload: LedgerUpdate) -> Ledger:
        """Apply header, line item and address changes, then re-sum totals.

        Line items with an ``id`` are updated, those without are added.
        """
        ledger = await self.get_ledger(ledger_id)
        self._ensure_mutable(ledger)
        if ledger.ledger_type == LedgerType.BILL.value and any(
            item.timesheet_hour_ids for item in payload.line_items
        ):
            raise ValidationError(
                "Bills cannot consume timesheet hours",
                errors=[{"field": "line_items.timesheet_hour_ids"}],
            )

        before = await self.snapshot(ledger)
        previous_amount, previous_balance = ledger.amount, ledger.balance_amount

        for field_name, value in payload.header_changes().items():
            if field_name == "tax_information":
                value = value.model_dump(mode="json") if value is not None else None
            setattr(ledger, field_name, value)

        additions = [item for item in payload.line_items if item.id is None]
        for item in payload.line_items:
            if item.id is not None:
                await self._update_line_item(ledger, item.id, item, payload.actor_id)
        await self._add_line_items(ledger, additions, payload.actor_id)

        if "billing_address" in payload.model_fields_set:
            await self._upsert_address(ledger, AddressType.BILLING, payload.billing_address)
        if "shipping_address" in payload.model_fields_set:
            await self._upsert_address(ledger, AddressType.SHIPPING, payload.shipping_address)

        ledger.updated_at = utcnow()
        ledger.updated_by = payload.actor_id
        await self.recompute_totals(ledger, previous_amount, previous_balance)

        self.outbox.append(
            LedgerUpdated(
                metadata=EventMetadata.create(
                    correlation_id=ledger.ledger_id, actor_id=payload.actor_id
                ),
                ledger_id=ledger.ledger_id,
                ledger_type=ledger.ledger_type,
                reference_id=ledger.reference_id,
                before=before,
                after=await self.snapshot(ledger),
            )
        )
        logger.info(
            "Updated %s %s amount=%s", ledger.ledger_type, ledger.reference_id, ledger.amount
        )
        return ledger

    async def delete_line_item(self, line_item_id: int, actor_id: UUID | None = None) -> Ledger:
        """Soft-delete a line item, release its hour entries, re-sum totals."""
        item = await self._get_line_item(line_item_id)
        ledger = await self.get_ledger(item.ledger_id)
        self._ensure_mutable(ledger)

        before = await self.snapshot(ledger)
        previous_amount, previous_balance = ledger.amount, ledger.balance_amount
        released = list(item.timesheet_hour_ids or [])

        await self.release_hours(released)
        item.deleted_at = utcnow()
        item.updated_by = actor_id
        ledger.updated_at = utcnow()
        ledger.updated_by = actor_id
        await self.recompute_totals(ledger, previous_amount, previous_balance)

        self.outbox.append(
            LedgerLineItemRemoved(
                metadata=EventMetadata.create(correlation_id=ledger.ledger_id, actor_id=actor_id),
                ledger_id=ledger.ledger_id,
                line_item_id=item.line_item_id,
                amount=item.amount,
                released_hour_ids=tuple(released),
                before=before,
                after=await self.snapshot(ledger),
            )
        )
        logger.info(
            "Removed line item %s from %s, released %d hour entries",
            line_item_id,
            ledger.reference_id,
            len(released),
        )
        return ledger

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_mutable(self, ledger: Ledger) -> None:
        if not LedgerStateMachine.can_modify_lines(ledger.status):
            raise StateConflictError(
                f"Ledger {ledger.reference_id} cannot be modified in status '{ledger.status}'",
                ledger_id=ledger.ledger_id,
                status=ledger.status,
            )

    @staticmethod
    def _line_amount(item: LineItemInput) -> Decimal:
        if item.amount is not None:
            return round_to_cents(item.amount)
        return round_to_cents(item.hours * item.rate)

    async def _check_line_refs(self, items: Sequence[LineItemInput]) -> None:
        placements = await self._get_placements(
            item.placement_id for item in items if item.placement_id is not None
        )
        await self._check_employees(item.employee_id for item in items)
        for item in items:
            placement = placements.get(item.placement_id) if item.placement_id else None
            if placement is not None and placement.employee_id != item.employee_id:
                raise ValidationError(
                    "Line item employee does not match its placement",
                    errors=[{"placement_id": str(item.placement_id)}],
                )

    async def _link_hours(self, ledger: Ledger, item: LineItemInput) -> None:
        if not item.timesheet_hour_ids:
            return
        if ledger.ledger_type != LedgerType.INVOICE.value:
            raise ValidationError("Bills cannot consume timesheet hours")
        if item.placement_id is None:
            raise ValidationError(
                "Linked hour entries need the line item placement",
                errors=[{"field": "placement_id"}],
            )
        await self._load_hour_entries(item.timesheet_hour_ids, item.placement_id)
        await self.reserve_hours(item.timesheet_hour_ids)

    async def _document_url(self, ledger: Ledger, document_id: str | None) -> str | None:
        if not document_id:
            return None
        if self.file_storage is None:
            raise ValidationError(
                "Document upload is not configured", errors=[{"document_id": document_id}]
            )
        return await self.file_storage.move_to_permanent(document_id, "ledger", ledger.ledger_id)

    async def _add_line_items(
        self,
        ledger: Ledger,
        items: Sequence[LineItemInput],
        actor_id: UUID | None,
    ) -> list[LedgerLineItem]:
        if not items:
            return []
        await self._check_line_refs(items)
        created: list[LedgerLineItem] = []
        for item in items:
            await self._link_hours(ledger, item)
            line = LedgerLineItem(
                ledger_id=ledger.ledger_id,
                employee_id=item.employee_id,
                placement_id=item.placement_id,
                description=item.description,
                hours=round_to_cents(item.hours),
                rate=item.rate,
                amount=self._line_amount(item),
                timesheet_hour_ids=list(item.timesheet_hour_ids),
                timesheets_available=bool(item.timesheet_hour_ids),
                information=item.information,
                document_url=await self._document_url(ledger, item.document_id),
                created_by=actor_id,
            )
            self.session.add(line)
            created.append(line)
        await self.session.flush()
        return created

    async def _update_line_item(
        self,
        ledger: Ledger,
        line_item_id: int,
        item: LineItemInput,
        actor_id: UUID | None,
    ) -> LedgerLineItem:
        line = await self._get_line_item(line_item_id)
        if line.ledger_id != ledger.ledger_id:
            raise NotFoundError("LedgerLineItem", line_item_id)
        await self._check_line_refs([item])

        if "timesheet_hour_ids" in item.model_fields_set:
            kept = sorted(set(line.timesheet_hour_ids or []) & set(item.timesheet_hour_ids))
        else:
            kept = sorted(line.timesheet_hour_ids or [])
        if kept and item.placement_id != line.placement_id:
            if item.placement_id is None:
                raise ValidationError(
                    "Linked hour entries need the line item placement",
                    errors=[{"field": "placement_id", "line_item_id": line_item_id}],
                )
            await self._load_hour_entries(kept, item.placement_id)

        if "timesheet_hour_ids" in item.model_fields_set:
            old_ids = set(line.timesheet_hour_ids or [])
            new_ids = set(item.timesheet_hour_ids)
            await self.release_hours(sorted(old_ids - new_ids))
            added = sorted(new_ids - old_ids)
            if added:
                await self._link_hours(
                    ledger,
                    LineItemInput(
                        employee_id=item.employee_id,
                        placement_id=item.placement_id,
                        timesheet_hour_ids=added,
                    ),
                )
            line.timesheet_hour_ids = sorted(new_ids)
            line.timesheets_available = bool(new_ids)

        line.employee_id = item.employee_id
        line.placement_id = item.placement_id
        line.description = item.description
        line.hours = round_to_cents(item.hours)
        line.rate = item.rate
        line.amount = self._line_amount(item)
        if "information" in item.model_fields_set:
            line.information = item.information
        if item.document_id:
            line.document_url = await self._document_url(ledger, item.document_id)
        line.updated_by = actor_id
        line.updated_at = utcnow()
        return line

    async def _upsert_address(
        self,
        ledger: Ledger,
        address_type: AddressType,
        address: AddressInput | None,
    ) -> LedgerAddress | None:
        if address is None:
            return None
        result = await self.session.execute(
            select(LedgerAddress).where(
                LedgerAddress.ledger_id == ledger.ledger_id,
                LedgerAddress.address_type == address_type.value,
            )
        )
        row = result.scalar_one_or_none()
        if row is None:
            row = LedgerAddress(ledger_id=ledger.ledger_id, address_type=address_type.value)
            self.session.add(row)
        for field_name, value in address.model_dump().items():
            setattr(row, field_name, value)
        await self.session.flush()
        return row
