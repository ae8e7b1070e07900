"""Ledger (invoice / bill), line item, address and audit trail models."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from ledger_engine.models.base import Base, JSONType, TimestampMixin, utcnow


class LedgerType(str, Enum):
    INVOICE = "invoice"
    BILL = "bill"


class AddressType(int, Enum):
    BILLING = 1
    SHIPPING = 2


class ActivityAction(int, Enum):
    """Activity track action types."""

    CREATED = 1
    UPDATED = 2
    LINE_ITEM_DELETED = 3
    STATUS_CHANGED = 4


ZERO = Decimal("0")


class Ledger(Base, TimestampMixin):
    """Client invoice or vendor bill header."""

    __tablename__ = "ledger"

    ledger_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    company_id: Mapped[UUID] = mapped_column(
        ForeignKey("company.company_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    ledger_type: Mapped[str] = mapped_column(String, nullable=False, index=True)
    reference_id: Mapped[str] = mapped_column(String(30), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="Submitted", index=True)
    approval_level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    order_number: Mapped[str | None] = mapped_column(String(30), nullable=True)
    ledger_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    sub_total_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=ZERO)
    discount_type: Mapped[str | None] = mapped_column(String, nullable=True)
    discount_value: Mapped[Decimal | None] = mapped_column(Numeric(12, 4), nullable=True)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=ZERO)
    adjustment_amount: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=ZERO
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=ZERO)
    balance_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=ZERO)

    customer_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    terms_and_conditions: Mapped[str | None] = mapped_column(Text, nullable=True)
    tax_information: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    reject_reason: Mapped[str | None] = mapped_column(String, nullable=True)

    submitted_on: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    drafted_on: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_on: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[UUID | None] = mapped_column(nullable=True)
    updated_by: Mapped[UUID | None] = mapped_column(nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("ledger_type IN ('invoice', 'bill')", name="ledger_type_check"),
        CheckConstraint(
            "status IN ('Drafted', 'Submitted', 'Approval In Progress', 'Approved', "
            "'Rejected', 'Partially Approved', 'Partially Paid', 'Paid')",
            name="ledger_status_check",
        ),
        CheckConstraint(
            "discount_type IS NULL OR discount_type IN ('percent', 'fixed')",
            name="ledger_discount_type_check",
        ),
        CheckConstraint("approval_level >= 1", name="ledger_approval_level_check"),
    )


class LedgerLineItem(Base, TimestampMixin):
    """Billable row owned by exactly one ledger. Soft-deleted via deleted_at."""

    __tablename__ = "ledger_line_item"

    line_item_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ledger_id: Mapped[UUID] = mapped_column(
        ForeignKey("ledger.ledger_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id"),
        nullable=False,
    )
    placement_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("placement.placement_id"),
        nullable=True,
        index=True,
    )
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    hours: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=ZERO)
    rate: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False, default=ZERO)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=ZERO)
    timesheet_hour_ids: Mapped[list[int]] = mapped_column(JSONType, nullable=False, default=list)
    timesheets_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    information: Mapped[str | None] = mapped_column(String(255), nullable=True)
    document_url: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_by: Mapped[UUID | None] = mapped_column(nullable=True)
    updated_by: Mapped[UUID | None] = mapped_column(nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class LedgerAddress(Base):
    """Billing or shipping address of a ledger (one per type)."""

    __tablename__ = "ledger_address"

    ledger_address_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ledger_id: Mapped[UUID] = mapped_column(
        ForeignKey("ledger.ledger_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    address_type: Mapped[int] = mapped_column(Integer, nullable=False)
    address_line_one: Mapped[str | None] = mapped_column(String, nullable=True)
    address_line_two: Mapped[str | None] = mapped_column(String, nullable=True)
    city: Mapped[str | None] = mapped_column(String, nullable=True)
    zip_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    state: Mapped[str | None] = mapped_column(String, nullable=True)
    country: Mapped[str | None] = mapped_column(String, nullable=True)

    __table_args__ = (
        UniqueConstraint("ledger_id", "address_type", name="ledger_address_type_unique"),
        CheckConstraint("address_type IN (1, 2)", name="ledger_address_type_check"),
    )


# ===== Audit =====


class LedgerApprovalTrack(Base):
    """Append-only record of every approval-workflow transition."""

    __tablename__ = "ledger_approval_track"

    approval_track_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ledger_id: Mapped[UUID] = mapped_column(
        ForeignKey("ledger.ledger_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    actor_id: Mapped[UUID | None] = mapped_column(nullable=True)
    action: Mapped[str] = mapped_column(String, nullable=False)
    approval_level: Mapped[int | None] = mapped_column(Integer, nullable=True)
    from_status: Mapped[str] = mapped_column(String, nullable=False)
    to_status: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class LedgerActivityTrack(Base):
    """One audited action on a ledger. ``event_id`` makes replays idempotent."""

    __tablename__ = "ledger_activity_track"

    activity_track_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ledger_id: Mapped[UUID] = mapped_column(
        ForeignKey("ledger.ledger_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    event_id: Mapped[UUID] = mapped_column(nullable=False, unique=True)
    action_type: Mapped[int] = mapped_column(Integer, nullable=False)
    actor_id: Mapped[UUID | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class LedgerFieldChange(Base):
    __tablename__ = "ledger_field_change"

    field_change_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    activity_track_id: Mapped[int] = mapped_column(
        ForeignKey("ledger_activity_track.activity_track_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    line_item_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    field_name: Mapped[str] = mapped_column(String, nullable=False)
    label: Mapped[str] = mapped_column(String, nullable=False)
    old_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    new_value: Mapped[str | None] = mapped_column(Text, nullable=True)
