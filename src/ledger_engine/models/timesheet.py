"""Timesheet and hour entry models."""

from __future__ import annotations

from datetime import date
from uuid import UUID, uuid4

from sqlalchemy import Boolean, CheckConstraint, Date, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ledger_engine.models.base import Base, TimestampMixin

TIMESHEET_APPROVED = "Approved"


class Timesheet(Base, TimestampMixin):
    """Timesheet submitted against a placement for a period."""

    __tablename__ = "timesheet"

    timesheet_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    placement_id: Mapped[UUID] = mapped_column(
        ForeignKey("placement.placement_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    from_date: Mapped[date] = mapped_column(Date, nullable=False)
    to_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="Submitted")

    __table_args__ = (
        CheckConstraint(
            "status IN ('Drafted', 'Submitted', 'Approved', 'Rejected')",
            name="timesheet_status_check",
        ),
    )


class TimesheetHourEntry(Base, TimestampMixin):
    """One day of recorded hours.

    Durations are stored as ``HH:MM`` strings; ``invoice_raised`` marks the
    entry as consumed by exactly one live invoice line item.
    """

    __tablename__ = "timesheet_hour"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timesheet_id: Mapped[UUID] = mapped_column(
        ForeignKey("timesheet.timesheet_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    work_date: Mapped[date] = mapped_column(Date, nullable=False)
    regular_hours: Mapped[str] = mapped_column(String(8), nullable=False, default="00:00")
    ot_hours: Mapped[str] = mapped_column(String(8), nullable=False, default="00:00")
    invoice_raised: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
