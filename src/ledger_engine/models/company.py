"""Company, employee, placement and billing rate models."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, Date, ForeignKey, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from ledger_engine.models.base import Base, TimestampMixin


class Company(Base, TimestampMixin):
    """Client or vendor company that owns ledgers."""

    __tablename__ = "company"

    company_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String, nullable=False)
    invoice_approval_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("approval_setting.approval_setting_id"),
        nullable=True,
    )
    bill_approval_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("approval_setting.approval_setting_id"),
        nullable=True,
    )


class Employee(Base, TimestampMixin):
    """Placed employee (consultant)."""

    __tablename__ = "employee"

    employee_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    display_name: Mapped[str] = mapped_column(String, nullable=False)
    email: Mapped[str | None] = mapped_column(String, nullable=True)


class Placement(Base, TimestampMixin):
    """Engagement of an employee at a client company."""

    __tablename__ = "placement"

    placement_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    company_id: Mapped[UUID] = mapped_column(
        ForeignKey("company.company_id", ondelete="CASCADE"),
        nullable=False,
    )
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id", ondelete="CASCADE"),
        nullable=False,
    )
    reference_id: Mapped[str | None] = mapped_column(String(30), nullable=True)
    invoice_approval_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("approval_setting.approval_setting_id"),
        nullable=True,
    )
    bill_approval_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("approval_setting.approval_setting_id"),
        nullable=True,
    )


class BillingRatePeriod(Base, TimestampMixin):
    """Date range during which a fixed regular/OT rate applies to a placement."""

    __tablename__ = "billing_rate_period"

    billing_rate_period_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    placement_id: Mapped[UUID] = mapped_column(
        ForeignKey("placement.placement_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[date | None] = mapped_column(Date, nullable=True)
    regular_rate: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    ot_rate: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False, default=Decimal("0"))
    discount_type: Mapped[str | None] = mapped_column(String, nullable=True)
    discount_value: Mapped[Decimal] = mapped_column(
        Numeric(12, 4), nullable=False, default=Decimal("0")
    )

    __table_args__ = (
        CheckConstraint(
            "effective_to IS NULL OR effective_to >= effective_from",
            name="billing_rate_period_dates_check",
        ),
        CheckConstraint(
            "discount_type IS NULL OR discount_type IN ('percent', 'fixed')",
            name="billing_rate_period_discount_type_check",
        ),
    )

    def is_active_on(self, as_of_date: date) -> bool:
        """Check if the period covers a given date."""
        if self.effective_from > as_of_date:
            return False
        if self.effective_to is not None and self.effective_to < as_of_date:
            return False
        return True
