"""Type definitions for the consolidation pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any
from uuid import UUID

CENTS = Decimal("0.01")


def round_to_cents(amount: Decimal) -> Decimal:
    """Round amount to 2 decimal places (cents)."""
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


class DiscountType(str, Enum):
    """Discount kinds for rate periods and ledger headers."""

    PERCENT = "percent"
    FIXED = "fixed"


@dataclass(frozen=True)
class EffectiveRate:
    """Discounted regular/OT rate pair resolved for one date."""

    rate_period_id: UUID
    regular_rate: Decimal
    ot_rate: Decimal
    effective_from: date
    effective_to: date | None = None


@dataclass(frozen=True)
class HourEntryInput:
    """Approved hour entry as fed to the consolidator."""

    hour_entry_id: int
    work_date: date
    regular_hours: Decimal
    ot_hours: Decimal


@dataclass
class LineItemCandidate:
    """A consolidated line item before persistence."""

    employee_id: UUID
    placement_id: UUID
    rate_period_id: UUID
    rate: Decimal
    ot_rate: Decimal
    regular_hours: Decimal = Decimal("0")
    ot_hours: Decimal = Decimal("0")
    regular_amount: Decimal = Decimal("0")
    ot_amount: Decimal = Decimal("0")
    service_from: date | None = None
    service_to: date | None = None
    description: str | None = None
    information: str | None = None
    timesheet_hour_ids: list[int] = field(default_factory=list)

    @property
    def hours(self) -> Decimal:
        return self.regular_hours + self.ot_hours

    @property
    def amount(self) -> Decimal:
        return round_to_cents(self.regular_amount + self.ot_amount)

    def to_canonical_dict(self) -> dict[str, Any]:
        """Return canonical dict for comparison (deterministic ordering)."""
        return {
            "employee_id": str(self.employee_id),
            "placement_id": str(self.placement_id),
            "rate_period_id": str(self.rate_period_id),
            "rate": str(self.rate),
            "ot_rate": str(self.ot_rate),
            "regular_hours": str(self.regular_hours),
            "ot_hours": str(self.ot_hours),
            "amount": str(self.amount),
            "timesheet_hour_ids": sorted(self.timesheet_hour_ids),
        }


@dataclass(frozen=True)
class LedgerTotals:
    """Recomputed header amounts."""

    sub_total_amount: Decimal
    discount_amount: Decimal
    adjustment_amount: Decimal
    amount: Decimal

    @property
    def is_consistent(self) -> bool:
        return self.amount == (
            self.sub_total_amount + self.adjustment_amount - self.discount_amount
        )
