"""Rate resolution, consolidation and total calculation."""

from ledger_engine.calculators.consolidator import TimesheetConsolidator, parse_hours
from ledger_engine.calculators.rate_resolver import (
    RateNotFoundError,
    RateSchedule,
    RateScheduleResolver,
    apply_discount,
)
from ledger_engine.calculators.totals import AmountRecalculator
from ledger_engine.calculators.types import (
    DiscountType,
    EffectiveRate,
    HourEntryInput,
    LedgerTotals,
    LineItemCandidate,
    round_to_cents,
)

__all__ = [
    "AmountRecalculator",
    "DiscountType",
    "EffectiveRate",
    "HourEntryInput",
    "LedgerTotals",
    "LineItemCandidate",
    "RateNotFoundError",
    "RateSchedule",
    "RateScheduleResolver",
    "TimesheetConsolidator",
    "apply_discount",
    "parse_hours",
    "round_to_cents",
]
