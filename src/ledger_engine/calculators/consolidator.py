"""Consolidation of approved hour entries into rate-consistent line items."""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Iterable, Protocol
from uuid import UUID

from ledger_engine.calculators.types import (
    EffectiveRate,
    HourEntryInput,
    LineItemCandidate,
    round_to_cents,
)
from ledger_engine.exceptions import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_DATE_FORMAT = "%m/%d/%Y"


class RateLookup(Protocol):
    def resolve(self, as_of_date: date) -> EffectiveRate: ...


def parse_hours(value: str | None) -> Decimal:
    """Convert an ``HH:MM`` duration into fractional hours (2 decimals).

    ``"07:30"`` -> ``Decimal("7.50")``; a bare ``"8"`` is eight hours.
    """
    if value is None or value == "":
        return Decimal("0.00")
    hours_part, _, minutes_part = str(value).strip().partition(":")
    try:
        hours = Decimal(hours_part or "0")
        minutes = Decimal(minutes_part or "0")
    except ArithmeticError as exc:
        raise ValidationError(f"Invalid hour duration: {value!r}") from exc
    if hours < 0 or minutes < 0 or minutes >= 60:
        raise ValidationError(f"Invalid hour duration: {value!r}")
    return round_to_cents(hours + minutes / Decimal("60"))


def format_information(candidate: LineItemCandidate) -> str | None:
    """Note attached to candidates that carry overtime."""
    ot_amount = round_to_cents(candidate.ot_amount)
    if ot_amount <= 0:
        return None
    return (
        "This is an auto generated invoice. This billing section consists of "
        f"{round_to_cents(candidate.ot_hours)} OT hours with an OT bill rate of "
        f"{round_to_cents(candidate.ot_rate)} and a total OT amount of {ot_amount}. "
        "Please check before proceeding."
    )


class TimesheetConsolidator:
    """Groups hour entries into one candidate line item per rate period.

    Entries are keyed by the id of the rate period covering their date, so a
    period that recurs non-contiguously in the input still accumulates into a
    single group. Amounts are summed at full precision and rounded to cents
    once per group.
    """

    def __init__(self, date_format: str = DEFAULT_DATE_FORMAT):
        self.date_format = date_format

    def consolidate(
        self,
        entries: Iterable[HourEntryInput],
        rates: RateLookup,
        employee_id: UUID,
        placement_id: UUID,
        employee_name: str,
    ) -> list[LineItemCandidate]:
        """Build candidate line items.

        Args:
            entries: Approved hour entries of one placement
            rates: Rate lookup for the placement (see RateSchedule)
            employee_id: Employee the hours belong to
            placement_id: Placement the hours were worked on
            employee_name: Display name used in descriptions

        Returns:
            Candidates ordered by their earliest service date

        Raises:
            RateNotFoundError: If any entry date has no covering period
        """
        groups: dict[UUID, LineItemCandidate] = {}

        for entry in entries:
            rate = rates.resolve(entry.work_date)
            group = groups.get(rate.rate_period_id)
            if group is None:
                group = LineItemCandidate(
                    employee_id=employee_id,
                    placement_id=placement_id,
                    rate_period_id=rate.rate_period_id,
                    rate=rate.regular_rate,
                    ot_rate=rate.ot_rate,
                )
                groups[rate.rate_period_id] = group

            group.regular_hours += entry.regular_hours
            group.ot_hours += entry.ot_hours
            group.regular_amount += entry.regular_hours * rate.regular_rate
            group.ot_amount += entry.ot_hours * rate.ot_rate
            group.timesheet_hour_ids.append(entry.hour_entry_id)

            if group.service_from is None or entry.work_date < group.service_from:
                group.service_from = entry.work_date
            if group.service_to is None or entry.work_date > group.service_to:
                group.service_to = entry.work_date

        candidates = sorted(
            groups.values(),
            key=lambda c: (c.service_from, str(c.rate_period_id)),
        )
        for candidate in candidates:
            candidate.rate = round_to_cents(candidate.rate)
            candidate.ot_rate = round_to_cents(candidate.ot_rate)
            candidate.description = self.describe(candidate, employee_name)
            candidate.information = format_information(candidate)

        logger.debug(
            "Consolidated %d hour entries into %d line items for placement %s",
            sum(len(c.timesheet_hour_ids) for c in candidates),
            len(candidates),
            placement_id,
        )
        return candidates

    def describe(self, candidate: LineItemCandidate, employee_name: str) -> str:
        start = candidate.service_from.strftime(self.date_format) if candidate.service_from else ""
        end = candidate.service_to.strftime(self.date_format) if candidate.service_to else ""
        return f"Timesheet between {start} and {end} for {employee_name}"
