"""Billing rate resolution over a placement's rate periods."""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Iterable, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_engine.calculators.types import DiscountType, EffectiveRate
from ledger_engine.exceptions import NotFoundError
from ledger_engine.models import BillingRatePeriod

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


class RateNotFoundError(NotFoundError):
    """Raised when no billing rate period covers a date."""

    def __init__(self, placement_id: UUID, as_of_date: date):
        self.placement_id = placement_id
        self.as_of_date = as_of_date
        super().__init__(
            "BillingRatePeriod",
            placement_id,
            f"No billing rate period found for placement {placement_id} on {as_of_date}",
        )


def apply_discount(
    rate: Decimal,
    discount_type: str | None,
    discount_value: Decimal | None,
) -> Decimal:
    """Apply a rate-period discount to a single rate.

    percent: ``rate * (1 - value / 100)``; fixed: ``rate - value``.
    The result is not clamped at zero.
    """
    if not discount_type or not discount_value:
        return rate
    if discount_type == DiscountType.PERCENT.value:
        return rate * (Decimal("1") - Decimal(discount_value) / HUNDRED)
    if discount_type == DiscountType.FIXED.value:
        return rate - Decimal(discount_value)
    raise ValueError(f"Unknown discount type: {discount_type}")


class RateSchedule:
    """In-memory view of one placement's billing rate periods.

    Resolution picks the period where ``effective_from <= date`` and
    ``effective_to`` is open or ``>= date``. Overlapping periods resolve to
    the latest ``effective_from`` (period id breaks exact ties).
    """

    def __init__(self, placement_id: UUID, periods: Iterable[BillingRatePeriod]):
        self.placement_id = placement_id
        self.periods: list[BillingRatePeriod] = sorted(
            periods,
            key=lambda p: (p.effective_from, str(p.billing_rate_period_id)),
            reverse=True,
        )

    def find_period(self, as_of_date: date) -> BillingRatePeriod:
        """Return the covering period (latest effective_from first)."""
        covering = [p for p in self.periods if p.is_active_on(as_of_date)]
        if not covering:
            raise RateNotFoundError(self.placement_id, as_of_date)
        if len(covering) > 1:
            logger.warning(
                "Overlapping billing rate periods for placement %s on %s; using %s",
                self.placement_id,
                as_of_date,
                covering[0].billing_rate_period_id,
            )
        return covering[0]

    def resolve(self, as_of_date: date) -> EffectiveRate:
        """Resolve the discounted (regular, OT) rate pair for a date.

        Raises:
            RateNotFoundError: If no period covers the date
        """
        period = self.find_period(as_of_date)
        regular_rate = apply_discount(
            Decimal(period.regular_rate), period.discount_type, period.discount_value
        )
        ot_rate = apply_discount(
            Decimal(period.ot_rate or 0), period.discount_type, period.discount_value
        )
        if regular_rate < 0 or ot_rate < 0:
            logger.warning(
                "Discount drives rate negative for period %s (regular=%s, ot=%s)",
                period.billing_rate_period_id,
                regular_rate,
                ot_rate,
            )
        return EffectiveRate(
            rate_period_id=period.billing_rate_period_id,
            regular_rate=regular_rate,
            ot_rate=ot_rate,
            effective_from=period.effective_from,
            effective_to=period.effective_to,
        )


class RateScheduleResolver:
    """Resolves effective billing rates for a placement on a given date."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _get_periods(self, placement_id: UUID) -> Sequence[BillingRatePeriod]:
        result = await self.session.execute(
            select(BillingRatePeriod)
            .where(BillingRatePeriod.placement_id == placement_id)
            .order_by(BillingRatePeriod.effective_from.desc())
        )
        return result.scalars().all()

    async def get_schedule(self, placement_id: UUID) -> RateSchedule:
        """Load every rate period of a placement."""
        periods = await self._get_periods(placement_id)
        return RateSchedule(placement_id, periods)

    async def resolve(self, placement_id: UUID, as_of_date: date) -> EffectiveRate:
        """Resolve the effective rate pair for a placement on a date.

        Raises:
            RateNotFoundError: If no period covers the date
        """
        schedule = await self.get_schedule(placement_id)
        return schedule.resolve(as_of_date)
