"""Ledger header total recalculation."""

from __future__ import annotations

from decimal import Decimal
from typing import Iterable

from ledger_engine.calculators.rate_resolver import HUNDRED
from ledger_engine.calculators.types import DiscountType, LedgerTotals, round_to_cents
from ledger_engine.exceptions import ValidationError

ZERO = Decimal("0")


class AmountRecalculator:
    """Recomputes ledger totals from the full set of live line amounts.

    Totals are always derived by re-summing, never by applying deltas, so
    repeated edits cannot drift:

        sub_total = sum(line amounts)
        amount    = sub_total + adjustment - discount
    """

    @staticmethod
    def header_discount(
        sub_total: Decimal,
        discount_type: str | None,
        discount_value: Decimal | None,
        discount_amount: Decimal | None = None,
    ) -> Decimal:
        """Derive the header discount amount.

        A typed discount is recomputed from the subtotal; otherwise the
        explicit ``discount_amount`` is used as given.
        """
        if discount_type is None:
            return round_to_cents(Decimal(discount_amount or 0))
        value = Decimal(discount_value or 0)
        if discount_type == DiscountType.PERCENT.value:
            return round_to_cents(sub_total * value / HUNDRED)
        if discount_type == DiscountType.FIXED.value:
            return round_to_cents(value)
        raise ValidationError(
            f"Unknown discount type: {discount_type}",
            errors=[{"field": "discount_type", "value": discount_type}],
        )

    @classmethod
    def compute_totals(
        cls,
        line_amounts: Iterable[Decimal],
        discount_type: str | None = None,
        discount_value: Decimal | None = None,
        discount_amount: Decimal | None = None,
        adjustment_amount: Decimal | None = None,
    ) -> LedgerTotals:
        """Compute header totals from live line amounts."""
        sub_total = round_to_cents(sum((Decimal(a) for a in line_amounts), ZERO))
        discount = cls.header_discount(sub_total, discount_type, discount_value, discount_amount)
        adjustment = round_to_cents(Decimal(adjustment_amount or 0))
        return LedgerTotals(
            sub_total_amount=sub_total,
            discount_amount=discount,
            adjustment_amount=adjustment,
            amount=sub_total + adjustment - discount,
        )

    @staticmethod
    def carry_balance(
        new_amount: Decimal,
        previous_amount: Decimal | None,
        previous_balance: Decimal | None,
    ) -> Decimal:
        """Balance after recomputation, keeping whatever was already paid.

        On creation (no previous amount) the balance equals the amount.
        """
        if previous_amount is None or previous_balance is None:
            return new_amount
        paid = Decimal(previous_amount) - Decimal(previous_balance)
        return round_to_cents(new_amount - paid)
