#!/usr/bin/env python3
"""
Decimal Precision Utilities for Financial Calculations
Enforces consistent Decimal usage across all monetary operations
"""

import logging
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Dict, List, Sequence, Tuple, Union

logger = logging.getLogger(__name__)

# Set global decimal precision for financial calculations
getcontext().prec = 28


class MonetaryDecimal:
    """Enforces Decimal-only monetary operations with proper precision"""

    MONEY_PRECISION = Decimal("0.01")  # 2 decimal places, ledger currency
    SCORE_PRECISION = Decimal("0.000001")  # 6 decimal places for performance scores
    PERCENT_PRECISION = Decimal("0.01")
    MINOR_UNITS = 100
    MAX_AMOUNT = Decimal("999999999999")

    @classmethod
    def to_decimal(cls, value: Union[str, int, float, Decimal], context: str = "monetary") -> Decimal:
        """
        Strictly convert a numeric value to Decimal.

        Unlike a best-effort converter this raises ValueError on anything that is
        not a finite number, because silently turning garbage into 0 on a money
        path hides defects.
        """
        if value is None or isinstance(value, bool):
            raise ValueError(f"{context}: expected a number, got {value!r}")

        if isinstance(value, Decimal):
            decimal_value = value
        else:
            try:
                # Convert to string first to avoid float precision issues
                decimal_value = Decimal(str(value))
            except (InvalidOperation, ValueError, TypeError) as e:
                raise ValueError(f"{context}: cannot convert {value!r} to Decimal") from e

        if not decimal_value.is_finite():
            raise ValueError(f"{context}: {value!r} is not a finite number")

        if abs(decimal_value) > cls.MAX_AMOUNT:
            logger.warning(f"Unusually large value: {decimal_value} in context: {context}")

        return decimal_value

    @classmethod
    def to_money(cls, value: Union[str, int, float, Decimal], context: str = "amount") -> Decimal:
        """
        Convert to a ledger amount with exactly two decimal places.

        Amounts carrying sub-cent precision are rejected instead of rounded so
        that what the caller staked is exactly what the ledger locks.
        """
        decimal_value = cls.to_decimal(value, context)
        quantized = decimal_value.quantize(cls.MONEY_PRECISION, rounding=ROUND_HALF_UP)
        if quantized != decimal_value:
            raise ValueError(f"{context}: {value} has more than 2 decimal places")
        return quantized

    @classmethod
    def to_score(cls, value: Union[str, int, float, Decimal], context: str = "score") -> Decimal:
        """Convert a performance score; at most 6 decimal places are stored"""
        decimal_value = cls.to_decimal(value, context)
        if decimal_value != decimal_value.quantize(cls.SCORE_PRECISION, rounding=ROUND_HALF_UP):
            raise ValueError(f"{context}: {value} has more than 6 decimal places")
        return decimal_value

    @classmethod
    def to_minor_units(cls, amount: Decimal) -> int:
        """Decimal dollars -> integer cents (exact, amount must already be quantized)"""
        cents = amount * cls.MINOR_UNITS
        if cents != cents.to_integral_value():
            raise ValueError(f"Amount {amount} is not representable in minor units")
        return int(cents)

    @classmethod
    def from_minor_units(cls, minor: int) -> Decimal:
        return (Decimal(minor) / cls.MINOR_UNITS).quantize(cls.MONEY_PRECISION)

    @classmethod
    def quantize_percent(cls, value: Decimal) -> Decimal:
        return value.quantize(cls.PERCENT_PRECISION, rounding=ROUND_HALF_UP)


def split_pot(total: Decimal, winners: Sequence[str]) -> Tuple[Decimal, Dict[str, Decimal]]:
    """
    Split a pot evenly between winners.

    Each winner gets total / n rounded DOWN to the cent; the leftover cents go to
    the first winner in the given order (join order), so the payouts always sum
    to exactly ``total``.

    Returns:
        (base payout per winner, payout per winner id)
    """
    if not winners:
        raise ValueError("split_pot requires at least one winner")

    count = len(winners)
    per_winner = (total / count).quantize(MonetaryDecimal.MONEY_PRECISION, rounding=ROUND_DOWN)
    remainder = total - per_winner * count

    payouts: Dict[str, Decimal] = {}
    for index, winner_id in enumerate(winners):
        payouts[winner_id] = per_winner + remainder if index == 0 else per_winner

    if sum(payouts.values(), Decimal("0")) != total:
        # Unreachable with quantized inputs; guards against a non-quantized total
        raise ArithmeticError(f"Payout split {payouts} does not sum to {total}")

    return per_winner, payouts


def sum_amounts(amounts: List[Decimal]) -> Decimal:
    return sum(amounts, Decimal("0.00"))
