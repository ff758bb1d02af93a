"""Money helpers: amounts are major-unit Decimals until they reach Stripe."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Union

Amount = Union[Decimal, float, int, str, None]

CENT = Decimal("0.01")


def to_decimal(value: Amount) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize_amount(value: Amount) -> Decimal:
    """Round to cents, half-up."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def round_whole(value: Amount) -> Decimal:
    """Round to a whole major unit, half-up (platform fees are whole dollars)."""
    return to_decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP)


def to_cents(value: Amount) -> int:
    """Convert a major-unit amount to Stripe's integer minor units."""
    return int((to_decimal(value) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(value: int | None) -> Decimal:
    if value is None:
        return Decimal("0")
    return quantize_amount(Decimal(value) / 100)
