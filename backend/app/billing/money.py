"""Conversions between processor minor units and local decimal amounts."""

from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")


def from_minor_units(amount: int | None) -> Decimal | None:
    """Convert an integer amount in the smallest currency unit to a Decimal."""
    if amount is None:
        return None
    return (Decimal(amount) / 100).quantize(CENT)


def to_minor_units(amount: Decimal) -> int:
    """Convert a decimal currency amount to integer minor units."""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def round_money(amount: Decimal, rounding: str = ROUND_HALF_UP) -> Decimal:
    return amount.quantize(CENT, rounding=rounding)
