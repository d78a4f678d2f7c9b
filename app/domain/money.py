"""
Money helpers - Decimal arithmetic rounded to cents, half-up
"""
from decimal import Decimal, ROUND_HALF_UP

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_decimal(value: Decimal | int | float | str | None) -> Decimal:
    """המרה ל-Decimal דרך str — מונע 0.1 → 0.1000000000000000055"""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_money(value: Decimal | int | float | str) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def percent_of(amount: Decimal, rate: Decimal | int | float | str) -> Decimal:
    """amount × rate, rounded to cents"""
    return round_money(to_decimal(amount) * to_decimal(rate))
