"""Exact decimal money helpers.

Every amount in the application is a :class:`~decimal.Decimal`. Intermediate
results keep full precision; values are truncated to their final scale only
when stored or displayed, always with ROUND_HALF_UP.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

MONEY_SCALE = 2
RATE_SCALE = 6

MONEY_QUANTUM = Decimal("0.01")
RATE_QUANTUM = Decimal("0.000001")

ZERO = Decimal("0")
ARS_RATE = Decimal("1.000000")

DecimalLike = Union[Decimal, int, str, float]


class InvalidAmount(ValueError):
    pass


def to_decimal(value: DecimalLike) -> Decimal:
    if isinstance(value, bool):
        raise InvalidAmount(f"Invalid decimal amount: {value!r}")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            # Floats go through their shortest repr so 0.1 stays 0.1.
            result = Decimal(str(value).strip())
        except InvalidOperation as exc:
            raise InvalidAmount(f"Invalid decimal amount: {value!r}") from exc
    if not result.is_finite():
        raise InvalidAmount(f"Invalid decimal amount: {value!r}")
    return result


def quantize(value: DecimalLike, scale: int) -> Decimal:
    return to_decimal(value).quantize(Decimal(1).scaleb(-scale), rounding=ROUND_HALF_UP)


def round_money(value: DecimalLike) -> Decimal:
    return _unsigned_zero(
        to_decimal(value).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)
    )


def round_rate(value: DecimalLike) -> Decimal:
    return _unsigned_zero(
        to_decimal(value).quantize(RATE_QUANTUM, rounding=ROUND_HALF_UP)
    )


def _unsigned_zero(value: Decimal) -> Decimal:
    # -0.004 rounds to -0.00
    return abs(value) if value.is_zero() else value


def format_money(value: DecimalLike) -> str:
    return f"{round_money(value):f}"


def format_rate(value: DecimalLike) -> str:
    return f"{round_rate(value):f}"


def to_ars(amount_original: DecimalLike, fx_rate: DecimalLike) -> Decimal:
    """Convert an original-currency amount to ARS, rounded to cents."""
    return round_money(to_decimal(amount_original) * to_decimal(fx_rate))


def to_scaled_int(value: DecimalLike, scale: int) -> int:
    return int(quantize(value, scale).scaleb(scale))


def from_scaled_int(units: int, scale: int) -> Decimal:
    return Decimal(units).scaleb(-scale)
