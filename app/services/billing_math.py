# app/services/billing_math.py
from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

TWOPLACES = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")


def D(x) -> Decimal:
    """Safe Decimal conversion (never Decimal from float binary)."""
    if x is None:
        return Decimal("0")
    if isinstance(x, Decimal):
        return x
    if isinstance(x, bool):
        raise TypeError("bool is not a money value")
    try:
        return Decimal(str(x))  # IMPORTANT: str() avoids float binary issues
    except InvalidOperation as exc:
        raise ValueError(f"Not a decimal value: {x!r}") from exc


def money(x) -> Decimal:
    """Money rounding to 2 decimals, half-up."""
    return D(x).quantize(TWOPLACES, rounding=ROUND_HALF_UP)


def percent_of(base, rate) -> Decimal:
    """round_half_up(base * rate / 100)"""
    return money(D(base) * D(rate) / HUNDRED)
