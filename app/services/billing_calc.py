# app/services/billing_calc.py
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from app.models.billing import Invoice
from app.services.billing_errors import InvalidItemInput
from app.services.billing_math import D, ZERO, money, percent_of


@dataclass(frozen=True)
class ItemAmounts:
    quantity: int
    unit_price: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    line_total: Decimal


@dataclass(frozen=True)
class Totals:
    gross_total: Decimal
    tax_total: Decimal
    net_total: Decimal
    amount_paid: Decimal
    advance_adjusted: Decimal
    balance_due: Decimal


def _quantity(qty) -> int:
    if isinstance(qty, bool):
        raise InvalidItemInput("Quantity must be a positive integer")
    try:
        q = D(qty)
    except (TypeError, ValueError):
        raise InvalidItemInput("Quantity must be a positive integer")
    if q <= 0 or q != q.to_integral_value():
        raise InvalidItemInput("Quantity must be a positive integer")
    return int(q)


def compute_item(quantity, unit_price, tax_rate) -> ItemAmounts:
    """
    Pure line math:
      base       = qty * unit_price
      tax_amount = round_half_up(base * tax_rate / 100)
      line_total = base + tax_amount
    """
    qty = _quantity(quantity)
    try:
        price = D(unit_price)
        rate = D(tax_rate)
    except (TypeError, ValueError):
        raise InvalidItemInput("Unit price and tax rate must be numbers")

    if price < 0:
        raise InvalidItemInput("Unit price cannot be negative")
    if rate < 0:
        raise InvalidItemInput("Tax rate cannot be negative")

    price = money(price)
    base = qty * price
    tax_amount = percent_of(base, rate)

    return ItemAmounts(
        quantity=qty,
        unit_price=price,
        tax_rate=rate,
        tax_amount=tax_amount,
        line_total=money(base + tax_amount),
    )


def recompute_invoice_totals(items: Iterable, payments: Iterable,
                             adjustments: Iterable) -> Totals:
    """
    Fold over the invoice's records. Counts only items where is_voided=False.
    balance_due is NOT clamped: a negative value is a credit for the patient.
    """
    gross = ZERO
    tax = ZERO
    for it in items:
        if it.is_voided:
            continue
        gross += money(D(it.quantity) * D(it.unit_price))
        tax += money(it.tax_amount)

    paid = sum((money(p.amount) for p in payments), ZERO)
    adv = sum((money(a.amount_applied) for a in adjustments), ZERO)

    net = gross + tax
    return Totals(
        gross_total=money(gross),
        tax_total=money(tax),
        net_total=money(net),
        amount_paid=money(paid),
        advance_adjusted=money(adv),
        balance_due=money(net - paid - adv),
    )


def apply_totals(inv: Invoice) -> Totals:
    """Recompute and write the projection onto the invoice row."""
    t = recompute_invoice_totals(inv.items, inv.payments,
                                 inv.advance_adjustments)
    inv.gross_total = t.gross_total
    inv.tax_total = t.tax_total
    inv.net_total = t.net_total
    inv.amount_paid = t.amount_paid
    inv.advance_adjusted = t.advance_adjusted
    inv.balance_due = t.balance_due
    return t
