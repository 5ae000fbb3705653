from decimal import Decimal
from types import SimpleNamespace

import pytest

from app.services.billing_calc import compute_item, recompute_invoice_totals
from app.services.billing_errors import InvalidItemInput
from app.services.billing_math import D, money, percent_of


def _item(qty, price, tax_rate, voided=False):
    amt = compute_item(qty, price, tax_rate)
    return SimpleNamespace(quantity=amt.quantity,
                           unit_price=amt.unit_price,
                           tax_amount=amt.tax_amount,
                           line_total=amt.line_total,
                           is_voided=voided)


def test_money_rounds_half_up():
    assert money("0.005") == Decimal("0.01")
    assert money("2.675") == Decimal("2.68")
    assert money("-0.005") == Decimal("-0.01")
    assert money(None) == Decimal("0.00")


def test_d_avoids_float_binary_and_rejects_bool():
    assert D(0.1) == Decimal("0.1")
    with pytest.raises(TypeError):
        D(True)
    with pytest.raises(ValueError):
        D("ten")


def test_percent_of():
    assert percent_of(200, 18) == Decimal("36.00")
    assert percent_of("10.05", 5) == Decimal("0.50")


def test_compute_item_basic():
    amt = compute_item(2, 100, 18)
    assert amt.quantity == 2
    assert amt.unit_price == Decimal("100.00")
    assert amt.tax_amount == Decimal("36.00")
    assert amt.line_total == Decimal("236.00")


@pytest.mark.parametrize("qty,price,rate,tax,total", [
    (1, "0.10", 5, "0.01", "0.11"),
    (3, "33.33", "12.5", "12.50", "112.49"),
    (1, "0", 18, "0.00", "0.00"),
])
def test_compute_item_tax_rounding(qty, price, rate, tax, total):
    amt = compute_item(qty, price, rate)
    assert amt.tax_amount == Decimal(tax)
    assert amt.line_total == Decimal(total)
    # line_total == qty*price + round(qty*price*rate/100)
    assert amt.line_total == money(qty * Decimal(price)) + money(
        qty * Decimal(price) * Decimal(str(rate)) / 100)


@pytest.mark.parametrize("qty", [0, -1, "1.5", Decimal("2.25"), "x", True])
def test_compute_item_rejects_bad_quantity(qty):
    with pytest.raises(InvalidItemInput):
        compute_item(qty, 10, 0)


def test_compute_item_accepts_integral_decimal_quantity():
    assert compute_item(Decimal("3.00"), 10, 0).quantity == 3


def test_compute_item_rejects_negative_price_and_tax():
    with pytest.raises(InvalidItemInput):
        compute_item(1, -1, 0)
    with pytest.raises(InvalidItemInput):
        compute_item(1, 10, -5)
    with pytest.raises(InvalidItemInput):
        compute_item(1, "abc", 0)


def test_totals_skip_voided_items():
    items = [_item(2, 100, 18), _item(1, 50, 0, voided=True)]
    t = recompute_invoice_totals(items, [], [])
    assert t.gross_total == Decimal("200.00")
    assert t.tax_total == Decimal("36.00")
    assert t.net_total == Decimal("236.00")
    assert t.balance_due == Decimal("236.00")


def test_totals_balance_subtracts_payments_and_advances():
    items = [_item(1, 500, 0)]
    payments = [SimpleNamespace(amount=Decimal("100"))]
    adjs = [SimpleNamespace(amount_applied=Decimal("150.50"))]
    t = recompute_invoice_totals(items, payments, adjs)
    assert t.net_total == t.gross_total + t.tax_total
    assert t.amount_paid == Decimal("100.00")
    assert t.advance_adjusted == Decimal("150.50")
    assert t.balance_due == Decimal("249.50")


def test_totals_overpayment_is_not_clamped():
    t = recompute_invoice_totals([_item(1, 100, 0)],
                                 [SimpleNamespace(amount=Decimal("120"))], [])
    assert t.balance_due == Decimal("-20.00")


def test_totals_empty_invoice():
    t = recompute_invoice_totals([], [], [])
    assert t.net_total == Decimal("0.00")
    assert t.balance_due == Decimal("0.00")
