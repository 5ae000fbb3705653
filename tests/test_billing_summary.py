from datetime import date, datetime
from decimal import Decimal

import pytest

from app.services import (
    billing_advance,
    billing_invoice,
    billing_payment_service,
    billing_summary,
)
from tests.conftest import new_advance, new_invoice

AS_OF = date(2026, 10, 18)


def _bill(db, amount, created, billing_type="general", patient_id=1):
    inv = new_invoice(db, patient_id=patient_id, billing_type=billing_type)
    billing_invoice.add_manual_item(db, inv.id, description="Charges",
                                    quantity=1, unit_price=Decimal(amount),
                                    tax_rate=0)
    inv.created_at = created
    db.commit()
    return inv


@pytest.fixture
def history(db):
    recent = _bill(db, "1000", datetime(2026, 10, 10), "op_billing")
    billing_payment_service.add_payment(db, recent.id, amount="400",
                                        mode="cash")
    old = _bill(db, "500", datetime(2026, 8, 1), "lab")
    new_advance(db, 100, received_at=datetime(2026, 8, 1))
    billing_advance.apply_advance(db, old.id)
    settled = _bill(db, "300", datetime(2026, 5, 1), "op_billing")
    billing_payment_service.add_payment(db, settled.id, amount="300",
                                        mode="upi")
    cancelled = _bill(db, "200", datetime(2026, 10, 1))
    billing_invoice.cancel_invoice(db, cancelled.id, reason="duplicate")
    _bill(db, "999", datetime(2026, 10, 1), patient_id=2)
    db.commit()
    return recent, old, settled, cancelled


@pytest.mark.parametrize("days,bucket", [
    (0, "bucket_0_30"),
    (30, "bucket_0_30"),
    (31, "bucket_31_60"),
    (90, "bucket_61_90"),
    (91, "bucket_90_plus"),
])
def test_aging_bucket_edges(days, bucket):
    assert billing_summary.aging_bucket(days) == bucket


def test_summary_totals_leave_out_cancelled(db, history):
    recent, old, settled, cancelled = history
    s = billing_summary.get_patient_billing_summary(db, 1, as_of=AS_OF)

    assert [i.id for i in s["invoices"]] == [
        settled.id, old.id, cancelled.id, recent.id
    ]
    assert s["totals"] == {
        "invoice_count": 3,
        "net_total": Decimal("1800.00"),
        "amount_paid": Decimal("700.00"),
        "advance_adjusted": Decimal("100.00"),
        "balance_due": Decimal("1000.00"),
    }
    assert s["by_billing_type"]["op_billing"]["count"] == 2
    assert s["by_billing_type"]["op_billing"]["balance_due"] == \
        Decimal("600.00")
    assert s["by_billing_type"]["lab"]["net_total"] == Decimal("500.00")
    assert "general" not in s["by_billing_type"]
    assert s["payment_modes"] == {
        "cash": Decimal("400.00"),
        "upi": Decimal("300.00"),
    }
    assert s["advance"]["used_advance"] == Decimal("100.00")
    assert s["advance"]["available_advance"] == Decimal("0.00")


def test_summary_ages_open_balances(db, history):
    s = billing_summary.get_patient_billing_summary(db, 1, as_of=AS_OF)
    aging = s["ar_aging"]
    assert aging["bucket_0_30"] == {"count": 1, "amount": Decimal("600.00")}
    assert aging["bucket_61_90"] == {"count": 1, "amount": Decimal("400.00")}
    assert aging["bucket_31_60"]["count"] == 0
    assert aging["bucket_90_plus"] == {"count": 0, "amount": Decimal("0.00")}


def test_summary_for_patient_without_invoices(db):
    s = billing_summary.get_patient_billing_summary(db, 42)
    assert s["invoices"] == []
    assert s["totals"]["invoice_count"] == 0
    assert s["payment_modes"] == {}
