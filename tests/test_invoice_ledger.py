from datetime import datetime
from decimal import Decimal

import pytest

from app.models.billing import (
    BillingAuditLog,
    BillingNumberSeries,
    InvoiceItem,
    ServicePrice,
)
from app.services import billing_invoice, billing_numbers
from app.services.billing_errors import (
    AlreadyVoided,
    EmptyInvoice,
    InvalidItemInput,
    InvoiceLocked,
    ItemNotFound,
    PriceNotFound,
    ServiceAlreadyBilled,
)
from app.services.billing_guards import get_invoice
from app.services.billing_numbers import next_invoice_number
from app.services.billing_sources import ChargeMasterPriceResolver
from tests.conftest import invoice_with_amount, new_invoice


def _assert_invariants(inv):
    assert inv.net_total == inv.gross_total + inv.tax_total
    assert inv.balance_due == (inv.net_total - inv.amount_paid -
                               inv.advance_adjusted)


# ---------- numbering ----------
def test_invoice_numbers_are_sequential_per_period(db):
    now = datetime(2026, 10, 18, 9, 0)
    assert next_invoice_number(db, now=now) == "INV-202610-000001"
    assert next_invoice_number(db, now=now) == "INV-202610-000002"
    assert next_invoice_number(db, now=datetime(2026, 11, 1)) == \
        "INV-202611-000001"


def test_invoice_number_reset_modes(db):
    assert next_invoice_number(db, prefix="OP-", reset_period="none",
                               padding=4) == "OP-0001"
    assert next_invoice_number(db,
                               prefix="IP-",
                               reset_period="year",
                               now=datetime(2026, 1, 5)) == "IP-2026-000001"


def test_period_row_created_concurrently_is_reused(db, monkeypatch):
    # another request created the period row between our lookup and insert
    db.add(BillingNumberSeries(prefix="INV-", period_key="202610",
                               next_number=8))
    db.commit()

    real_lock = billing_numbers._lock_series
    lookups = []

    def _lock(session, prefix, period_key):
        lookups.append(period_key)
        if len(lookups) == 1:
            return None
        return real_lock(session, prefix, period_key)

    monkeypatch.setattr(billing_numbers, "_lock_series", _lock)

    assert next_invoice_number(
        db, now=datetime(2026, 10, 18)) == "INV-202610-000008"
    assert lookups == ["202610", "202610"]
    db.commit()
    assert db.query(BillingNumberSeries).one().next_number == 9


# ---------- header ----------
def test_create_invoice_starts_as_empty_draft(db):
    inv = new_invoice(db, patient_id=7, billing_type="ip_billing",
                      context_type="ipd", context_id=42, user_id=3)
    assert inv.status == "draft"
    assert inv.invoice_number.startswith("INV-")
    assert inv.invoice_uid
    assert inv.net_total == Decimal("0.00")
    assert inv.created_by == 3

    audit = db.query(BillingAuditLog).filter_by(action="invoice_created").one()
    assert audit.invoice_id == inv.id
    assert audit.user_id == 3


def test_create_invoice_rejects_unknown_billing_type(db):
    with pytest.raises(InvalidItemInput):
        billing_invoice.create_invoice(db, patient_id=1, billing_type="spa")


def test_update_header_ignores_totals(db):
    inv = invoice_with_amount(db, 100)
    billing_invoice.update_header(db,
                                  inv.id, {
                                      "remarks": "corporate",
                                      "billing_type": "OP_BILLING",
                                      "net_total": 1,
                                  },
                                  user_id=2)
    db.commit()

    inv = get_invoice(db, inv.id)
    assert inv.remarks == "corporate"
    assert inv.billing_type == "op_billing"
    assert inv.net_total == Decimal("100.00")
    assert inv.updated_by == 2


def test_list_invoices_filters(db):
    a = new_invoice(db, patient_id=1, billing_type="op_billing")
    new_invoice(db, patient_id=2, billing_type="ip_billing")
    new_invoice(db, patient_id=1, billing_type="lab")

    rows = billing_invoice.list_invoices(db, patient_id=1)
    assert len(rows) == 2
    rows = billing_invoice.list_invoices(db, patient_id=1, billing_type="op_billing")
    assert [r.id for r in rows] == [a.id]
    assert len(billing_invoice.list_invoices(db, limit=1)) == 1
    assert billing_invoice.list_invoices(db, status="finalized") == []


# ---------- items ----------
def test_scenario_a_item_totals(db):
    inv = new_invoice(db)
    billing_invoice.add_manual_item(db,
                                    inv.id,
                                    description="Room service",
                                    quantity=2,
                                    unit_price=Decimal("100"),
                                    tax_rate=Decimal("18"))
    db.commit()

    inv = get_invoice(db, inv.id)
    assert inv.gross_total == Decimal("200.00")
    assert inv.tax_total == Decimal("36.00")
    assert inv.net_total == Decimal("236.00")
    assert inv.balance_due == Decimal("236.00")
    assert inv.items[0].line_total == Decimal("236.00")
    _assert_invariants(inv)


def test_manual_item_requires_description(db):
    inv = new_invoice(db)
    with pytest.raises(InvalidItemInput):
        billing_invoice.add_manual_item(db,
                                        inv.id,
                                        description="  ",
                                        quantity=1,
                                        unit_price=10)


def test_items_get_increasing_seq(db):
    inv = invoice_with_amount(db, 10)
    billing_invoice.add_manual_item(db, inv.id, description="Second",
                                    quantity=1, unit_price=5)
    db.commit()
    assert [it.seq for it in get_invoice(db, inv.id).items] == [1, 2]


def test_update_item_recomputes(db):
    inv = invoice_with_amount(db, 100)
    item_id = inv.items[0].id
    billing_invoice.update_item(db, inv.id, item_id, {
        "quantity": 3,
        "tax_rate": 5
    })
    db.commit()

    inv = get_invoice(db, inv.id)
    it = inv.items[0]
    assert it.quantity == 3
    assert it.unit_price == Decimal("100.00")
    assert it.tax_amount == Decimal("15.00")
    assert inv.net_total == Decimal("315.00")
    _assert_invariants(inv)


def test_update_missing_item(db):
    inv = invoice_with_amount(db, 100)
    with pytest.raises(ItemNotFound):
        billing_invoice.update_item(db, inv.id, 9999, {"quantity": 2})


def test_void_item_drops_it_from_totals(db):
    inv = invoice_with_amount(db, 100)
    billing_invoice.add_manual_item(db, inv.id, description="Dressing",
                                    quantity=1, unit_price=40)
    db.commit()
    first = get_invoice(db, inv.id).items[0].id

    billing_invoice.void_item(db, inv.id, first, reason="entered twice",
                              user_id=5)
    db.commit()

    inv = get_invoice(db, inv.id)
    assert inv.items[0].is_voided is True
    assert inv.items[0].void_reason == "entered twice"
    assert inv.net_total == Decimal("40.00")
    _assert_invariants(inv)


def test_void_twice_is_rejected(db):
    inv = invoice_with_amount(db, 100)
    item_id = inv.items[0].id
    billing_invoice.void_item(db, inv.id, item_id)
    db.commit()

    with pytest.raises(AlreadyVoided):
        billing_invoice.void_item(db, inv.id, item_id)
    db.rollback()
    with pytest.raises(AlreadyVoided):
        billing_invoice.update_item(db, inv.id, item_id, {"quantity": 2})


# ---------- anti double billing ----------
def test_same_service_cannot_be_billed_twice(db):
    a = new_invoice(db, patient_id=1)
    b = new_invoice(db, patient_id=1)
    billing_invoice.add_service_item(db, a.id, service_type="lab",
                                     service_ref_id=77, unit_price=250)
    db.commit()

    with pytest.raises(ServiceAlreadyBilled) as ei:
        billing_invoice.add_service_item(db, b.id, service_type="LAB",
                                         service_ref_id="77", unit_price=250)
    db.rollback()
    assert ei.value.details == {"service_type": "lab", "service_ref_id": "77"}
    assert db.query(InvoiceItem).count() == 1


def test_voided_service_can_be_billed_again(db):
    a = new_invoice(db)
    b = new_invoice(db)
    inv = billing_invoice.add_service_item(db, a.id, service_type="radiology",
                                           service_ref_id="X-9",
                                           unit_price=800)
    db.commit()
    billing_invoice.void_item(db, a.id, inv.items[0].id)
    db.commit()

    inv = billing_invoice.add_service_item(db, b.id, service_type="radiology",
                                           service_ref_id="X-9",
                                           unit_price=800)
    db.commit()
    assert get_invoice(db, b.id).net_total == Decimal("800.00")


def test_service_price_comes_from_master(db):
    db.add(
        ServicePrice(service_type="lab",
                     service_ref_id="CBC",
                     description="Complete blood count",
                     unit_price=Decimal("350"),
                     tax_rate=Decimal("5")))
    db.commit()
    inv = new_invoice(db)

    billing_invoice.add_service_item(db,
                                     inv.id,
                                     service_type="lab",
                                     service_ref_id="CBC",
                                     price_resolver=ChargeMasterPriceResolver(db))
    db.commit()

    inv = get_invoice(db, inv.id)
    it = inv.items[0]
    assert it.description == "Complete blood count"
    assert it.unit_price == Decimal("350.00")
    assert it.tax_amount == Decimal("17.50")
    assert inv.net_total == Decimal("367.50")


def test_service_without_price_or_master_entry(db):
    inv = new_invoice(db)
    with pytest.raises(PriceNotFound):
        billing_invoice.add_service_item(
            db,
            inv.id,
            service_type="lab",
            service_ref_id="UNKNOWN",
            price_resolver=ChargeMasterPriceResolver(db))


def test_inactive_master_price_is_ignored(db):
    db.add(ServicePrice(service_type="lab", service_ref_id="LFT",
                        unit_price=Decimal("500"), is_active=False))
    db.commit()
    assert ChargeMasterPriceResolver(db).resolve("lab", "LFT") is None


# ---------- lifecycle ----------
def test_finalize_empty_invoice(db):
    inv = new_invoice(db)
    with pytest.raises(EmptyInvoice):
        billing_invoice.finalize_invoice(db, inv.id)


def test_finalize_with_only_voided_items(db):
    inv = invoice_with_amount(db, 100)
    billing_invoice.void_item(db, inv.id, inv.items[0].id)
    db.commit()
    with pytest.raises(EmptyInvoice):
        billing_invoice.finalize_invoice(db, inv.id)


def test_finalized_invoice_is_locked(db):
    inv = invoice_with_amount(db, 100)
    billing_invoice.finalize_invoice(db, inv.id, user_id=1)
    db.commit()
    inv = get_invoice(db, inv.id)
    assert inv.status == "finalized"
    assert inv.finalized_at is not None
    item_id = inv.items[0].id

    with pytest.raises(InvoiceLocked):
        billing_invoice.add_manual_item(db, inv.id, description="Late",
                                        quantity=1, unit_price=1)
    with pytest.raises(InvoiceLocked):
        billing_invoice.update_item(db, inv.id, item_id, {"quantity": 2})
    with pytest.raises(InvoiceLocked):
        billing_invoice.void_item(db, inv.id, item_id)
    with pytest.raises(InvoiceLocked):
        billing_invoice.update_header(db, inv.id, {"remarks": "x"})
    with pytest.raises(InvoiceLocked):
        billing_invoice.finalize_invoice(db, inv.id)


def test_cancel_twice_is_rejected(db):
    inv = invoice_with_amount(db, 100)
    billing_invoice.cancel_invoice(db, inv.id, reason="duplicate")
    db.commit()
    assert get_invoice(db, inv.id).status == "cancelled"

    with pytest.raises(InvoiceLocked):
        billing_invoice.cancel_invoice(db, inv.id)


def test_void_leaves_audit_trail(db):
    inv = invoice_with_amount(db, 100)
    billing_invoice.void_item(db, inv.id, inv.items[0].id, reason="wrong",
                              user_id=9)
    db.commit()

    row = db.query(BillingAuditLog).filter_by(action="item_voided").one()
    assert row.user_id == 9
    assert row.details["reason"] == "wrong"
    assert row.details["line_total"] == "100.00"
