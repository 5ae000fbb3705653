# FILE: app/services/billing_summary.py
"""
Patient billing summary: every invoice of the patient plus totals, AR ageing
(0-30 / 31-60 / 61-90 / >90 days), revenue by billing_type and the payment
mode breakup.

Cancelled invoices are listed but left out of every aggregate.
"""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models.billing import Invoice, InvoiceStatus, Payment
from app.services.billing_advance import get_patient_advance_summary
from app.services.billing_math import ZERO, money

AGING_BUCKETS = (
    ("bucket_0_30", 30),
    ("bucket_31_60", 60),
    ("bucket_61_90", 90),
    ("bucket_90_plus", None),
)


def aging_bucket(days: int) -> str:
    for key, upto in AGING_BUCKETS:
        if upto is None or days <= upto:
            return key
    return AGING_BUCKETS[-1][0]


def _money_dict(*keys: str) -> Dict[str, Decimal]:
    return {k: ZERO for k in keys}


def get_patient_billing_summary(db: Session,
                                patient_id: int,
                                *,
                                as_of: Optional[date] = None) -> Dict[str, Any]:
    today = as_of or datetime.utcnow().date()

    invs: List[Invoice] = (db.query(Invoice).filter(
        Invoice.patient_id == patient_id).order_by(Invoice.created_at.asc(),
                                                   Invoice.id.asc()).all())

    totals = _money_dict("net_total", "amount_paid", "advance_adjusted",
                         "balance_due")
    totals["invoice_count"] = 0
    aging = {key: {"count": 0, "amount": ZERO} for key, _ in AGING_BUCKETS}
    by_type: Dict[str, Dict[str, Any]] = {}

    for inv in invs:
        if inv.status == InvoiceStatus.CANCELLED.value:
            continue

        net = money(inv.net_total)
        paid = money(inv.amount_paid)
        adv = money(inv.advance_adjusted)
        bal = money(inv.balance_due)

        totals["invoice_count"] += 1
        totals["net_total"] += net
        totals["amount_paid"] += paid
        totals["advance_adjusted"] += adv
        totals["balance_due"] += bal

        agg = by_type.setdefault(
            inv.billing_type or "general", {
                "count": 0,
                **_money_dict("net_total", "amount_paid", "balance_due")
            })
        agg["count"] += 1
        agg["net_total"] += net
        agg["amount_paid"] += paid
        agg["balance_due"] += bal

        if bal > 0:
            created = inv.created_at.date() if inv.created_at else today
            bucket = aging[aging_bucket((today - created).days)]
            bucket["count"] += 1
            bucket["amount"] += bal

    pay_rows = (db.query(Payment.mode, func.sum(Payment.amount)).join(
        Invoice, Invoice.id == Payment.invoice_id).filter(
            Invoice.patient_id == patient_id,
            Invoice.status != InvoiceStatus.CANCELLED.value,
        ).group_by(Payment.mode).all())

    return {
        "patient_id": patient_id,
        "invoices": invs,
        "totals": totals,
        "by_billing_type": by_type,
        "ar_aging": aging,
        "payment_modes": {mode: money(amount) for mode, amount in pay_rows},
        "advance": get_patient_advance_summary(db, patient_id),
    }
