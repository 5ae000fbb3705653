# FILE: app/services/billing_payment_service.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from sqlalchemy.orm import Session

from app.models.billing import Invoice, Payment, PayMode
from app.services.billing_audit import log_billing_event
from app.services.billing_calc import apply_totals
from app.services.billing_errors import InvalidAmount, PaymentNotFound
from app.services.billing_guards import lock_invoice, require_money_open
from app.services.billing_math import money


def normalize_pay_mode(mode: Any) -> str:
    s = (mode.value if isinstance(mode, PayMode) else str(mode or "")).strip()
    try:
        return PayMode(s.lower()).value
    except ValueError:
        raise InvalidAmount(f"Unknown payment mode: {mode!r}")


def _new_payment(inv: Invoice, p: Dict[str, Any],
                 user_id: Optional[int]) -> Payment:
    try:
        amt = money(p.get("amount"))
    except (TypeError, ValueError):
        raise InvalidAmount("Payment amount must be a number")
    if amt <= 0:
        raise InvalidAmount("Payment amount must be > 0")

    pay = Payment(
        amount=amt,
        mode=normalize_pay_mode(p.get("mode")),
        reference_no=p.get("reference_no"),
        notes=p.get("notes"),
        paid_at=p.get("paid_at") or datetime.utcnow(),
        created_by=user_id,
    )
    inv.payments.append(pay)
    return pay


def add_payments(db: Session,
                 invoice_id: int,
                 payments: Iterable[Dict[str, Any]],
                 *,
                 user_id: Optional[int] = None) -> Invoice:
    """
    Split payment: every row is validated before anything is written,
    so a bad row rejects the whole batch.
    """
    rows = list(payments)
    if not rows:
        raise InvalidAmount("No payments provided")

    inv = lock_invoice(db, invoice_id)
    require_money_open(inv, "add payments")

    added = [_new_payment(inv, p, user_id) for p in rows]
    apply_totals(inv)
    inv.updated_by = user_id
    db.flush()

    for pay in added:
        log_billing_event(db,
                          action="payment_added",
                          entity_type="payment",
                          entity_id=pay.id,
                          user_id=user_id,
                          invoice_id=inv.id,
                          patient_id=inv.patient_id,
                          details={
                              "amount": pay.amount,
                              "mode": pay.mode,
                              "reference_no": pay.reference_no
                          })
    return inv


def add_payment(db: Session,
                invoice_id: int,
                *,
                amount,
                mode,
                reference_no: Optional[str] = None,
                notes: Optional[str] = None,
                user_id: Optional[int] = None) -> Invoice:
    return add_payments(db,
                        invoice_id, [{
                            "amount": amount,
                            "mode": mode,
                            "reference_no": reference_no,
                            "notes": notes,
                        }],
                        user_id=user_id)


def delete_payment(db: Session,
                   invoice_id: int,
                   payment_id: int,
                   *,
                   user_id: Optional[int] = None) -> Invoice:
    inv = lock_invoice(db, invoice_id)

    pay = next((p for p in inv.payments if p.id == payment_id), None)
    if pay is None:
        raise PaymentNotFound(
            f"Payment {payment_id} not found on invoice {invoice_id}")

    require_money_open(inv, "delete payments")

    # reversal trail survives the row
    log_billing_event(db,
                      action="payment_deleted",
                      entity_type="payment",
                      entity_id=pay.id,
                      user_id=user_id,
                      invoice_id=inv.id,
                      patient_id=inv.patient_id,
                      details={
                          "amount": pay.amount,
                          "mode": pay.mode,
                          "reference_no": pay.reference_no,
                          "paid_at": pay.paid_at,
                      })

    inv.payments.remove(pay)  # delete-orphan
    apply_totals(inv)
    inv.updated_by = user_id
    db.flush()
    return inv
