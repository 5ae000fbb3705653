# FILE: app/services/billing_advance.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.billing import (
    Advance,
    AdvanceAdjustment,
    Invoice,
)
from app.services.billing_audit import log_billing_event
from app.services.billing_calc import apply_totals
from app.services.billing_errors import (
    AdjustmentNotFound,
    AdvanceInUse,
    AdvanceNotFound,
    AlreadyVoided,
    InsufficientAdvanceBalance,
    InvalidAmount,
    NothingToApply,
)
from app.services.billing_guards import (
    get_invoice,
    lock_advance,
    lock_advances,
    lock_invoice,
    require_money_open,
)
from app.services.billing_math import D, ZERO, money
from app.services.billing_payment_service import normalize_pay_mode

logger = logging.getLogger(__name__)


@dataclass
class AdvanceApplyResult:
    invoice: Invoice
    requested: Decimal
    applied: Decimal
    adjustments: List[AdvanceAdjustment] = field(default_factory=list)


# ---------- CREATE / VOID ----------
def create_advance(
    db: Session,
    *,
    patient_id: int,
    amount,
    mode,
    reference_no: Optional[str] = None,
    remarks: Optional[str] = None,
    context_type: Optional[str] = None,
    context_id: Optional[int] = None,
    received_at: Optional[datetime] = None,
    user_id: Optional[int] = None,
) -> Advance:
    amt = money(amount)
    if amt <= 0:
        raise InvalidAmount("Advance amount must be > 0")

    adv = Advance(
        patient_id=patient_id,
        amount=amt,
        balance_remaining=amt,
        mode=normalize_pay_mode(mode),
        reference_no=reference_no,
        remarks=remarks,
        context_type=context_type,
        context_id=context_id,
        received_at=received_at or datetime.utcnow(),
        created_by=user_id,
    )
    db.add(adv)
    db.flush()

    log_billing_event(db,
                      action="advance_created",
                      entity_type="advance",
                      entity_id=adv.id,
                      user_id=user_id,
                      patient_id=patient_id,
                      details={"amount": amt, "mode": adv.mode})
    return adv


def void_advance(db: Session,
                 advance_id: int,
                 *,
                 reason: Optional[str] = None,
                 user_id: Optional[int] = None) -> Advance:
    """Only a deposit that was never applied can be voided."""
    adv = lock_advance(db, advance_id)
    if adv.is_voided:
        raise AlreadyVoided(f"Advance {advance_id} is already voided")

    used = db.query(func.count(AdvanceAdjustment.id)).filter(
        AdvanceAdjustment.advance_id == adv.id).scalar()
    if used or money(adv.balance_remaining) != money(adv.amount):
        raise AdvanceInUse(
            "Advance is applied to invoices; remove the adjustments first")

    adv.is_voided = True
    adv.void_reason = reason
    adv.voided_by = user_id
    adv.voided_at = datetime.utcnow()
    db.flush()

    log_billing_event(db,
                      action="advance_voided",
                      entity_type="advance",
                      entity_id=adv.id,
                      user_id=user_id,
                      patient_id=adv.patient_id,
                      details={"reason": reason, "amount": adv.amount})
    return adv


# ---------- READS ----------
def list_available(db: Session,
                   patient_id: Optional[int] = None,
                   advance_ids: Optional[Iterable[int]] = None) -> List[Advance]:
    """Usable deposits (not voided, balance left), oldest first (FIFO)."""
    q = db.query(Advance).filter(
        Advance.is_voided.is_(False),
        Advance.balance_remaining > 0,
    )
    if patient_id is not None:
        q = q.filter(Advance.patient_id == patient_id)
    if advance_ids is not None:
        q = q.filter(Advance.id.in_([int(i) for i in advance_ids]))
    return q.order_by(Advance.received_at.asc(), Advance.id.asc()).all()


def list_advances(
    db: Session,
    *,
    patient_id: Optional[int] = None,
    only_with_balance: bool = False,
    limit: Optional[int] = None,
) -> List[Advance]:
    """
    Deposit register. only_with_balance gives what apply would consume,
    in the same FIFO order; otherwise every deposit, newest first.
    """
    if only_with_balance:
        rows = list_available(db, patient_id)
        return rows[:limit] if limit else rows

    q = db.query(Advance)
    if patient_id is not None:
        q = q.filter(Advance.patient_id == patient_id)
    q = q.order_by(Advance.received_at.desc(), Advance.id.desc())
    return q.limit(limit or settings.INVOICE_LIST_LIMIT).all()


def list_patient_advances(
    db: Session, patient_id: int
) -> Tuple[List[Advance], Dict[int, List[Tuple[AdvanceAdjustment, Invoice]]]]:
    """All deposits (newest first) + where each one was used."""
    rows = (db.query(Advance).filter(Advance.patient_id == patient_id).order_by(
        Advance.received_at.desc(), Advance.id.desc()).all())
    if not rows:
        return [], {}

    adjs = (db.query(AdvanceAdjustment, Invoice).join(
        Invoice, Invoice.id == AdvanceAdjustment.invoice_id).filter(
            AdvanceAdjustment.advance_id.in_([a.id for a in rows])).order_by(
                AdvanceAdjustment.applied_at.desc(),
                AdvanceAdjustment.id.desc()).all())

    used_map: Dict[int, List[Tuple[AdvanceAdjustment, Invoice]]] = {}
    for adj, inv in adjs:
        used_map.setdefault(adj.advance_id, []).append((adj, inv))
    return rows, used_map


def get_patient_advance_summary(db: Session, patient_id: int) -> dict:
    total, remaining = db.query(
        func.coalesce(func.sum(Advance.amount), 0),
        func.coalesce(func.sum(Advance.balance_remaining), 0),
    ).filter(
        Advance.patient_id == patient_id,
        Advance.is_voided.is_(False),
    ).one()

    total_d = money(total)
    remaining_d = money(remaining)
    return {
        "patient_id": patient_id,
        "total_advance": total_d,
        "used_advance": money(total_d - remaining_d),
        "available_advance": remaining_d,
    }


def list_invoice_adjustments(
        db: Session,
        invoice_id: int) -> List[Tuple[AdvanceAdjustment, Advance]]:
    inv = get_invoice(db, invoice_id)
    return (db.query(AdvanceAdjustment, Advance).join(
        Advance, Advance.id == AdvanceAdjustment.advance_id).filter(
            AdvanceAdjustment.invoice_id == inv.id).order_by(
                AdvanceAdjustment.id.asc()).all())


# ---------- APPLY ADVANCE TO INVOICE ----------
def apply_advance(
    db: Session,
    invoice_id: int,
    *,
    amount=None,
    advance_ids: Optional[Iterable[int]] = None,
    user_id: Optional[int] = None,
) -> AdvanceApplyResult:
    """
    amount given  -> manual apply: exactly that much or InsufficientAdvanceBalance
    amount absent -> auto apply: up to balance_due, whatever is available

    Deposits are consumed oldest received_at first. advance_ids restricts
    the pool to those deposits; each must belong to the invoice's patient.
    """
    inv = lock_invoice(db, invoice_id)
    require_money_open(inv, "apply advance")
    apply_totals(inv)

    manual = amount is not None
    target = money(amount) if manual else money(inv.balance_due)
    if target <= 0:
        raise NothingToApply("Nothing to apply: amount / balance due is zero")

    if advance_ids is not None:
        wanted = {int(i) for i in advance_ids}
        found = {
            r[0] for r in db.query(Advance.id).filter(
                Advance.id.in_(sorted(wanted)),
                Advance.patient_id == inv.patient_id,
            ).all()
        }
        missing = sorted(wanted - found)
        if missing:
            raise AdvanceNotFound(
                f"Advances {missing} not found for patient {inv.patient_id}",
                details={"advance_ids": missing})
        advance_ids = wanted

    candidate_ids = [
        a.id for a in list_available(db, inv.patient_id, advance_ids)
    ]
    # re-check under lock; another request may have drained a row meanwhile
    advances = [
        a for a in lock_advances(db, candidate_ids)
        if not a.is_voided and money(a.balance_remaining) > 0
    ]
    advances.sort(key=lambda a: (a.received_at, a.id))

    total_available = money(
        sum((money(a.balance_remaining) for a in advances), ZERO))
    if manual and total_available < target:
        raise InsufficientAdvanceBalance(
            f"Requested {target} but only {total_available} advance available",
            details={
                "requested": format(target, "f"),
                "available": format(total_available, "f"),
            },
        )

    remaining = target
    applied_total = ZERO
    created: List[AdvanceAdjustment] = []
    now = datetime.utcnow()

    for adv in advances:
        if remaining <= 0:
            break

        adv_rem = money(adv.balance_remaining)
        take = money(min(adv_rem, remaining))
        if take <= 0:
            continue

        adj = AdvanceAdjustment(
            advance=adv,
            amount_applied=take,
            applied_by=user_id,
            applied_at=now,
        )
        inv.advance_adjustments.append(adj)
        created.append(adj)

        adv.balance_remaining = money(adv_rem - take)
        applied_total = money(applied_total + take)
        remaining = money(remaining - take)

    apply_totals(inv)
    inv.updated_by = user_id
    db.flush()

    for adj in created:
        log_billing_event(db,
                          action="advance_applied",
                          entity_type="advance_adjustment",
                          entity_id=adj.id,
                          user_id=user_id,
                          invoice_id=inv.id,
                          patient_id=inv.patient_id,
                          details={
                              "advance_id": adj.advance_id,
                              "amount_applied": adj.amount_applied
                          })

    logger.info("Advance applied invoice=%s requested=%s applied=%s (%s)",
                inv.id, target, applied_total, "manual" if manual else "auto")
    return AdvanceApplyResult(invoice=inv,
                              requested=target,
                              applied=applied_total,
                              adjustments=created)


# ---------- REMOVE / RELEASE ----------
def release_adjustments(
    db: Session,
    inv: Invoice,
    adjustments: Iterable[AdvanceAdjustment],
    *,
    user_id: Optional[int] = None,
    action: str = "adjustment_removed",
) -> Decimal:
    """
    Give the applied money back to the deposits and drop the adjustment rows.
    Caller holds the invoice lock; the advance rows are locked here.
    """
    adjs = sorted(adjustments, key=lambda a: a.id)
    if not adjs:
        return ZERO

    advances = {a.id: a for a in lock_advances(db, [x.advance_id for x in adjs])}
    released = ZERO

    for adj in adjs:
        adv = advances[adj.advance_id]
        amt = money(adj.amount_applied)
        adv.balance_remaining = money(D(adv.balance_remaining) + amt)
        released = money(released + amt)

        log_billing_event(db,
                          action=action,
                          entity_type="advance_adjustment",
                          entity_id=adj.id,
                          user_id=user_id,
                          invoice_id=inv.id,
                          patient_id=inv.patient_id,
                          details={
                              "advance_id": adj.advance_id,
                              "amount_applied": amt
                          })
        # delete-orphan on Invoice.advance_adjustments removes the row
        inv.advance_adjustments.remove(adj)

    db.flush()
    return released


def remove_adjustment(db: Session,
                      invoice_id: int,
                      adjustment_id: int,
                      *,
                      user_id: Optional[int] = None) -> Invoice:
    inv = lock_invoice(db, invoice_id)
    require_money_open(inv, "remove advance adjustment")

    adj = next((a for a in inv.advance_adjustments if a.id == adjustment_id),
               None)
    if adj is None:
        raise AdjustmentNotFound(
            f"Adjustment {adjustment_id} not found on invoice {invoice_id}")

    release_adjustments(db, inv, [adj], user_id=user_id)
    apply_totals(inv)
    inv.updated_by = user_id
    db.flush()
    return inv
