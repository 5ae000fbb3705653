from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import current_user_id, get_db, transaction
from app.api.routes_billing import serialize_invoice
from app.models.billing import Advance
from app.schemas.billing import InvoiceOut
from app.schemas.billing_advances import (
    AdvanceAdjustmentMiniOut,
    AdvanceCreate,
    AdvanceOut,
    ApplyAdvanceIn,
    ApplyAdvanceOut,
    InvoiceAdvanceAdjustmentOut,
    PatientAdvanceSummary,
    VoidAdvanceIn,
)
from app.services import billing_advance

router = APIRouter(prefix="/billing", tags=["Billing Advances"])


def _advance_out(adv: Advance, used=()) -> AdvanceOut:
    out = AdvanceOut.model_validate(adv)
    out.used_invoices = [
        AdvanceAdjustmentMiniOut(
            id=adj.id,
            invoice_id=adj.invoice_id,
            amount_applied=adj.amount_applied,
            applied_at=adj.applied_at,
            invoice_number=inv.invoice_number,
            invoice_uid=inv.invoice_uid,
            billing_type=inv.billing_type,
            status=inv.status,
            net_total=inv.net_total,
            balance_due=inv.balance_due,
        ) for adj, inv in used
    ]
    return out


# ---------- CREATE ADVANCE ----------
@router.post("/advances", response_model=AdvanceOut)
def create_advance(
        payload: AdvanceCreate,
        db: Session = Depends(get_db),
        user_id: Optional[int] = Depends(current_user_id),
):
    with transaction(db):
        adv = billing_advance.create_advance(
            db,
            patient_id=payload.patient_id,
            amount=payload.amount,
            mode=payload.mode,
            reference_no=payload.reference_no,
            remarks=payload.remarks,
            context_type=payload.context_type,
            context_id=payload.context_id,
            received_at=payload.received_at,
            user_id=user_id,
        )
    db.refresh(adv)
    return _advance_out(adv)


@router.post("/advances/{advance_id}/void", response_model=AdvanceOut)
def void_advance(
        advance_id: int,
        payload: Optional[VoidAdvanceIn] = None,
        db: Session = Depends(get_db),
        user_id: Optional[int] = Depends(current_user_id),
):
    with transaction(db):
        adv = billing_advance.void_advance(
            db,
            advance_id,
            reason=payload.reason if payload else None,
            user_id=user_id)
    db.refresh(adv)
    return _advance_out(adv)


# ---------- LIST ADVANCES ----------
@router.get("/advances", response_model=List[AdvanceOut])
def list_advances(
        patient_id: Optional[int] = Query(None),
        only_with_balance: bool = Query(False),
        limit: Optional[int] = Query(None, ge=1, le=500),
        db: Session = Depends(get_db),
):
    rows = billing_advance.list_advances(db,
                                         patient_id=patient_id,
                                         only_with_balance=only_with_balance,
                                         limit=limit)
    return [_advance_out(a) for a in rows]


# ---------- LIST ADVANCES BY PATIENT ----------
@router.get("/advances/patient/{patient_id}", response_model=List[AdvanceOut])
def list_patient_advances(patient_id: int, db: Session = Depends(get_db)):
    rows, used_map = billing_advance.list_patient_advances(db, patient_id)
    return [_advance_out(a, used_map.get(a.id, [])) for a in rows]


# ---------- PATIENT ADVANCE SUMMARY ----------
@router.get("/advances/patient/{patient_id}/summary",
            response_model=PatientAdvanceSummary)
def patient_advance_summary(patient_id: int, db: Session = Depends(get_db)):
    return billing_advance.get_patient_advance_summary(db, patient_id)


# ---------- APPLY ADVANCE ----------
@router.post("/advances/apply/{invoice_id}", response_model=ApplyAdvanceOut)
@router.post("/invoices/{invoice_id}/apply-advances",
             response_model=ApplyAdvanceOut)
def apply_advance_to_invoice(
        invoice_id: int,
        payload: Optional[ApplyAdvanceIn] = None,
        db: Session = Depends(get_db),
        user_id: Optional[int] = Depends(current_user_id),
):
    with transaction(db):
        res = billing_advance.apply_advance(
            db,
            invoice_id,
            amount=payload.amount if payload else None,
            advance_ids=payload.advance_ids if payload else None,
            user_id=user_id)
        requested, applied = res.requested, res.applied
    return ApplyAdvanceOut(requested=requested,
                           applied=applied,
                           invoice=serialize_invoice(db, invoice_id))


# ---------- INVOICE ADJUSTMENTS ----------
@router.get("/invoices/{invoice_id}/advance-adjustments",
            response_model=List[InvoiceAdvanceAdjustmentOut])
def list_invoice_advance_adjustments(invoice_id: int,
                                     db: Session = Depends(get_db)):
    return [
        InvoiceAdvanceAdjustmentOut(
            id=adj.id,
            advance_id=adv.id,
            invoice_id=adj.invoice_id,
            amount_applied=adj.amount_applied,
            applied_at=adj.applied_at,
            applied_by=adj.applied_by,
            advance_amount=adv.amount,
            advance_balance_remaining=adv.balance_remaining,
            advance_mode=adv.mode,
            advance_received_at=adv.received_at,
        ) for adj, adv in billing_advance.list_invoice_adjustments(
            db, invoice_id)
    ]


@router.delete("/invoices/{invoice_id}/advance-adjustments/{adjustment_id}",
               response_model=InvoiceOut)
def remove_invoice_advance_adjustment(
        invoice_id: int,
        adjustment_id: int,
        db: Session = Depends(get_db),
        user_id: Optional[int] = Depends(current_user_id),
):
    with transaction(db):
        billing_advance.remove_adjustment(db,
                                          invoice_id,
                                          adjustment_id,
                                          user_id=user_id)
    return serialize_invoice(db, invoice_id)
