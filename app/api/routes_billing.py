# FILE: app/api/routes_billing.py
from __future__ import annotations

from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import (
    current_user_id,
    get_bed_stay_source,
    get_db,
    get_ot_costing_source,
    get_pending_service_source,
    get_price_resolver,
    transaction,
)
from app.schemas.billing import (
    AddServiceIn,
    AutoBedChargesIn,
    AutoChargeOut,
    AutoOtChargesIn,
    CancelInvoiceIn,
    InvoiceCreate,
    InvoiceListOut,
    InvoiceOut,
    InvoiceUpdate,
    ManualItemIn,
    PaymentIn,
    PaymentsBulkIn,
    UnbilledBulkAddIn,
    UnbilledServiceOut,
    UpdateItemIn,
    VoidItemIn,
)
from app.schemas.billing_summary import PatientBillingSummaryOut
from app.services import (
    billing_auto,
    billing_invoice,
    billing_payment_service,
    billing_summary,
)
from app.services.billing_guards import get_invoice
from app.services.billing_sources import (
    BedStaySource,
    OtCostingSource,
    PendingServiceSource,
    PriceResolver,
)

router = APIRouter(prefix="/billing", tags=["Billing"])


def serialize_invoice(db: Session, invoice_id: int) -> InvoiceOut:
    # fresh load after commit: totals, children and timestamps as stored
    return InvoiceOut.model_validate(get_invoice(db, invoice_id))


# ---------------- Invoices ----------------
@router.post("/invoices", response_model=InvoiceOut)
def create_invoice(
        payload: InvoiceCreate,
        db: Session = Depends(get_db),
        user_id: Optional[int] = Depends(current_user_id),
):
    with transaction(db):
        inv = billing_invoice.create_invoice(
            db,
            patient_id=payload.patient_id,
            billing_type=payload.billing_type,
            context_type=payload.context_type,
            context_id=payload.context_id,
            remarks=payload.remarks,
            consultant_id=payload.consultant_id,
            provider_id=payload.provider_id,
            user_id=user_id,
        )
        invoice_id = inv.id
    return serialize_invoice(db, invoice_id)


@router.get("/invoices/{invoice_id}", response_model=InvoiceOut)
def get_invoice_route(invoice_id: int, db: Session = Depends(get_db)):
    return serialize_invoice(db, invoice_id)


@router.get("/invoices", response_model=List[InvoiceListOut])
def list_invoices(
        patient_id: Optional[int] = Query(None),
        billing_type: Optional[str] = Query(None),
        status: Optional[str] = Query(None),
        context_type: Optional[str] = Query(None),
        context_id: Optional[int] = Query(None),
        from_date: Optional[date] = Query(None),
        to_date: Optional[date] = Query(None),
        limit: Optional[int] = Query(None, ge=1),
        db: Session = Depends(get_db),
):
    return billing_invoice.list_invoices(
        db,
        patient_id=patient_id,
        billing_type=billing_type,
        status=status,
        context_type=context_type,
        context_id=context_id,
        from_date=from_date,
        to_date=to_date,
        limit=limit,
    )


@router.put("/invoices/{invoice_id}", response_model=InvoiceOut)
def update_invoice(
        invoice_id: int,
        payload: InvoiceUpdate,
        db: Session = Depends(get_db),
        user_id: Optional[int] = Depends(current_user_id),
):
    with transaction(db):
        billing_invoice.update_header(db,
                                      invoice_id,
                                      payload.model_dump(exclude_unset=True),
                                      user_id=user_id)
    return serialize_invoice(db, invoice_id)


@router.post("/invoices/{invoice_id}/finalize", response_model=InvoiceOut)
def finalize_invoice(
        invoice_id: int,
        db: Session = Depends(get_db),
        user_id: Optional[int] = Depends(current_user_id),
):
    with transaction(db):
        billing_invoice.finalize_invoice(db, invoice_id, user_id=user_id)
    return serialize_invoice(db, invoice_id)


@router.post("/invoices/{invoice_id}/cancel", response_model=InvoiceOut)
def cancel_invoice(
        invoice_id: int,
        payload: Optional[CancelInvoiceIn] = None,
        db: Session = Depends(get_db),
        user_id: Optional[int] = Depends(current_user_id),
):
    with transaction(db):
        billing_invoice.cancel_invoice(db,
                                       invoice_id,
                                       user_id=user_id,
                                       reason=payload.reason if payload else None)
    return serialize_invoice(db, invoice_id)


# ---------------- Items ----------------
@router.post("/invoices/{invoice_id}/items/manual", response_model=InvoiceOut)
def add_manual_item(
        invoice_id: int,
        payload: ManualItemIn,
        db: Session = Depends(get_db),
        user_id: Optional[int] = Depends(current_user_id),
):
    with transaction(db):
        billing_invoice.add_manual_item(db,
                                        invoice_id,
                                        description=payload.description,
                                        quantity=payload.quantity,
                                        unit_price=payload.unit_price,
                                        tax_rate=payload.tax_rate,
                                        user_id=user_id)
    return serialize_invoice(db, invoice_id)


@router.post("/invoices/{invoice_id}/items/service", response_model=InvoiceOut)
def add_service_item(
        invoice_id: int,
        payload: AddServiceIn,
        db: Session = Depends(get_db),
        resolver: PriceResolver = Depends(get_price_resolver),
        user_id: Optional[int] = Depends(current_user_id),
):
    with transaction(db):
        billing_invoice.add_service_item(db,
                                         invoice_id,
                                         service_type=payload.service_type,
                                         service_ref_id=payload.service_ref_id,
                                         quantity=payload.quantity,
                                         unit_price=payload.unit_price,
                                         tax_rate=payload.tax_rate,
                                         description=payload.description,
                                         price_resolver=resolver,
                                         user_id=user_id)
    return serialize_invoice(db, invoice_id)


@router.put("/invoices/{invoice_id}/items/{item_id}",
            response_model=InvoiceOut)
def update_item(
        invoice_id: int,
        item_id: int,
        payload: UpdateItemIn,
        db: Session = Depends(get_db),
        user_id: Optional[int] = Depends(current_user_id),
):
    with transaction(db):
        billing_invoice.update_item(db,
                                    invoice_id,
                                    item_id,
                                    payload.model_dump(exclude_unset=True),
                                    user_id=user_id)
    return serialize_invoice(db, invoice_id)


@router.post("/invoices/{invoice_id}/items/{item_id}/void",
             response_model=InvoiceOut)
def void_item(
        invoice_id: int,
        item_id: int,
        payload: Optional[VoidItemIn] = None,
        db: Session = Depends(get_db),
        user_id: Optional[int] = Depends(current_user_id),
):
    with transaction(db):
        billing_invoice.void_item(db,
                                  invoice_id,
                                  item_id,
                                  reason=payload.reason if payload else None,
                                  user_id=user_id)
    return serialize_invoice(db, invoice_id)


@router.post("/invoices/{invoice_id}/items/ipd-bed-auto",
             response_model=AutoChargeOut)
def auto_ipd_bed_charges(
        invoice_id: int,
        payload: AutoBedChargesIn,
        db: Session = Depends(get_db),
        source: BedStaySource = Depends(get_bed_stay_source),
        user_id: Optional[int] = Depends(current_user_id),
):
    with transaction(db):
        res = billing_auto.auto_add_ipd_bed_charges(
            db,
            invoice_id,
            admission_id=payload.admission_id,
            source=source,
            mode=payload.mode,
            skip_if_already_billed=payload.skip_if_already_billed,
            upto_ts=payload.upto_ts,
            tax_rate=payload.tax_rate,
            user_id=user_id,
        )
        added, skipped = len(res.added), list(res.skipped)
    return AutoChargeOut(invoice=serialize_invoice(db, invoice_id),
                         added_count=added,
                         skipped=skipped)


@router.post("/invoices/{invoice_id}/items/ot-auto",
             response_model=AutoChargeOut)
def auto_ot_charges(
        invoice_id: int,
        payload: AutoOtChargesIn,
        db: Session = Depends(get_db),
        source: OtCostingSource = Depends(get_ot_costing_source),
        user_id: Optional[int] = Depends(current_user_id),
):
    with transaction(db):
        res = billing_auto.auto_add_ot_charges(db,
                                               invoice_id,
                                               case_id=payload.case_id,
                                               source=source,
                                               user_id=user_id)
        added, skipped = len(res.added), list(res.skipped)
    return AutoChargeOut(invoice=serialize_invoice(db, invoice_id),
                         added_count=added,
                         skipped=skipped)


# ---------------- Unbilled orders ----------------
@router.get("/invoices/{invoice_id}/unbilled",
            response_model=List[UnbilledServiceOut])
def fetch_unbilled_services(
        invoice_id: int,
        db: Session = Depends(get_db),
        source: PendingServiceSource = Depends(get_pending_service_source),
        resolver: PriceResolver = Depends(get_price_resolver),
):
    rows = billing_auto.list_unbilled_services(db,
                                               invoice_id,
                                               source=source,
                                               price_resolver=resolver)
    return [UnbilledServiceOut.model_validate(r) for r in rows]


@router.post("/invoices/{invoice_id}/unbilled/bulk-add",
             response_model=AutoChargeOut)
def bulk_add_unbilled(
        invoice_id: int,
        payload: Optional[UnbilledBulkAddIn] = None,
        db: Session = Depends(get_db),
        source: PendingServiceSource = Depends(get_pending_service_source),
        resolver: PriceResolver = Depends(get_price_resolver),
        user_id: Optional[int] = Depends(current_user_id),
):
    with transaction(db):
        res = billing_auto.add_unbilled_services(
            db,
            invoice_id,
            source=source,
            uids=payload.uids if payload else None,
            price_resolver=resolver,
            user_id=user_id,
        )
        added, skipped = len(res.added), list(res.skipped)
    return AutoChargeOut(invoice=serialize_invoice(db, invoice_id),
                         added_count=added,
                         skipped=skipped)


# ---------------- Payments ----------------
@router.post("/invoices/{invoice_id}/payments", response_model=InvoiceOut)
def add_payment(
        invoice_id: int,
        payload: PaymentIn,
        db: Session = Depends(get_db),
        user_id: Optional[int] = Depends(current_user_id),
):
    with transaction(db):
        billing_payment_service.add_payment(db,
                                            invoice_id,
                                            amount=payload.amount,
                                            mode=payload.mode,
                                            reference_no=payload.reference_no,
                                            notes=payload.notes,
                                            user_id=user_id)
    return serialize_invoice(db, invoice_id)


@router.post("/invoices/{invoice_id}/payments/bulk", response_model=InvoiceOut)
def add_payments_bulk(
        invoice_id: int,
        payload: PaymentsBulkIn,
        db: Session = Depends(get_db),
        user_id: Optional[int] = Depends(current_user_id),
):
    with transaction(db):
        billing_payment_service.add_payments(
            db,
            invoice_id, [p.model_dump() for p in payload.payments],
            user_id=user_id)
    return serialize_invoice(db, invoice_id)


@router.delete("/invoices/{invoice_id}/payments/{payment_id}",
               response_model=InvoiceOut)
def delete_payment(
        invoice_id: int,
        payment_id: int,
        db: Session = Depends(get_db),
        user_id: Optional[int] = Depends(current_user_id),
):
    with transaction(db):
        billing_payment_service.delete_payment(db,
                                               invoice_id,
                                               payment_id,
                                               user_id=user_id)
    return serialize_invoice(db, invoice_id)


# ---------------- Patient summary ----------------
@router.get("/patients/{patient_id}/summary",
            response_model=PatientBillingSummaryOut)
def patient_billing_summary(patient_id: int, db: Session = Depends(get_db)):
    data = billing_summary.get_patient_billing_summary(db, patient_id)
    data["invoices"] = [
        InvoiceListOut.model_validate(inv) for inv in data["invoices"]
    ]
    return PatientBillingSummaryOut.model_validate(data)
