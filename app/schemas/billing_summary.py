from __future__ import annotations

from decimal import Decimal
from typing import Dict, List

from pydantic import BaseModel

from app.schemas.billing import InvoiceListOut
from app.schemas.billing_advances import PatientAdvanceSummary


class BillingTotalsOut(BaseModel):
    invoice_count: int
    net_total: Decimal
    amount_paid: Decimal
    advance_adjusted: Decimal
    balance_due: Decimal


class BillingTypeTotalsOut(BaseModel):
    count: int
    net_total: Decimal
    amount_paid: Decimal
    balance_due: Decimal


class AgingBucketOut(BaseModel):
    count: int
    amount: Decimal


class PatientBillingSummaryOut(BaseModel):
    patient_id: int
    invoices: List[InvoiceListOut] = []
    totals: BillingTotalsOut
    by_billing_type: Dict[str, BillingTypeTotalsOut] = {}
    # bucket_0_30 | bucket_31_60 | bucket_61_90 | bucket_90_plus
    ar_aging: Dict[str, AgingBucketOut]
    payment_modes: Dict[str, Decimal] = {}
    advance: PatientAdvanceSummary
