# FILE: app/schemas/billing.py
from __future__ import annotations

from typing import Optional, Literal, List
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, field_validator
from decimal import Decimal


class InvoiceCreate(BaseModel):
    patient_id: int
    context_type: Optional[
        str] = None  # opd | ipd | ot | pharmacy | lab | radiology | general
    context_id: Optional[int] = None
    billing_type: str = "general"
    provider_id: Optional[int] = None
    consultant_id: Optional[int] = None
    remarks: Optional[str] = None


class InvoiceUpdate(BaseModel):
    # totals and status are not editable here
    model_config = ConfigDict(extra="forbid")

    billing_type: Optional[str] = None
    provider_id: Optional[int] = None
    consultant_id: Optional[int] = None
    remarks: Optional[str] = None


class CancelInvoiceIn(BaseModel):
    reason: Optional[str] = None


class ManualItemIn(BaseModel):
    description: str
    quantity: int = 1
    unit_price: Decimal
    tax_rate: Decimal = Decimal("0")


class AddServiceIn(BaseModel):
    service_type: str = Field(..., min_length=1, max_length=32)
    service_ref_id: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    quantity: int = 1
    # omitted -> looked up in the service price master
    unit_price: Optional[Decimal] = None
    tax_rate: Optional[Decimal] = None

    @field_validator("service_ref_id", mode="before")
    def ref_as_text(cls, v):
        return v if v is None else str(v)


class UpdateItemIn(BaseModel):
    quantity: Optional[int] = None
    unit_price: Optional[Decimal] = None
    tax_rate: Optional[Decimal] = None
    description: Optional[str] = None


class VoidItemIn(BaseModel):
    reason: Optional[str] = None


class AutoBedChargesIn(BaseModel):
    admission_id: int
    mode: Literal["daily", "hourly", "mixed"] = "daily"
    upto_ts: Optional[datetime] = None
    skip_if_already_billed: bool = True
    tax_rate: Optional[Decimal] = None


class AutoOtChargesIn(BaseModel):
    case_id: int


class UnbilledBulkAddIn(BaseModel):
    # omitted / null -> every unbilled order of the invoice
    uids: Optional[List[str]] = None


class PaymentIn(BaseModel):
    model_config = ConfigDict(from_attributes=True, extra="ignore")

    amount: Decimal
    mode: str
    reference_no: Optional[str] = None
    notes: Optional[str] = None


class PaymentsBulkIn(BaseModel):
    payments: List[PaymentIn]


class InvoiceItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    seq: int
    service_type: Optional[str] = None
    service_ref_id: Optional[str] = None
    description: str
    quantity: int
    unit_price: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    line_total: Decimal
    is_voided: bool
    void_reason: Optional[str] = None
    voided_at: Optional[datetime] = None


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    amount: Decimal
    mode: str
    reference_no: Optional[str] = None
    notes: Optional[str] = None
    paid_at: Optional[datetime] = None


class InvoiceAdjustmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    advance_id: int
    amount_applied: Decimal
    applied_at: Optional[datetime] = None


class InvoiceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int

    invoice_uid: str
    invoice_number: str

    patient_id: int
    context_type: Optional[str] = None
    context_id: Optional[int] = None
    billing_type: str

    provider_id: Optional[int] = None
    consultant_id: Optional[int] = None
    remarks: Optional[str] = None
    status: str

    gross_total: Decimal
    tax_total: Decimal
    net_total: Decimal

    amount_paid: Decimal
    advance_adjusted: Decimal
    balance_due: Decimal

    finalized_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    items: List[InvoiceItemOut] = []
    payments: List[PaymentOut] = []
    advance_adjustments: List[InvoiceAdjustmentOut] = []


class InvoiceListOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    invoice_number: str
    patient_id: int
    billing_type: str
    context_type: Optional[str] = None
    context_id: Optional[int] = None
    status: str
    net_total: Decimal
    amount_paid: Decimal
    advance_adjusted: Decimal
    balance_due: Decimal
    created_at: Optional[datetime] = None


class AutoChargeOut(BaseModel):
    invoice: InvoiceOut
    added_count: int
    skipped: List[str] = []


class UnbilledServiceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    uid: str
    service_type: str
    service_ref_id: str
    description: str
    quantity: int
    unit_price: Optional[Decimal] = None
    tax_rate: Decimal
    amount: Optional[Decimal] = None  # None -> no price yet
    ordered_at: Optional[datetime] = None
