from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional, List
from pydantic import BaseModel, ConfigDict, Field

from app.schemas.billing import InvoiceOut


class AdvanceAdjustmentMiniOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    invoice_id: int
    amount_applied: Decimal
    applied_at: Optional[datetime] = None

    # invoice mini fields
    invoice_number: Optional[str] = None
    invoice_uid: Optional[str] = None
    billing_type: Optional[str] = None
    status: Optional[str] = None
    net_total: Optional[Decimal] = None
    balance_due: Optional[Decimal] = None


# ---------- CREATE / VOID ADVANCE ----------
class AdvanceCreate(BaseModel):
    patient_id: int
    amount: Decimal = Field(..., gt=0)
    mode: str = "cash"
    reference_no: Optional[str] = None
    remarks: Optional[str] = None
    received_at: Optional[datetime] = None

    # Optional context
    context_type: Optional[str] = None
    context_id: Optional[int] = None


class VoidAdvanceIn(BaseModel):
    reason: Optional[str] = None


# ---------- ADVANCE OUT ----------
class AdvanceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    patient_id: int
    amount: Decimal
    balance_remaining: Decimal
    mode: str
    reference_no: Optional[str] = None
    remarks: Optional[str] = None
    context_type: Optional[str] = None
    context_id: Optional[int] = None
    received_at: datetime
    is_voided: bool
    void_reason: Optional[str] = None

    used_invoices: List[AdvanceAdjustmentMiniOut] = []


# ---------- APPLY ADVANCE ----------
class ApplyAdvanceIn(BaseModel):
    # omitted -> apply up to the invoice balance due
    amount: Optional[Decimal] = Field(None, gt=0)
    # omitted -> every usable deposit of the patient
    advance_ids: Optional[List[int]] = None


class ApplyAdvanceOut(BaseModel):
    requested: Decimal
    applied: Decimal
    invoice: InvoiceOut


# ---------- PATIENT ADVANCE SUMMARY ----------
class PatientAdvanceSummary(BaseModel):
    patient_id: int
    total_advance: Decimal
    used_advance: Decimal
    available_advance: Decimal


class InvoiceAdvanceAdjustmentOut(BaseModel):
    id: int
    advance_id: int
    invoice_id: int
    amount_applied: Decimal
    applied_at: Optional[datetime] = None
    applied_by: Optional[int] = None

    # deposit mini fields
    advance_amount: Decimal
    advance_balance_remaining: Decimal
    advance_mode: str
    advance_received_at: datetime
