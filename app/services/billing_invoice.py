# FILE: app/services/billing_invoice.py
"""
Invoice ledger: invoice + item lifecycle.

All functions flush but never commit; the route owns the transaction and
rolls back whenever a BillingError escapes.
"""
from __future__ import annotations

import logging
import uuid
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.billing import (
    BillingType,
    Invoice,
    InvoiceItem,
    InvoiceStatus,
)
from app.services.billing_advance import release_adjustments
from app.services.billing_audit import log_billing_event
from app.services.billing_calc import apply_totals, compute_item
from app.services.billing_errors import (
    AlreadyVoided,
    EmptyInvoice,
    InvalidItemInput,
    InvoiceLocked,
    ItemNotFound,
    PriceNotFound,
    ServiceAlreadyBilled,
)
from app.services.billing_guards import lock_invoice, require_draft
from app.services.billing_numbers import next_invoice_number
from app.services.billing_sources import PriceResolver

logger = logging.getLogger(__name__)

HEADER_FIELDS = ("billing_type", "consultant_id", "provider_id", "remarks")


def _billing_type(v: Any) -> str:
    s = (v.value if isinstance(v, BillingType) else str(v or "")).strip()
    try:
        return BillingType(s.lower()).value
    except ValueError:
        raise InvalidItemInput(f"Unknown billing_type: {v!r}")


def billing_key(service_type: str, service_ref_id: str) -> str:
    return f"{service_type}:{service_ref_id}"


def _next_seq(inv: Invoice) -> int:
    return max((it.seq or 0 for it in inv.items), default=0) + 1


def _find_item(inv: Invoice, item_id: int) -> InvoiceItem:
    for it in inv.items:
        if it.id == item_id:
            return it
    raise ItemNotFound(f"Item {item_id} not found on invoice {inv.id}")


def _touch(inv: Invoice, user_id: Optional[int]) -> None:
    inv.updated_by = user_id
    inv.updated_at = datetime.utcnow()


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------
def create_invoice(
    db: Session,
    *,
    patient_id: int,
    billing_type: Any = BillingType.GENERAL,
    context_type: Optional[str] = None,
    context_id: Optional[int] = None,
    remarks: Optional[str] = None,
    consultant_id: Optional[int] = None,
    provider_id: Optional[int] = None,
    user_id: Optional[int] = None,
) -> Invoice:
    inv = Invoice(
        invoice_uid=str(uuid.uuid4()),
        invoice_number=next_invoice_number(db),
        patient_id=patient_id,
        billing_type=_billing_type(billing_type),
        context_type=context_type,
        context_id=context_id,
        remarks=remarks,
        consultant_id=consultant_id,
        provider_id=provider_id,
        status=InvoiceStatus.DRAFT.value,
        created_by=user_id,
        updated_by=user_id,
    )
    apply_totals(inv)
    db.add(inv)
    db.flush()

    log_billing_event(db,
                      action="invoice_created",
                      entity_type="invoice",
                      entity_id=inv.id,
                      user_id=user_id,
                      invoice_id=inv.id,
                      patient_id=patient_id,
                      details={"invoice_number": inv.invoice_number})
    return inv


def list_invoices(
    db: Session,
    *,
    patient_id: Optional[int] = None,
    billing_type: Optional[str] = None,
    status: Optional[str] = None,
    context_type: Optional[str] = None,
    context_id: Optional[int] = None,
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
    limit: Optional[int] = None,
) -> List[Invoice]:
    q = db.query(Invoice)

    if patient_id:
        q = q.filter(Invoice.patient_id == patient_id)
    if billing_type:
        q = q.filter(Invoice.billing_type == billing_type)
    if status:
        q = q.filter(Invoice.status == status)
    if context_type:
        q = q.filter(Invoice.context_type == context_type)
    if context_id:
        q = q.filter(Invoice.context_id == context_id)
    if from_date:
        q = q.filter(Invoice.created_at >= datetime.combine(
            from_date, datetime.min.time()))
    if to_date:
        q = q.filter(Invoice.created_at <= datetime.combine(
            to_date, datetime.max.time()))

    cap = min(int(limit or settings.INVOICE_LIST_LIMIT),
              settings.INVOICE_LIST_LIMIT)
    return q.order_by(Invoice.id.desc()).limit(cap).all()


def update_header(db: Session, invoice_id: int, changes: Dict[str, Any],
                  *, user_id: Optional[int] = None) -> Invoice:
    inv = lock_invoice(db, invoice_id)
    require_draft(inv, "edit header")

    for k, v in changes.items():
        if k not in HEADER_FIELDS:
            continue
        if k == "billing_type":
            v = _billing_type(v)
        setattr(inv, k, v)

    _touch(inv, user_id)
    db.flush()
    return inv


def finalize_invoice(db: Session, invoice_id: int,
                     *, user_id: Optional[int] = None) -> Invoice:
    inv = lock_invoice(db, invoice_id)
    require_draft(inv, "finalize")

    if not any(not it.is_voided for it in inv.items):
        raise EmptyInvoice("Invoice has no billable items")

    apply_totals(inv)
    inv.status = InvoiceStatus.FINALIZED.value
    inv.finalized_at = datetime.utcnow()
    _touch(inv, user_id)
    db.flush()

    log_billing_event(db,
                      action="invoice_finalized",
                      entity_type="invoice",
                      entity_id=inv.id,
                      user_id=user_id,
                      invoice_id=inv.id,
                      patient_id=inv.patient_id,
                      details={
                          "net_total": inv.net_total,
                          "balance_due": inv.balance_due
                      })
    logger.info("Invoice %s finalized net=%s due=%s", inv.invoice_number,
                inv.net_total, inv.balance_due)
    return inv


def cancel_invoice(db: Session,
                   invoice_id: int,
                   *,
                   user_id: Optional[int] = None,
                   reason: Optional[str] = None) -> Invoice:
    """
    draft | finalized -> cancelled.
    Every advance adjustment on the invoice is released (deposit balances
    restored) inside the same transaction.
    """
    inv = lock_invoice(db, invoice_id)
    if inv.status not in (InvoiceStatus.DRAFT.value,
                          InvoiceStatus.FINALIZED.value):
        raise InvoiceLocked(inv.status, "cancel")

    released = release_adjustments(db,
                                   inv,
                                   list(inv.advance_adjustments),
                                   user_id=user_id,
                                   action="adjustment_reversed_on_cancel")

    inv.status = InvoiceStatus.CANCELLED.value
    inv.cancelled_at = datetime.utcnow()
    apply_totals(inv)
    _touch(inv, user_id)
    db.flush()

    log_billing_event(db,
                      action="invoice_cancelled",
                      entity_type="invoice",
                      entity_id=inv.id,
                      user_id=user_id,
                      invoice_id=inv.id,
                      patient_id=inv.patient_id,
                      details={
                          "reason": reason,
                          "advance_released": released
                      })
    logger.info("Invoice %s cancelled (advance released=%s)",
                inv.invoice_number, released)
    return inv


# ---------------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------------
def _new_item(inv: Invoice, *, description: str, quantity, unit_price,
              tax_rate, service_type: Optional[str],
              service_ref_id: Optional[str],
              user_id: Optional[int]) -> InvoiceItem:
    desc = (description or "").strip()
    if not desc:
        raise InvalidItemInput("Description is required")
    amt = compute_item(quantity, unit_price, tax_rate)

    it = InvoiceItem(
        seq=_next_seq(inv),
        service_type=service_type,
        service_ref_id=service_ref_id,
        billing_key=(billing_key(service_type, service_ref_id)
                     if service_type else None),
        description=desc[:300],
        quantity=amt.quantity,
        unit_price=amt.unit_price,
        tax_rate=amt.tax_rate,
        tax_amount=amt.tax_amount,
        line_total=amt.line_total,
        is_voided=False,
        created_by=user_id,
        updated_by=user_id,
    )
    inv.items.append(it)
    return it


def add_manual_item(
    db: Session,
    invoice_id: int,
    *,
    description: str,
    quantity,
    unit_price,
    tax_rate=0,
    user_id: Optional[int] = None,
) -> Invoice:
    inv = lock_invoice(db, invoice_id)
    require_draft(inv, "add items")

    _new_item(inv,
              description=description,
              quantity=quantity,
              unit_price=unit_price,
              tax_rate=tax_rate,
              service_type=None,
              service_ref_id=None,
              user_id=user_id)
    apply_totals(inv)
    _touch(inv, user_id)
    db.flush()
    return inv


def service_already_billed(db: Session, service_type: str,
                           service_ref_id: str) -> bool:
    key = billing_key(service_type, service_ref_id)
    return db.query(InvoiceItem.id).filter(
        InvoiceItem.billing_key == key).first() is not None


def add_service_item_locked(
    db: Session,
    inv: Invoice,
    *,
    service_type: str,
    service_ref_id: Any,
    quantity=1,
    unit_price=None,
    tax_rate=None,
    description: Optional[str] = None,
    price_resolver: Optional[PriceResolver] = None,
    user_id: Optional[int] = None,
) -> InvoiceItem:
    """
    Add one service item to an invoice the caller already locked.
    Does not recompute totals (callers batch several adds, then recompute).
    """
    require_draft(inv, "add items")

    stype = (service_type or "").strip().lower()
    ref = str(service_ref_id if service_ref_id is not None else "").strip()
    if not stype or not ref:
        raise InvalidItemInput("service_type and service_ref_id are required")
    if len(stype) > 32 or len(ref) > 100:
        raise InvalidItemInput("service_type / service_ref_id too long")

    if service_already_billed(db, stype, ref):
        raise ServiceAlreadyBilled(stype, ref)

    if unit_price is None:
        resolved = price_resolver.resolve(stype, ref) if price_resolver else None
        if resolved is None:
            raise PriceNotFound(f"No price in service master for {stype} #{ref}")
        unit_price = resolved.unit_price
        if tax_rate is None:
            tax_rate = resolved.tax_rate
        description = description or resolved.description

    if tax_rate is None:
        tax_rate = settings.BILLING_DEFAULT_TAX

    it = _new_item(inv,
                   description=description or f"{stype.upper()} #{ref}",
                   quantity=quantity,
                   unit_price=unit_price,
                   tax_rate=tax_rate,
                   service_type=stype,
                   service_ref_id=ref,
                   user_id=user_id)
    try:
        db.flush()
    except IntegrityError:
        # lost a race with another transaction for the same service
        raise ServiceAlreadyBilled(stype, ref) from None
    return it


def add_service_item(
    db: Session,
    invoice_id: int,
    *,
    service_type: str,
    service_ref_id: Any,
    quantity=1,
    unit_price=None,
    tax_rate=None,
    description: Optional[str] = None,
    price_resolver: Optional[PriceResolver] = None,
    user_id: Optional[int] = None,
) -> Invoice:
    inv = lock_invoice(db, invoice_id)
    add_service_item_locked(db,
                            inv,
                            service_type=service_type,
                            service_ref_id=service_ref_id,
                            quantity=quantity,
                            unit_price=unit_price,
                            tax_rate=tax_rate,
                            description=description,
                            price_resolver=price_resolver,
                            user_id=user_id)
    apply_totals(inv)
    _touch(inv, user_id)
    db.flush()
    return inv


def update_item(db: Session,
                invoice_id: int,
                item_id: int,
                changes: Dict[str, Any],
                *,
                user_id: Optional[int] = None) -> Invoice:
    inv = lock_invoice(db, invoice_id)
    require_draft(inv, "edit items")

    it = _find_item(inv, item_id)
    if it.is_voided:
        raise AlreadyVoided(f"Item {item_id} is voided")

    qty = changes.get("quantity")
    price = changes.get("unit_price")
    rate = changes.get("tax_rate")
    amt = compute_item(
        it.quantity if qty is None else qty,
        it.unit_price if price is None else price,
        it.tax_rate if rate is None else rate,
    )
    it.quantity = amt.quantity
    it.unit_price = amt.unit_price
    it.tax_rate = amt.tax_rate
    it.tax_amount = amt.tax_amount
    it.line_total = amt.line_total

    desc = changes.get("description")
    if desc is not None:
        if not desc.strip():
            raise InvalidItemInput("Description is required")
        it.description = desc.strip()[:300]

    it.updated_by = user_id
    apply_totals(inv)
    _touch(inv, user_id)
    db.flush()
    return inv


def void_item(db: Session,
              invoice_id: int,
              item_id: int,
              *,
              reason: Optional[str] = None,
              user_id: Optional[int] = None) -> Invoice:
    inv = lock_invoice(db, invoice_id)
    require_draft(inv, "void items")

    it = _find_item(inv, item_id)
    if it.is_voided:
        raise AlreadyVoided(f"Item {item_id} is already voided")

    it.is_voided = True
    it.void_reason = reason
    it.voided_by = user_id
    it.voided_at = datetime.utcnow()
    # frees (service_type, service_ref_id) for re-billing
    it.billing_key = None

    apply_totals(inv)
    _touch(inv, user_id)
    db.flush()

    log_billing_event(db,
                      action="item_voided",
                      entity_type="invoice_item",
                      entity_id=it.id,
                      user_id=user_id,
                      invoice_id=inv.id,
                      patient_id=inv.patient_id,
                      details={
                          "reason": reason,
                          "line_total": it.line_total,
                          "service_type": it.service_type,
                          "service_ref_id": it.service_ref_id,
                      })
    return inv

