# FILE: app/services/billing_guards.py
"""
Row loading, locking and status guards shared by the invoice, payment and
advance services.

Lock order for the whole ledger: the invoice row first, then advance rows in
ascending id. Every service that touches both follows it, so two requests
contending for the same deposits can never deadlock.
"""
from __future__ import annotations

from typing import Iterable, List

from sqlalchemy.orm import Session, selectinload

from app.core.config import settings
from app.models.billing import Advance, Invoice, InvoiceStatus
from app.services.billing_errors import (
    AdvanceNotFound,
    InvoiceLocked,
    InvoiceNotFound,
)

_INVOICE_LOADS = (
    selectinload(Invoice.items),
    selectinload(Invoice.payments),
    selectinload(Invoice.advance_adjustments),
)


def get_invoice(db: Session, invoice_id: int) -> Invoice:
    inv = (db.query(Invoice).options(*_INVOICE_LOADS).filter(
        Invoice.id == invoice_id).first())
    if not inv:
        raise InvoiceNotFound(f"Invoice {invoice_id} not found")
    return inv


def lock_invoice(db: Session, invoice_id: int) -> Invoice:
    """SELECT ... FOR UPDATE on the invoice row, with children reloaded."""
    inv = (db.query(Invoice).options(*_INVOICE_LOADS).filter(
        Invoice.id == invoice_id).with_for_update().populate_existing().first())
    if not inv:
        raise InvoiceNotFound(f"Invoice {invoice_id} not found")
    return inv


def lock_advances(db: Session, advance_ids: Iterable[int]) -> List[Advance]:
    """Lock advance rows in ascending id order."""
    ids = sorted({int(i) for i in advance_ids})
    if not ids:
        return []
    return (db.query(Advance).filter(Advance.id.in_(ids)).order_by(
        Advance.id.asc()).with_for_update().populate_existing().all())


def lock_advance(db: Session, advance_id: int) -> Advance:
    rows = lock_advances(db, [advance_id])
    if not rows:
        raise AdvanceNotFound(f"Advance {advance_id} not found")
    return rows[0]


def require_draft(inv: Invoice, action: str = "edit") -> None:
    if inv.status != InvoiceStatus.DRAFT.value:
        raise InvoiceLocked(inv.status, action)


def require_money_open(inv: Invoice, action: str) -> None:
    """
    Payments and advance adjustments: draft only, unless
    BILLING_ALLOW_PAYMENTS_ON_FINALIZED also opens finalized invoices.
    """
    allowed = {InvoiceStatus.DRAFT.value}
    if settings.BILLING_ALLOW_PAYMENTS_ON_FINALIZED:
        allowed.add(InvoiceStatus.FINALIZED.value)
    if inv.status not in allowed:
        raise InvoiceLocked(inv.status, action)
