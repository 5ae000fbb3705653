# FILE: app/services/billing_errors.py
"""
Typed ledger errors.

Every error carries a machine-readable ``code`` and the HTTP status the API
layer should answer with. Raising any of them means nothing from the current
operation may be committed; routes roll back the session.
"""
from __future__ import annotations

from typing import Any, Optional


class BillingError(RuntimeError):
    code = "billing_error"
    status_code = 400

    def __init__(self, message: str, *, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details


# ---------- items ----------
class InvalidItemInput(BillingError):
    code = "invalid_item_input"
    status_code = 422


class PriceNotFound(InvalidItemInput):
    code = "price_not_found"


class AlreadyVoided(BillingError):
    code = "already_voided"
    status_code = 409


class ServiceAlreadyBilled(BillingError):
    code = "service_already_billed"
    status_code = 409

    def __init__(self, service_type: str, service_ref_id: str):
        super().__init__(
            f"{service_type} #{service_ref_id} is already billed",
            details={
                "service_type": service_type,
                "service_ref_id": service_ref_id,
            },
        )
        self.service_type = service_type
        self.service_ref_id = service_ref_id


# ---------- invoice state ----------
class InvoiceLocked(BillingError):
    code = "invoice_locked"
    status_code = 409

    def __init__(self, status: str, action: str = "edit"):
        super().__init__(f"Invoice is {status}; cannot {action}",
                         details={"status": status})
        self.status = status


class EmptyInvoice(BillingError):
    code = "empty_invoice"
    status_code = 409


# ---------- money ----------
class InvalidAmount(BillingError):
    code = "invalid_amount"
    status_code = 422


class NothingToApply(BillingError):
    code = "nothing_to_apply"
    status_code = 409


class InsufficientAdvanceBalance(BillingError):
    code = "insufficient_advance_balance"
    status_code = 409


class AdvanceInUse(BillingError):
    code = "advance_in_use"
    status_code = 409


# ---------- lookups ----------
class InvoiceNotFound(BillingError):
    code = "invoice_not_found"
    status_code = 404


class ItemNotFound(BillingError):
    code = "item_not_found"
    status_code = 404


class PaymentNotFound(BillingError):
    code = "payment_not_found"
    status_code = 404


class AdvanceNotFound(BillingError):
    code = "advance_not_found"
    status_code = 404


class AdjustmentNotFound(BillingError):
    code = "adjustment_not_found"
    status_code = 404


# ---------- external charge sources ----------
class ChargeSourceError(BillingError):
    """Bed-stay / OT costing source unreachable or data not billable."""
    code = "charge_source_error"
    status_code = 409


class ChargeSourceUnavailable(ChargeSourceError):
    code = "charge_source_unavailable"
    status_code = 502
