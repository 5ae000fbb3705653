# app/models/__init__.py
from .billing import (
    Advance,
    AdvanceAdjustment,
    BillingAuditLog,
    BillingNumberSeries,
    Invoice,
    InvoiceItem,
    Payment,
    ServicePrice,
)

__all__ = [
    "Advance",
    "AdvanceAdjustment",
    "BillingAuditLog",
    "BillingNumberSeries",
    "Invoice",
    "InvoiceItem",
    "Payment",
    "ServicePrice",
]
