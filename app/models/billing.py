# FILE: app/models/billing.py
from __future__ import annotations

import enum
from datetime import datetime
from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from app.db.base import Base

MYSQL_ARGS = {
    "mysql_engine": "InnoDB",
    "mysql_charset": "utf8mb4",
    "mysql_collate": "utf8mb4_unicode_ci",
}


class BillingType(str, enum.Enum):
    OP_BILLING = "op_billing"
    IP_BILLING = "ip_billing"
    OT = "ot"
    PHARMACY = "pharmacy"
    LAB = "lab"
    RADIOLOGY = "radiology"
    GENERAL = "general"


class InvoiceStatus(str, enum.Enum):
    DRAFT = "draft"
    FINALIZED = "finalized"
    CANCELLED = "cancelled"
    # only set by the external refund / admin process
    REVERSED = "reversed"


class PayMode(str, enum.Enum):
    CASH = "cash"
    CARD = "card"
    UPI = "upi"
    CREDIT = "credit"
    CHEQUE = "cheque"
    NEFT = "neft"
    RTGS = "rtgs"
    WALLET = "wallet"
    OTHER = "other"


class Invoice(Base):
    """
    Core invoice table used for:
    - OP Billing
    - IP Billing
    - OT / Pharmacy / Laboratory / Radiology
    - General billing

    Use:
    - context_type + context_id: to link to OP visit / IP admission / order
    - billing_type: for UI filter

    Totals columns are a projection over items, payments and advance
    adjustments. Only app.services.billing_calc.apply_totals writes them.
    """

    __tablename__ = "billing_invoices"
    __table_args__ = (
        Index("ix_billing_invoices_patient_ctx", "patient_id", "context_type",
              "context_id"),
        MYSQL_ARGS,
    )

    id = Column(Integer, primary_key=True, index=True)

    invoice_uid = Column(String(36), unique=True, index=True, nullable=False)
    # INV-202610-000001 etc., never changes once assigned
    invoice_number = Column(String(32), unique=True, index=True, nullable=False)

    # patients live in another service; plain id only
    patient_id = Column(Integer, nullable=False, index=True)

    # Module context
    # opd | ipd | ot_case | pharmacy | lab | radiology | other
    context_type = Column(String(20), nullable=True)
    # Visit / admission / order id
    context_id = Column(Integer, nullable=True)

    # op_billing | ip_billing | ot | pharmacy | lab | radiology | general
    billing_type = Column(String(20), nullable=False,
                          default=BillingType.GENERAL.value)

    # Credit provider (TPA, corporate, insurance)
    provider_id = Column(Integer, nullable=True)
    # Treating consultant (normally a doctor user)
    consultant_id = Column(Integer, nullable=True)

    remarks = Column(Text, nullable=True)

    status = Column(String(16),
                    nullable=False,
                    default=InvoiceStatus.DRAFT.value,
                    index=True)

    # gross_total = sum(qty * unit_price) over non-voided items
    gross_total = Column(Numeric(12, 2), nullable=False, default=0)
    tax_total = Column(Numeric(12, 2), nullable=False, default=0)
    # gross_total + tax_total
    net_total = Column(Numeric(12, 2), nullable=False, default=0)
    amount_paid = Column(Numeric(12, 2), nullable=False, default=0)
    advance_adjusted = Column(Numeric(12, 2), nullable=False, default=0)
    # net_total - amount_paid - advance_adjusted (negative = credit)
    balance_due = Column(Numeric(12, 2), nullable=False, default=0)

    finalized_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    created_by = Column(Integer, nullable=True)
    updated_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )

    items = relationship(
        "InvoiceItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceItem.seq",
    )
    payments = relationship(
        "Payment",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="Payment.id",
    )
    advance_adjustments = relationship(
        "AdvanceAdjustment",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="AdvanceAdjustment.id",
    )


class InvoiceItem(Base):
    __tablename__ = "billing_invoice_items"
    __table_args__ = (
        # Anti double billing: billing_key is NULL for manual / voided rows,
        # so only live service items compete for the unique slot.
        UniqueConstraint("billing_key", name="uq_billing_item_billing_key"),
        Index("ix_billing_items_invoice", "invoice_id"),
        Index("ix_billing_items_service", "service_type", "service_ref_id"),
        CheckConstraint("quantity > 0", name="ck_billing_item_qty_positive"),
        CheckConstraint("unit_price >= 0", name="ck_billing_item_price"),
        CheckConstraint("tax_rate >= 0", name="ck_billing_item_tax_rate"),
        MYSQL_ARGS,
    )

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(
        Integer,
        ForeignKey("billing_invoices.id", ondelete="CASCADE"),
        nullable=False,
    )

    # S.no order for UI/print
    seq = Column(Integer, nullable=False, default=1)

    # lab | radiology | ot | pharmacy | opd | ipd_bed | ... ; NULL = manual
    service_type = Column(String(32), nullable=True)
    service_ref_id = Column(String(100), nullable=True)
    # "<service_type>:<service_ref_id>" while live, NULL otherwise
    billing_key = Column(String(140), nullable=True)

    description = Column(String(300), nullable=False)

    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Numeric(12, 2), nullable=False, default=0)

    # GST / tax in %
    tax_rate = Column(Numeric(10, 2), nullable=False, default=0)
    tax_amount = Column(Numeric(12, 2), nullable=False, default=0)

    # qty * unit_price + tax_amount
    line_total = Column(Numeric(12, 2), nullable=False, default=0)

    is_voided = Column(Boolean, nullable=False, default=False)

    # Audit for void action
    void_reason = Column(String(255), nullable=True)
    voided_by = Column(Integer, nullable=True)
    voided_at = Column(DateTime, nullable=True)

    created_by = Column(Integer, nullable=True)
    updated_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )

    invoice = relationship("Invoice", back_populates="items")


class Payment(Base):
    """
    Payments tagged to invoice.
    Supports multiple modes (split payments):
    - cash / card / upi
    - credit (credit provider)
    - cheque / neft / rtgs
    - wallet / other
    """

    __tablename__ = "billing_payments"
    __table_args__ = (
        Index("ix_billing_payments_invoice", "invoice_id"),
        CheckConstraint("amount > 0", name="ck_billing_payment_amount"),
        MYSQL_ARGS,
    )

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(
        Integer,
        ForeignKey("billing_invoices.id", ondelete="CASCADE"),
        nullable=False,
    )

    amount = Column(Numeric(12, 2), nullable=False)
    mode = Column(String(32), nullable=False)
    reference_no = Column(String(100), nullable=True)
    notes = Column(String(255), nullable=True)
    paid_at = Column(DateTime, default=datetime.utcnow)

    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    invoice = relationship("Invoice", back_populates="payments")


class Advance(Base):
    """
    Patient advance payments (especially IP advance).
    These are NOT tied to a specific invoice directly.
    Instead, they are adjusted later using AdvanceAdjustment rows.
    """

    __tablename__ = "billing_advances"
    __table_args__ = (
        Index("ix_billing_advances_patient_ctx", "patient_id", "context_type",
              "context_id"),
        CheckConstraint("amount > 0", name="ck_billing_advance_amount"),
        CheckConstraint(
            "balance_remaining >= 0 AND balance_remaining <= amount",
            name="ck_billing_advance_balance",
        ),
        MYSQL_ARGS,
    )

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, nullable=False, index=True)

    # Usually 'ipd' or 'opd', and admission / visit id
    context_type = Column(String(20), nullable=True)
    context_id = Column(Integer, nullable=True)

    amount = Column(Numeric(12, 2), nullable=False)
    # amount - sum(adjustments.amount_applied)
    balance_remaining = Column(Numeric(12, 2), nullable=False)

    mode = Column(String(32), nullable=False)
    reference_no = Column(String(100), nullable=True)
    remarks = Column(String(255), nullable=True)

    received_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    is_voided = Column(Boolean, default=False, nullable=False)
    void_reason = Column(String(255), nullable=True)
    voided_by = Column(Integer, nullable=True)
    voided_at = Column(DateTime, nullable=True)

    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    adjustments = relationship(
        "AdvanceAdjustment",
        back_populates="advance",
        order_by="AdvanceAdjustment.id",
    )


class AdvanceAdjustment(Base):
    """
    Many-to-many between invoices and advance payments.
    Represents how much from a particular advance got applied to a particular invoice.
    """

    __tablename__ = "billing_advance_adjustments"
    __table_args__ = (
        Index("ix_billing_adv_adj_invoice", "invoice_id"),
        Index("ix_billing_adv_adj_advance", "advance_id"),
        CheckConstraint("amount_applied > 0",
                        name="ck_billing_adv_adj_amount"),
        MYSQL_ARGS,
    )

    id = Column(Integer, primary_key=True, index=True)
    advance_id = Column(
        Integer,
        ForeignKey("billing_advances.id", ondelete="CASCADE"),
        nullable=False,
    )
    invoice_id = Column(
        Integer,
        ForeignKey("billing_invoices.id", ondelete="CASCADE"),
        nullable=False,
    )

    amount_applied = Column(Numeric(12, 2), nullable=False)
    applied_by = Column(Integer, nullable=True)
    applied_at = Column(DateTime, default=datetime.utcnow)

    advance = relationship("Advance", back_populates="adjustments")
    invoice = relationship("Invoice", back_populates="advance_adjustments")


class BillingNumberSeries(Base):
    """One counter row per (prefix, period); locked FOR UPDATE while issuing."""

    __tablename__ = "billing_number_series"
    __table_args__ = (
        UniqueConstraint("prefix",
                         "period_key",
                         name="uq_billing_number_series_period"),
        MYSQL_ARGS,
    )

    id = Column(Integer, primary_key=True, index=True)
    prefix = Column(String(16), nullable=False)
    # "2026-10" | "2026" | "" (never resets)
    period_key = Column(String(10), nullable=False, default="")
    next_number = Column(Integer, nullable=False, default=1)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )


class BillingAuditLog(Base):
    """
    Append-only trail of ledger events (finalize, cancel, void,
    payment delete, advance apply / remove ...).
    """

    __tablename__ = "billing_audit_logs"
    __table_args__ = (
        Index("ix_billing_audit_invoice", "invoice_id"),
        Index("ix_billing_audit_entity", "entity_type", "entity_id"),
        MYSQL_ARGS,
    )

    id = Column(Integer, primary_key=True, index=True)

    user_id = Column(Integer, nullable=True)  # system jobs may be null
    action = Column(String(40), nullable=False)

    entity_type = Column(String(40), nullable=False)
    entity_id = Column(Integer, nullable=False)

    invoice_id = Column(Integer, nullable=True)
    patient_id = Column(Integer, nullable=True)

    details = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class ServicePrice(Base):
    """
    Read-only service price master consulted when a service item
    is added without an explicit unit price.
    """

    __tablename__ = "billing_service_prices"
    __table_args__ = (
        UniqueConstraint("service_type",
                         "service_ref_id",
                         name="uq_billing_service_price"),
        MYSQL_ARGS,
    )

    id = Column(Integer, primary_key=True, index=True)
    service_type = Column(String(32), nullable=False)
    service_ref_id = Column(String(100), nullable=False)
    description = Column(String(300), nullable=True)
    unit_price = Column(Numeric(12, 2), nullable=False)
    tax_rate = Column(Numeric(10, 2), nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
