# app/services/billing_audit.py
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.models.billing import BillingAuditLog


def _jsonable(v: Any) -> Any:
    if isinstance(v, Decimal):
        return format(v, "f")
    if isinstance(v, (datetime, date)):
        return v.isoformat()
    if isinstance(v, dict):
        return {k: _jsonable(x) for k, x in v.items()}
    if isinstance(v, (list, tuple)):
        return [_jsonable(x) for x in v]
    return v


def log_billing_event(
    db: Session,
    *,
    action: str,
    entity_type: str,
    entity_id: int,
    user_id: Optional[int] = None,
    invoice_id: Optional[int] = None,
    patient_id: Optional[int] = None,
    details: Optional[Dict[str, Any]] = None,
) -> BillingAuditLog:
    """Add an audit row to the current transaction (caller commits)."""
    row = BillingAuditLog(
        user_id=user_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        invoice_id=invoice_id,
        patient_id=patient_id,
        details=_jsonable(details or {}),
    )
    db.add(row)
    return row
