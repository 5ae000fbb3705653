from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.billing import BillingNumberSeries


def _period_key(dt: datetime, reset: str) -> str:
    if reset == "none":
        return ""
    if reset == "year":
        return dt.strftime("%Y")
    return dt.strftime("%Y%m")  # month


def _lock_series(db: Session, prefix: str,
                 period_key: str) -> Optional[BillingNumberSeries]:
    return (db.query(BillingNumberSeries).filter(
        BillingNumberSeries.prefix == prefix,
        BillingNumberSeries.period_key == period_key,
    ).with_for_update().first())


def next_invoice_number(
    db: Session,
    *,
    prefix: Optional[str] = None,
    reset_period: Optional[str] = None,
    padding: Optional[int] = None,
    now: Optional[datetime] = None,
) -> str:
    """
    INV-202610-000001 style numbers.

    The period is part of the number, so a counter that restarts every
    month / year can never repeat an earlier number.
    """
    prefix = settings.INVOICE_NUMBER_PREFIX if prefix is None else prefix
    reset = (reset_period or settings.INVOICE_NUMBER_RESET).lower()
    padding = int(padding or settings.INVOICE_NUMBER_PADDING)
    pk = _period_key(now or datetime.utcnow(), reset)

    row = _lock_series(db, prefix, pk)
    if not row:
        # First number of the period. Two requests may both get here; the
        # loser's insert fails on the unique key, so re-read the winner's row.
        try:
            with db.begin_nested():
                row = BillingNumberSeries(prefix=prefix,
                                          period_key=pk,
                                          next_number=1)
                db.add(row)
        except IntegrityError:
            row = _lock_series(db, prefix, pk)
            if not row:
                raise

    n = int(row.next_number or 1)
    row.next_number = n + 1
    db.flush()

    body = str(n).zfill(padding)
    return f"{prefix}{pk}-{body}" if pk else f"{prefix}{body}"
