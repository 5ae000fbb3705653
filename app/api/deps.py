# app/api/deps.py
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.session import get_db
from app.services.billing_sources import (
    BedStaySource,
    ChargeMasterPriceResolver,
    HttpBedStaySource,
    HttpOtCostingSource,
    HttpPendingServiceSource,
    OtCostingSource,
    PendingServiceSource,
    PriceResolver,
)

__all__ = [
    "get_db",
    "current_user_id",
    "get_price_resolver",
    "get_bed_stay_source",
    "get_ot_costing_source",
    "get_pending_service_source",
    "transaction",
]


# =========================================================
# CALLER
# =========================================================
def current_user_id(x_user_id: Optional[int] = Header(
        None, alias="X-User-Id")) -> Optional[int]:
    """
    Actor id stamped on created_by / audit rows.
    Authentication happens upstream; the gateway forwards the user id.
    """
    return x_user_id


# =========================================================
# COLLABORATORS
# =========================================================
def get_price_resolver(db: Session = Depends(get_db)) -> PriceResolver:
    return ChargeMasterPriceResolver(db)


def get_bed_stay_source() -> BedStaySource:
    return HttpBedStaySource(settings.BED_STAY_SOURCE_URL,
                             token=settings.SOURCE_API_TOKEN,
                             timeout=settings.SOURCE_TIMEOUT_SECONDS)


def get_ot_costing_source() -> OtCostingSource:
    return HttpOtCostingSource(settings.OT_COSTING_SOURCE_URL,
                               token=settings.SOURCE_API_TOKEN,
                               timeout=settings.SOURCE_TIMEOUT_SECONDS)


def get_pending_service_source() -> PendingServiceSource:
    return HttpPendingServiceSource(settings.ORDERS_SOURCE_URL,
                                    token=settings.SOURCE_API_TOKEN,
                                    timeout=settings.SOURCE_TIMEOUT_SECONDS)


# =========================================================
# TRANSACTION
# =========================================================
@contextmanager
def transaction(db: Session) -> Iterator[Session]:
    """Commit when the block succeeds; roll everything back otherwise."""
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
