# FILE: app/services/billing_sources.py
"""
Read-only collaborators the ledger consults:

- PriceResolver    : service price master (add_service_item without a price)
- BedStaySource    : admission bed-stay usage (IPD bed auto charges)
- OtCostingSource  : OT case costed breakdown (OT auto charges)
- PendingServiceSource : clinical orders waiting to be billed

Each one is a small Protocol so routes can inject the production
implementation and tests can swap in fakes.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol

import requests
from sqlalchemy.orm import Session

from app.models.billing import ServicePrice
from app.services.billing_errors import ChargeSourceError, ChargeSourceUnavailable
from app.services.billing_math import D, money

logger = logging.getLogger(__name__)


# ---------- price master ----------
@dataclass(frozen=True)
class ResolvedPrice:
    unit_price: Decimal
    tax_rate: Decimal = Decimal("0")
    description: Optional[str] = None


class PriceResolver(Protocol):

    def resolve(self, service_type: str,
                service_ref_id: str) -> Optional[ResolvedPrice]:
        ...


class ChargeMasterPriceResolver:
    """Looks prices up in billing_service_prices (active rows only)."""

    def __init__(self, db: Session):
        self.db = db

    def resolve(self, service_type: str,
                service_ref_id: str) -> Optional[ResolvedPrice]:
        row = (self.db.query(ServicePrice).filter(
            ServicePrice.service_type == service_type,
            ServicePrice.service_ref_id == str(service_ref_id),
            ServicePrice.is_active.is_(True),
        ).first())
        if not row:
            return None
        return ResolvedPrice(
            unit_price=money(row.unit_price),
            tax_rate=D(row.tax_rate),
            description=row.description,
        )


# ---------- bed stay ----------
@dataclass(frozen=True)
class BedStay:
    stay_id: int
    from_ts: datetime
    to_ts: Optional[datetime]
    daily_rate: Decimal
    hourly_rate: Optional[Decimal] = None
    room_type: str = "General"
    bed_label: Optional[str] = None


@dataclass(frozen=True)
class AdmissionStays:
    admission_id: int
    patient_id: int
    stays: List[BedStay] = field(default_factory=list)


class BedStaySource(Protocol):

    def fetch_stays(self, admission_id: int,
                    upto: datetime) -> Optional[AdmissionStays]:
        ...


# ---------- OT costing ----------
@dataclass(frozen=True)
class OtCostComponent:
    component_id: str
    description: str
    unit_price: Decimal
    quantity: int = 1
    tax_rate: Decimal = Decimal("0")


@dataclass(frozen=True)
class OtCaseCosting:
    case_id: int
    patient_id: int
    is_completed: bool
    components: List[OtCostComponent] = field(default_factory=list)


class OtCostingSource(Protocol):

    def fetch_case(self, case_id: int) -> Optional[OtCaseCosting]:
        ...


# ---------- pending clinical orders ----------
@dataclass(frozen=True)
class PendingService:
    """An order placed in OP / lab / radiology / pharmacy, billed or not."""
    service_type: str
    service_ref_id: str
    description: str
    unit_price: Optional[Decimal] = None  # None -> price master
    quantity: int = 1
    tax_rate: Optional[Decimal] = None
    ordered_at: Optional[datetime] = None


class PendingServiceSource(Protocol):

    def fetch_pending(self,
                      patient_id: int,
                      *,
                      context_type: Optional[str] = None,
                      context_id: Optional[int] = None) -> List[PendingService]:
        ...


# ---------- HTTP implementations ----------
def _parse_ts(v: Any) -> Optional[datetime]:
    if not v:
        return None
    if isinstance(v, datetime):
        return v
    return datetime.fromisoformat(str(v).replace("Z", "+00:00")).replace(
        tzinfo=None)


class _HttpSource:

    def __init__(self,
                 base_url: Optional[str],
                 *,
                 token: Optional[str] = None,
                 timeout: float = 15.0,
                 name: str = "source"):
        self.base_url = (base_url or "").rstrip("/")
        self.token = token
        self.timeout = timeout
        self.name = name

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None):
        if not self.base_url:
            raise ChargeSourceUnavailable(f"{self.name} URL is not configured")

        url = f"{self.base_url}{path}"
        try:
            resp = requests.get(url,
                                params=params,
                                headers=self._headers(),
                                timeout=self.timeout)
        except requests.RequestException as e:
            logger.exception("%s request failed: %s", self.name, url)
            raise ChargeSourceUnavailable(
                f"{self.name} is unreachable") from e

        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            logger.error("%s error [%s]: %s", self.name, resp.status_code,
                         resp.text[:200])
            raise ChargeSourceUnavailable(
                f"{self.name} answered {resp.status_code}")

        try:
            return resp.json()
        except ValueError as e:
            raise ChargeSourceUnavailable(
                f"{self.name} returned invalid JSON") from e


class HttpBedStaySource(_HttpSource):
    """
    GET {base}/admissions/{admission_id}/bed-stays?upto=<iso>
    -> {"admission_id", "patient_id", "stays": [{"id", "from_ts", "to_ts",
        "daily_rate", "hourly_rate", "room_type", "bed_label"}]}
    """

    def __init__(self, base_url: Optional[str], **kw):
        kw.setdefault("name", "bed-stay source")
        super().__init__(base_url, **kw)

    def fetch_stays(self, admission_id: int,
                    upto: datetime) -> Optional[AdmissionStays]:
        data = self._get(f"/admissions/{int(admission_id)}/bed-stays",
                         params={"upto": upto.isoformat()})
        if data is None:
            return None
        try:
            stays = [
                BedStay(
                    stay_id=int(s["id"]),
                    from_ts=_parse_ts(s["from_ts"]),
                    to_ts=_parse_ts(s.get("to_ts")),
                    daily_rate=money(s.get("daily_rate")),
                    hourly_rate=(money(s["hourly_rate"])
                                 if s.get("hourly_rate") is not None else None),
                    room_type=(s.get("room_type") or "General"),
                    bed_label=s.get("bed_label"),
                ) for s in (data.get("stays") or [])
            ]
            return AdmissionStays(
                admission_id=int(data.get("admission_id") or admission_id),
                patient_id=int(data["patient_id"]),
                stays=stays,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ChargeSourceError(
                "Bed-stay source returned malformed data") from e


class HttpOtCostingSource(_HttpSource):
    """
    GET {base}/cases/{case_id}/costing
    -> {"case_id", "patient_id", "is_completed", "components": [{"id",
        "description", "quantity", "unit_price", "tax_rate"}]}
    """

    def __init__(self, base_url: Optional[str], **kw):
        kw.setdefault("name", "OT costing source")
        super().__init__(base_url, **kw)

    def fetch_case(self, case_id: int) -> Optional[OtCaseCosting]:
        data = self._get(f"/cases/{int(case_id)}/costing")
        if data is None:
            return None
        try:
            comps = [
                OtCostComponent(
                    component_id=str(c["id"]),
                    description=str(c.get("description") or f"OT component {c['id']}"),
                    quantity=int(c.get("quantity") or 1),
                    unit_price=money(c.get("unit_price")),
                    tax_rate=D(c.get("tax_rate") or 0),
                ) for c in (data.get("components") or [])
            ]
            return OtCaseCosting(
                case_id=int(data.get("case_id") or case_id),
                patient_id=int(data["patient_id"]),
                is_completed=bool(data.get("is_completed")),
                components=comps,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ChargeSourceError(
                "OT costing source returned malformed data") from e


class HttpPendingServiceSource(_HttpSource):
    """
    GET {base}/patients/{patient_id}/orders?context_type=&context_id=
    -> {"orders": [{"service_type", "service_ref_id", "description",
        "quantity", "unit_price", "tax_rate", "ordered_at"}]}
    """

    def __init__(self, base_url: Optional[str], **kw):
        kw.setdefault("name", "orders source")
        super().__init__(base_url, **kw)

    def fetch_pending(self,
                      patient_id: int,
                      *,
                      context_type: Optional[str] = None,
                      context_id: Optional[int] = None) -> List[PendingService]:
        params = {}
        if context_type:
            params["context_type"] = context_type
        if context_id is not None:
            params["context_id"] = int(context_id)

        data = self._get(f"/patients/{int(patient_id)}/orders", params=params)
        if data is None:
            return []
        try:
            return [
                PendingService(
                    service_type=str(o["service_type"]).strip().lower(),
                    service_ref_id=str(o["service_ref_id"]).strip(),
                    description=str(o.get("description") or ""),
                    unit_price=(money(o["unit_price"])
                                if o.get("unit_price") is not None else None),
                    quantity=int(o.get("quantity") or 1),
                    tax_rate=(D(o["tax_rate"])
                              if o.get("tax_rate") is not None else None),
                    ordered_at=_parse_ts(o.get("ordered_at")),
                ) for o in (data.get("orders") or [])
            ]
        except (KeyError, TypeError, ValueError) as e:
            raise ChargeSourceError(
                "Orders source returned malformed data") from e
