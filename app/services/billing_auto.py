# FILE: app/services/billing_auto.py
"""
Auto-charge integrators: turn usage recorded in external clinical systems
(bed stays, OT case costing, pending OP / lab / radiology / pharmacy orders)
into invoice service items.

Every billable unit gets a stable service_ref_id, so the anti-double-billing
key makes both integrators safe to re-run after a partial failure. Bed units
also carry the time range they charge for; a unit whose range overlaps bed
time already billed for the admission (in any mode) is never added again.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.billing import Invoice, InvoiceItem
from app.services.billing_calc import apply_totals, compute_item
from app.services.billing_errors import (
    ChargeSourceError,
    InvalidItemInput,
    ServiceAlreadyBilled,
)
from app.services.billing_guards import get_invoice, lock_invoice, require_draft
from app.services.billing_invoice import (
    add_service_item_locked,
    billing_key,
    service_already_billed,
)
from app.services.billing_math import ZERO, money
from app.services.billing_sources import (
    BedStay,
    BedStaySource,
    OtCostingSource,
    PendingService,
    PendingServiceSource,
    PriceResolver,
)

logger = logging.getLogger(__name__)

BED_SERVICE_TYPE = "ipd_bed"
OT_SERVICE_TYPE = "ot"

_HOUR = 3600
_DAY = 24 * _HOUR

TimeRange = Tuple[datetime, datetime]


@dataclass(frozen=True)
class BedUnit:
    ref: str
    description: str
    unit_price: Decimal
    start: datetime
    end: datetime

    def overlaps(self, other: TimeRange) -> bool:
        return self.start < other[1] and other[0] < self.end


@dataclass
class AutoChargeResult:
    invoice: Invoice
    added: List[InvoiceItem] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


# -------------------------
# Bed-stay unit rules
# -------------------------
def _date_range_inclusive(d1: date, d2: date):
    cur = d1
    while cur <= d2:
        yield cur
        cur += timedelta(days=1)


def _stay_label(s: BedStay) -> str:
    return f"{s.room_type} / {s.bed_label}" if s.bed_label else s.room_type


def hourly_rate(s: BedStay) -> Decimal:
    if s.hourly_rate is not None:
        return money(s.hourly_rate)
    return money(money(s.daily_rate) / 24)


def _stay_end(s: BedStay, upto: datetime) -> datetime:
    if s.to_ts is None or s.to_ts > upto:
        return upto
    return s.to_ts


def _is_closed(s: BedStay, upto: datetime) -> bool:
    return s.to_ts is not None and s.to_ts <= upto


def _clip(s: BedStay, start: datetime, end: datetime) -> TimeRange:
    if s.to_ts is not None and s.to_ts < end:
        end = s.to_ts
    return start, end


def _calendar_day_range(d: date) -> TimeRange:
    start = datetime.combine(d, time.min)
    return start, start + timedelta(days=1)


def _hour_range(s: BedStay, n: int) -> TimeRange:
    start = s.from_ts + timedelta(hours=n - 1)
    return _clip(s, start, start + timedelta(hours=1))


def _day_range(s: BedStay, n: int) -> TimeRange:
    start = s.from_ts + timedelta(days=n - 1)
    return _clip(s, start, start + timedelta(days=1))


def active_stay_for_day(stays: List[BedStay], day: date) -> Optional[BedStay]:
    """
    Per-calendar-day rule: the stay active at END OF DAY wins, so a transfer
    day is charged once, at the new bed's rate. A stay that ends exactly at
    midnight does not touch the day that starts then.
    """
    eod = datetime.combine(day, time.max)
    sod = datetime.combine(day, time.min)
    active = None
    for s in stays:
        if s.from_ts <= eod and (s.to_ts is None or s.to_ts > sod):
            active = s
    return active


def daily_units(admission_id: int, stays: List[BedStay],
                upto: datetime) -> List[BedUnit]:
    ordered = sorted(stays, key=lambda s: (s.from_ts, s.stay_id))
    if not ordered:
        return []

    first = ordered[0].from_ts.date()
    last = max(_stay_end(s, upto) for s in ordered).date()

    units = []
    for d in _date_range_inclusive(first, last):
        s = active_stay_for_day(
            [x for x in ordered if x.from_ts <= upto], d)
        if s is None:
            continue
        start, end = _calendar_day_range(d)
        units.append(
            BedUnit(
                ref=f"adm:{admission_id}:day:{d.isoformat()}",
                description=f"Bed charges - {_stay_label(s)} - {d.isoformat()}",
                unit_price=money(s.daily_rate),
                start=start,
                end=end,
            ))
    return units


def _hour_units(admission_id: int, s: BedStay, start_index: int,
                count: int) -> List[BedUnit]:
    rate = hourly_rate(s)
    units = []
    for n in range(start_index + 1, start_index + count + 1):
        start, end = _hour_range(s, n)
        units.append(
            BedUnit(
                ref=f"adm:{admission_id}:stay:{s.stay_id}:h:{n}",
                description=f"Bed charges (hourly) - {_stay_label(s)} - hour {n}",
                unit_price=rate,
                start=start,
                end=end,
            ))
    return units


def _day_unit(admission_id: int, s: BedStay, n: int) -> BedUnit:
    start, end = _day_range(s, n)
    return BedUnit(
        ref=f"adm:{admission_id}:stay:{s.stay_id}:d:{n}",
        description=f"Bed charges - {_stay_label(s)} - day {n}",
        unit_price=money(s.daily_rate),
        start=start,
        end=end,
    )
def hourly_units(admission_id: int, stays: List[BedStay],
                 upto: datetime) -> List[BedUnit]:
    """One unit per started hour of every stay."""
    units = []
    for s in sorted(stays, key=lambda x: (x.from_ts, x.stay_id)):
        secs = (_stay_end(s, upto) - s.from_ts).total_seconds()
        if secs <= 0:
            continue
        units.extend(_hour_units(admission_id, s, 0, math.ceil(secs / _HOUR)))
    return units


def mixed_units(admission_id: int, stays: List[BedStay],
                upto: datetime) -> List[BedUnit]:
    """
    Full 24h blocks bill at the daily rate. A closed stay's remainder bills
    per started hour, capped at one more day; open stays bill complete days
    only until they close.
    """
    units = []
    for s in sorted(stays, key=lambda x: (x.from_ts, x.stay_id)):
        secs = int((_stay_end(s, upto) - s.from_ts).total_seconds())
        if secs <= 0:
            continue

        full_days, rest = divmod(secs, _DAY)
        units.extend(_day_unit(admission_id, s, n)
                     for n in range(1, full_days + 1))

        if rest <= 0 or not _is_closed(s, upto):
            continue

        hrs = math.ceil(rest / _HOUR)
        if hourly_rate(s) * hrs > money(s.daily_rate):
            units.append(_day_unit(admission_id, s, full_days + 1))
        else:
            units.extend(_hour_units(admission_id, s, full_days * 24, hrs))
    return units


_UNIT_RULES = {
    "daily": daily_units,
    "hourly": hourly_units,
    "mixed": mixed_units,
}


def bed_unit_range(ref: str,
                   stays_by_id: Dict[int, BedStay]) -> Optional[TimeRange]:
    """Time range charged by an existing bed unit ref, None if unknown."""
    parts = ref.split(":")
    try:
        if len(parts) == 4 and parts[2] == "day":
            return _calendar_day_range(date.fromisoformat(parts[3]))
        if len(parts) == 6 and parts[2] == "stay" and parts[4] in ("h", "d"):
            s = stays_by_id.get(int(parts[3]))
            if s is None:
                return None
            n = int(parts[5])
            return _hour_range(s, n) if parts[4] == "h" else _day_range(s, n)
    except ValueError:
        return None
    return None


def billed_bed_ranges(db: Session, admission_id: int,
                      stays: List[BedStay]) -> List[TimeRange]:
    """Ranges already charged for the admission by live (non-voided) items."""
    prefix = billing_key(BED_SERVICE_TYPE, f"adm:{int(admission_id)}:")
    refs = [
        r[0] for r in db.query(InvoiceItem.service_ref_id).filter(
            InvoiceItem.billing_key.like(f"{prefix}%")).all()
    ]
    stays_by_id = {s.stay_id: s for s in stays}

    ranges = []
    for ref in refs:
        rng = bed_unit_range(ref, stays_by_id)
        if rng is None:
            logger.warning("Billed bed unit %s does not match a current stay",
                           ref)
            continue
        ranges.append(rng)
    return ranges


# -------------------------
# Integrators
# -------------------------
def auto_add_ipd_bed_charges(
    db: Session,
    invoice_id: int,
    *,
    admission_id: int,
    source: BedStaySource,
    mode: str = "daily",
    skip_if_already_billed: bool = True,
    upto_ts: Optional[datetime] = None,
    tax_rate=None,
    user_id: Optional[int] = None,
) -> AutoChargeResult:
    mode = (mode or "").strip().lower()
    if mode not in _UNIT_RULES:
        raise InvalidItemInput(f"Unknown bed charge mode: {mode!r}")

    inv = lock_invoice(db, invoice_id)
    require_draft(inv, "add items")

    upto = upto_ts or datetime.now()
    if upto.tzinfo is not None:
        # stay timestamps are naive wall-clock times
        upto = upto.replace(tzinfo=None)
    adm = source.fetch_stays(admission_id, upto)
    if adm is None:
        raise ChargeSourceError(f"Admission {admission_id} not found")
    if int(adm.patient_id) != int(inv.patient_id):
        raise ChargeSourceError(
            f"Admission {admission_id} belongs to another patient",
            details={"admission_patient_id": adm.patient_id})

    billed = billed_bed_ranges(db, admission_id, adm.stays)

    result = AutoChargeResult(invoice=inv)
    for unit in _UNIT_RULES[mode](admission_id, adm.stays, upto):
        if unit.unit_price <= ZERO:
            logger.info("Bed unit %s has no rate; skipped", unit.ref)
            result.skipped.append(unit.ref)
            continue
        if (service_already_billed(db, BED_SERVICE_TYPE, unit.ref)
                or any(unit.overlaps(rng) for rng in billed)):
            if not skip_if_already_billed:
                raise ServiceAlreadyBilled(BED_SERVICE_TYPE, unit.ref)
            logger.info("Bed unit %s already billed; skipped", unit.ref)
            result.skipped.append(unit.ref)
            continue

        result.added.append(
            add_service_item_locked(db,
                                    inv,
                                    service_type=BED_SERVICE_TYPE,
                                    service_ref_id=unit.ref,
                                    quantity=1,
                                    unit_price=unit.unit_price,
                                    tax_rate=tax_rate,
                                    description=unit.description,
                                    user_id=user_id))

    apply_totals(inv)
    if result.added:
        inv.updated_by = user_id
    db.flush()

    logger.info("IPD bed auto charges invoice=%s admission=%s mode=%s "
                "added=%s skipped=%s", inv.id, admission_id, mode,
                len(result.added), len(result.skipped))
    return result


def auto_add_ot_charges(
    db: Session,
    invoice_id: int,
    *,
    case_id: int,
    source: OtCostingSource,
    user_id: Optional[int] = None,
) -> AutoChargeResult:
    inv = lock_invoice(db, invoice_id)
    require_draft(inv, "add items")

    case = source.fetch_case(case_id)
    if case is None:
        raise ChargeSourceError(f"OT case {case_id} not found")
    if not case.is_completed:
        raise ChargeSourceError(f"OT case {case_id} is not completed yet")
    if int(case.patient_id) != int(inv.patient_id):
        raise ChargeSourceError(
            f"OT case {case_id} belongs to another patient",
            details={"case_patient_id": case.patient_id})

    result = AutoChargeResult(invoice=inv)
    for comp in case.components:
        ref = f"case:{case_id}:{comp.component_id}"
        if money(comp.unit_price) <= ZERO:
            logger.info("OT component %s has no price; skipped", ref)
            result.skipped.append(ref)
            continue
        if service_already_billed(db, OT_SERVICE_TYPE, ref):
            logger.info("OT component %s already billed; skipped", ref)
            result.skipped.append(ref)
            continue

        result.added.append(
            add_service_item_locked(db,
                                    inv,
                                    service_type=OT_SERVICE_TYPE,
                                    service_ref_id=ref,
                                    quantity=comp.quantity,
                                    unit_price=comp.unit_price,
                                    tax_rate=comp.tax_rate,
                                    description=comp.description,
                                    user_id=user_id))

    apply_totals(inv)
    if result.added:
        inv.updated_by = user_id
    db.flush()

    if not result.added:
        logger.info("No new OT charges created for case %s", case_id)
    return result


# -------------------------
# Unbilled clinical orders
# -------------------------
@dataclass(frozen=True)
class UnbilledService:
    uid: str
    service_type: str
    service_ref_id: str
    description: str
    quantity: int
    unit_price: Optional[Decimal]
    tax_rate: Decimal
    amount: Optional[Decimal]
    ordered_at: Optional[datetime] = None


def _pending_by_uid(inv: Invoice,
                    source: PendingServiceSource) -> Dict[str, PendingService]:
    pending = source.fetch_pending(inv.patient_id,
                                   context_type=inv.context_type,
                                   context_id=inv.context_id)
    by_uid: Dict[str, PendingService] = {}
    for p in pending:
        by_uid.setdefault(billing_key(p.service_type, p.service_ref_id), p)
    return by_uid


def _unbilled_row(uid: str, p: PendingService,
                  price_resolver: Optional[PriceResolver]) -> UnbilledService:
    unit_price, tax_rate, desc = p.unit_price, p.tax_rate, p.description
    if unit_price is None and price_resolver is not None:
        resolved = price_resolver.resolve(p.service_type, p.service_ref_id)
        if resolved is not None:
            unit_price = resolved.unit_price
            if tax_rate is None:
                tax_rate = resolved.tax_rate
            desc = desc or resolved.description or ""
    if tax_rate is None:
        tax_rate = settings.BILLING_DEFAULT_TAX

    amount = None
    if unit_price is not None:
        amount = compute_item(p.quantity, unit_price, tax_rate).line_total
    return UnbilledService(
        uid=uid,
        service_type=p.service_type,
        service_ref_id=p.service_ref_id,
        description=desc or f"{p.service_type.upper()} #{p.service_ref_id}",
        quantity=p.quantity,
        unit_price=money(unit_price) if unit_price is not None else None,
        tax_rate=tax_rate,
        amount=amount,
        ordered_at=p.ordered_at,
    )


def list_unbilled_services(
    db: Session,
    invoice_id: int,
    *,
    source: PendingServiceSource,
    price_resolver: Optional[PriceResolver] = None,
) -> List[UnbilledService]:
    """
    Orders for the invoice's patient (and context, when the invoice has one)
    that no live invoice item bills yet. uid is the order's billing key.
    """
    inv = get_invoice(db, invoice_id)
    return [
        _unbilled_row(uid, p, price_resolver)
        for uid, p in _pending_by_uid(inv, source).items()
        if not service_already_billed(db, p.service_type, p.service_ref_id)
    ]


def add_unbilled_services(
    db: Session,
    invoice_id: int,
    *,
    source: PendingServiceSource,
    uids: Optional[List[str]] = None,
    price_resolver: Optional[PriceResolver] = None,
    user_id: Optional[int] = None,
) -> AutoChargeResult:
    """
    Bill the selected pending orders (all of them when uids is None).
    Orders billed meanwhile are skipped; a uid the source does not know
    fails the whole call.
    """
    inv = lock_invoice(db, invoice_id)
    require_draft(inv, "add items")

    by_uid = _pending_by_uid(inv, source)
    if uids is None:
        selected = list(by_uid)
    else:
        selected = list(dict.fromkeys(u.strip() for u in uids))
        unknown = [u for u in selected if u not in by_uid]
        if unknown:
            raise InvalidItemInput(
                "Unknown service uid(s) for this invoice",
                details={"unknown_uids": unknown})

    result = AutoChargeResult(invoice=inv)
    for uid in selected:
        p = by_uid[uid]
        if service_already_billed(db, p.service_type, p.service_ref_id):
            logger.info("Order %s already billed; skipped", uid)
            result.skipped.append(uid)
            continue

        result.added.append(
            add_service_item_locked(db,
                                    inv,
                                    service_type=p.service_type,
                                    service_ref_id=p.service_ref_id,
                                    quantity=p.quantity,
                                    unit_price=p.unit_price,
                                    tax_rate=p.tax_rate,
                                    description=p.description or None,
                                    price_resolver=price_resolver,
                                    user_id=user_id))

    apply_totals(inv)
    if result.added:
        inv.updated_by = user_id
    db.flush()

    logger.info("Unbilled orders added invoice=%s added=%s skipped=%s",
                inv.id, len(result.added), len(result.skipped))
    return result
