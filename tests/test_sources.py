from datetime import datetime
from decimal import Decimal

import pytest
import requests

from app.services import billing_sources
from app.services.billing_errors import ChargeSourceError, ChargeSourceUnavailable
from app.services.billing_sources import (
    HttpBedStaySource,
    HttpOtCostingSource,
    HttpPendingServiceSource,
)


class _Resp:

    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


@pytest.fixture
def fake_get(monkeypatch):
    calls = []
    box = {"resp": _Resp(404)}

    def _get(url, params=None, headers=None, timeout=None):
        calls.append({"url": url, "params": params, "headers": headers,
                      "timeout": timeout})
        resp = box["resp"]
        if isinstance(resp, Exception):
            raise resp
        return resp

    monkeypatch.setattr(billing_sources.requests, "get", _get)
    box["calls"] = calls
    return box


def test_bed_stays_are_parsed(fake_get):
    fake_get["resp"] = _Resp(200, {
        "admission_id": 5,
        "patient_id": 1,
        "stays": [{
            "id": 11,
            "from_ts": "2026-10-01T10:00:00Z",
            "to_ts": None,
            "daily_rate": "1500.5",
            "room_type": "Deluxe",
        }],
    })
    src = HttpBedStaySource("http://adt.local/api/", token="secret", timeout=3)

    adm = src.fetch_stays(5, datetime(2026, 10, 2, 8, 0))

    assert adm.patient_id == 1
    stay = adm.stays[0]
    assert stay.stay_id == 11
    assert stay.from_ts == datetime(2026, 10, 1, 10, 0)
    assert stay.to_ts is None
    assert stay.daily_rate == Decimal("1500.50")
    assert stay.hourly_rate is None

    call = fake_get["calls"][0]
    assert call["url"] == "http://adt.local/api/admissions/5/bed-stays"
    assert call["params"] == {"upto": "2026-10-02T08:00:00"}
    assert call["headers"]["Authorization"] == "Bearer secret"
    assert call["timeout"] == 3


def test_missing_admission_is_none(fake_get):
    fake_get["resp"] = _Resp(404)
    assert HttpBedStaySource("http://adt.local").fetch_stays(
        5, datetime(2026, 10, 2)) is None


def test_unconfigured_source():
    with pytest.raises(ChargeSourceUnavailable):
        HttpOtCostingSource(None).fetch_case(1)


def test_transport_errors_become_unavailable(fake_get):
    fake_get["resp"] = requests.ConnectionError("refused")
    with pytest.raises(ChargeSourceUnavailable):
        HttpOtCostingSource("http://ot.local").fetch_case(1)


def test_server_errors_become_unavailable(fake_get):
    fake_get["resp"] = _Resp(503, text="maintenance")
    with pytest.raises(ChargeSourceUnavailable):
        HttpOtCostingSource("http://ot.local").fetch_case(1)


def test_malformed_payload(fake_get):
    fake_get["resp"] = _Resp(200, {"case_id": 70, "components": []})
    with pytest.raises(ChargeSourceError):
        HttpOtCostingSource("http://ot.local").fetch_case(70)


def test_ot_costing_is_parsed(fake_get):
    fake_get["resp"] = _Resp(200, {
        "case_id": 70,
        "patient_id": 1,
        "is_completed": True,
        "components": [{"id": 3, "description": "Anaesthesia",
                        "unit_price": 4000, "quantity": 1, "tax_rate": 5}],
    })
    case = HttpOtCostingSource("http://ot.local").fetch_case(70)
    assert case.is_completed is True
    comp = case.components[0]
    assert comp.component_id == "3"
    assert comp.unit_price == Decimal("4000.00")
    assert comp.tax_rate == Decimal("5")


def test_pending_orders_are_parsed(fake_get):
    fake_get["resp"] = _Resp(200, {"orders": [
        {"service_type": " LAB ", "service_ref_id": 101,
         "description": "CBC", "unit_price": "300", "tax_rate": "5",
         "ordered_at": "2026-10-02T09:00:00Z"},
        {"service_type": "op_consult", "service_ref_id": "9"},
    ]})
    src = HttpPendingServiceSource("http://emr.local/api")

    first, second = src.fetch_pending(1, context_type="ipd", context_id=3)

    assert (first.service_type, first.service_ref_id) == ("lab", "101")
    assert first.unit_price == Decimal("300.00")
    assert first.tax_rate == Decimal("5")
    assert first.ordered_at == datetime(2026, 10, 2, 9, 0)
    assert second.unit_price is None
    assert second.quantity == 1
    assert second.tax_rate is None

    call = fake_get["calls"][0]
    assert call["url"] == "http://emr.local/api/patients/1/orders"
    assert call["params"] == {"context_type": "ipd", "context_id": 3}


def test_unknown_patient_has_no_orders(fake_get):
    fake_get["resp"] = _Resp(404)
    assert HttpPendingServiceSource("http://emr.local").fetch_pending(1) == []


def test_malformed_orders(fake_get):
    fake_get["resp"] = _Resp(200, {"orders": [{"description": "CBC"}]})
    with pytest.raises(ChargeSourceError):
        HttpPendingServiceSource("http://emr.local").fetch_pending(1)
