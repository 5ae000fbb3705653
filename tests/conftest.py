import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime  # noqa: E402
from decimal import Decimal  # noqa: E402
from typing import Dict, List, Optional  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from app.api.deps import (  # noqa: E402
    get_bed_stay_source,
    get_db,
    get_ot_costing_source,
    get_pending_service_source,
)
from app.db.base import Base  # noqa: E402
from app.main import app  # noqa: E402
from app.services import billing_advance, billing_invoice  # noqa: E402
from app.services.billing_sources import (  # noqa: E402
    AdmissionStays,
    OtCaseCosting,
    PendingService,
)

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


class FakeBedStaySource:

    def __init__(self):
        self.admissions: Dict[int, AdmissionStays] = {}
        self.calls = []

    def fetch_stays(self, admission_id: int, upto: datetime) -> Optional[AdmissionStays]:
        self.calls.append((admission_id, upto))
        return self.admissions.get(admission_id)


class FakeOtCostingSource:

    def __init__(self):
        self.cases: Dict[int, OtCaseCosting] = {}

    def fetch_case(self, case_id: int) -> Optional[OtCaseCosting]:
        return self.cases.get(case_id)


class FakePendingServiceSource:

    def __init__(self):
        # (patient_id, context_type, context_id, PendingService)
        self.orders = []

    def add(self, patient_id, service, context_type=None, context_id=None):
        self.orders.append((patient_id, context_type, context_id, service))

    def fetch_pending(self, patient_id: int, *, context_type=None,
                      context_id=None) -> List[PendingService]:
        return [
            s for pid, ct, cid, s in self.orders
            if pid == patient_id and (context_type is None or ct in (None, context_type))
            and (context_id is None or cid in (None, context_id))
        ]


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def bed_source():
    return FakeBedStaySource()


@pytest.fixture
def ot_source():
    return FakeOtCostingSource()


@pytest.fixture
def pending_source():
    return FakePendingServiceSource()


@pytest.fixture
def client(db, bed_source, ot_source, pending_source):

    def override_get_db():
        s = TestingSessionLocal()
        try:
            yield s
        finally:
            s.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_bed_stay_source] = lambda: bed_source
    app.dependency_overrides[get_ot_costing_source] = lambda: ot_source
    app.dependency_overrides[get_pending_service_source] = lambda: pending_source
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()


# ---------- helpers ----------
def new_invoice(db, patient_id=1, **kw):
    inv = billing_invoice.create_invoice(db, patient_id=patient_id, **kw)
    db.commit()
    return inv


def invoice_with_amount(db, amount, patient_id=1, tax_rate=0):
    inv = new_invoice(db, patient_id=patient_id)
    billing_invoice.add_manual_item(db,
                                    inv.id,
                                    description="Consultation",
                                    quantity=1,
                                    unit_price=Decimal(str(amount)),
                                    tax_rate=tax_rate)
    db.commit()
    return inv


def new_advance(db, amount, patient_id=1, received_at=None, mode="cash"):
    adv = billing_advance.create_advance(db,
                                         patient_id=patient_id,
                                         amount=Decimal(str(amount)),
                                         mode=mode,
                                         received_at=received_at)
    db.commit()
    return adv
