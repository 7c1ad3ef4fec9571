import os

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("VOUCHER_SECRET", "test-voucher-secret")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

import pytest
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from sqlalchemy.orm import sessionmaker

from voucher_system import models  # noqa: F401  registers tables
from voucher_system.auth.schemas import Identity, UserRole
from voucher_system.database import Base, build_engine
from voucher_system.models import Voucher
from voucher_system.vouchers.events import VoucherEventBus
from voucher_system.vouchers.issuer import VoucherIssuer
from voucher_system.vouchers.schemas import VoucherIssueRequest
from voucher_system.vouchers.token_service import VoucherTokenService
from voucher_system.vouchers.usage_log import UsageLogRecorder
from voucher_system.vouchers.utils import build_qr_code_data

TEST_VOUCHER_SECRET = "test-voucher-secret"


class FrozenClock:
    """Callable clock the tests move by hand"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)

    def set(self, now: datetime):
        self.now = now


@pytest.fixture
def engine(tmp_path):
    """File backed SQLite database per test"""
    engine = build_engine(f"sqlite:///{tmp_path / 'vouchers.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FrozenClock(datetime(2025, 1, 10, 12, 0, 0))


@pytest.fixture
def event_bus(session_factory):
    bus = VoucherEventBus()
    bus.subscribe(UsageLogRecorder(session_factory))
    return bus


@pytest.fixture
def token_service(clock):
    return VoucherTokenService(TEST_VOUCHER_SECRET, ttl_hours=24, clock=clock)


@pytest.fixture
def issuer(db, event_bus, clock):
    return VoucherIssuer(db, events=event_bus, clock=clock)


# Identities
@pytest.fixture
def master():
    return Identity(user_id="admin-1", role=UserRole.MASTER, email="admin@example.com")


@pytest.fixture
def employee():
    return Identity(user_id="staff-1", role=UserRole.EMPLOYEE, email="staff@example.com")


@pytest.fixture
def partner_a():
    return Identity(user_id="partner-a", role=UserRole.PARTNER, email="owner@partner-a.com")


@pytest.fixture
def partner_b():
    return Identity(user_id="partner-b", role=UserRole.PARTNER, email="owner@partner-b.com")


@pytest.fixture
def traveler():
    return Identity(user_id="traveler-1", role=UserRole.TRAVELER, email="Guest@Example.com")


@pytest.fixture
def other_traveler():
    return Identity(user_id="traveler-2", role=UserRole.TRAVELER, email="someone@example.com")


# Booking snapshots
def booking_details_for(booking_type: str) -> Dict[str, Any]:
    if booking_type == "restaurant":
        return {"booking_type": "restaurant", "reservation_at": "2025-01-10T19:00:00", "party_size": 2}
    if booking_type == "vehicle":
        return {"booking_type": "vehicle", "start_at": "2025-01-12T09:00:00", "end_at": "2025-01-15T09:00:00"}
    if booking_type == "package":
        return {"booking_type": "package", "start_at": "2025-02-01T00:00:00", "end_at": "2025-02-08T00:00:00", "travelers": 2}
    if booking_type == "accommodation":
        return {"booking_type": "accommodation", "check_in": "2025-03-01T14:00:00", "check_out": "2025-03-04T11:00:00"}
    if booking_type == "event":
        return {"booking_type": "event", "event_date": "2025-04-20T20:00:00", "ticket_quantity": 2}
    return {"booking_type": "activity", "activity_date": "2025-01-20T10:00:00", "participants": 3}


def make_issue_request(
    booking_type: str = "activity",
    booking_id: str = "booking-1",
    partner_id: str = "partner-a",
    customer_email: str = "guest@example.com",
    booking_details: Optional[Dict[str, Any]] = None,
    confirmation_code: str = "CONF-0001"
) -> VoucherIssueRequest:
    return VoucherIssueRequest.model_validate({
        "booking_id": booking_id,
        "booking_type": booking_type,
        "booking_details": booking_details or booking_details_for(booking_type),
        "partner_id": partner_id,
        "customer_id": "traveler-1",
        "confirmation_code": confirmation_code,
        "customer_info": {"name": "Somchai Guest", "email": customer_email, "phone": "+66 81 000 0000"},
        "asset_info": {"asset_id": "asset-1", "name": "Sunset Kayak Tour", "address": "Pier 3, Krabi"},
        "partner_info": {"name": "Andaman Adventures", "email": "hello@andaman.example", "phone": "+66 75 000 000"}
    })


def insert_voucher(db, index: int, clock: FrozenClock, **overrides) -> Voucher:
    """Write a voucher row directly, bypassing issuance"""
    now = clock()
    voucher_number = overrides.pop("voucher_number", f"VCH-{now.strftime('%Y%m%d')}-{index:04d}")
    fields = dict(
        voucher_number=voucher_number,
        booking_id=f"booking-{index}",
        booking_type="activity",
        status="active",
        partner_id="partner-a",
        customer_id="traveler-1",
        confirmation_code=f"CONF-{index:04d}",
        customer_info={"name": "Somchai Guest", "email": "guest@example.com"},
        asset_info={"asset_id": "asset-1", "name": "Sunset Kayak Tour"},
        partner_info={"name": "Andaman Adventures"},
        booking_details=booking_details_for("activity"),
        qr_code=build_qr_code_data(voucher_number),
        valid_from=now,
        valid_until=now + timedelta(days=1),
        generated_at=now,
        created_at=now,
        updated_at=now,
    )
    fields.update(overrides)
    voucher = Voucher(**fields)
    db.add(voucher)
    db.commit()
    db.refresh(voucher)
    return voucher
