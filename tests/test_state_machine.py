import threading
from datetime import datetime, timedelta

import pytest

from voucher_system.models import Voucher, VoucherUsageLog
from voucher_system.vouchers.exceptions import (
    AlreadyUsedError, ConflictError, ExpiredError, ForbiddenError, NotFoundError,
    NotYetValidError, VoucherCancelledError
)
from voucher_system.vouchers.schemas import VoucherStatus
from voucher_system.vouchers.state_machine import VoucherStateMachine
from tests.conftest import make_issue_request


@pytest.fixture
def state_machine(db, event_bus, clock):
    return VoucherStateMachine(db, events=event_bus, clock=clock)


@pytest.fixture
def restaurant_voucher(issuer):
    # Valid 2025-01-10 19:00 to 23:00
    return issuer.issue(make_issue_request("restaurant"))


def test_redeem_inside_window(state_machine, restaurant_voucher, partner_a, clock, db):
    clock.set(datetime(2025, 1, 10, 20, 30))

    voucher = state_machine.redeem(restaurant_voucher.id, partner_a, usage_notes="Table 4", location="Front desk")

    assert voucher.status == VoucherStatus.USED.value
    assert voucher.used_at == datetime(2025, 1, 10, 20, 30)
    assert voucher.used_by == "partner-a"

    log = db.query(VoucherUsageLog).filter(VoucherUsageLog.action == "used").one()
    assert log.success is True
    assert log.details["location"] == "Front desk"


def test_redeem_at_window_boundaries(issuer, state_machine, partner_a, clock):
    first = issuer.issue(make_issue_request("restaurant", booking_id="b-1"))
    second = issuer.issue(make_issue_request("restaurant", booking_id="b-2"))

    clock.set(first.valid_from)
    assert state_machine.redeem(first.id, partner_a).status == VoucherStatus.USED.value

    clock.set(second.valid_until)
    assert state_machine.redeem(second.id, partner_a).status == VoucherStatus.USED.value


def test_redeem_one_millisecond_late_expires(state_machine, restaurant_voucher, partner_a, clock, db):
    clock.set(restaurant_voucher.valid_until + timedelta(milliseconds=1))

    with pytest.raises(ExpiredError):
        state_machine.redeem(restaurant_voucher.id, partner_a)

    voucher = db.query(Voucher).filter(Voucher.id == restaurant_voucher.id).one()
    assert voucher.status == VoucherStatus.EXPIRED.value
    assert voucher.expired_at == clock()


def test_redeem_before_window_opens(state_machine, restaurant_voucher, partner_a, clock):
    clock.set(datetime(2025, 1, 10, 18, 59))

    with pytest.raises(NotYetValidError):
        state_machine.redeem(restaurant_voucher.id, partner_a)

    assert restaurant_voucher.status == VoucherStatus.ACTIVE.value


def test_second_redeem_reports_already_used(state_machine, restaurant_voucher, partner_a, clock):
    clock.set(datetime(2025, 1, 10, 19, 30))
    state_machine.redeem(restaurant_voucher.id, partner_a)

    with pytest.raises(AlreadyUsedError):
        state_machine.redeem(restaurant_voucher.id, partner_a)


def test_redeem_permissions(state_machine, issuer, partner_b, employee, traveler, clock):
    voucher = issuer.issue(make_issue_request())

    for actor in (partner_b, traveler):
        with pytest.raises(ForbiddenError):
            state_machine.redeem(voucher.id, actor)

    assert state_machine.redeem(voucher.id, employee).status == VoucherStatus.USED.value


def test_failed_redeem_is_logged(state_machine, partner_b, issuer, db):
    voucher = issuer.issue(make_issue_request())

    with pytest.raises(ForbiddenError):
        state_machine.redeem(voucher.id, partner_b)
    with pytest.raises(NotFoundError):
        state_machine.redeem("missing-id", partner_b)

    failures = db.query(VoucherUsageLog).filter(VoucherUsageLog.success.is_(False)).all()
    assert len(failures) == 2
    assert {log.details["kind"] for log in failures} == {"forbidden", "not_found"}
    assert any(log.details["requested_voucher_id"] == "missing-id" and log.voucher_id is None for log in failures)


def test_cancel_used_voucher_conflicts(state_machine, issuer, partner_a, master):
    voucher = issuer.issue(make_issue_request())
    state_machine.redeem(voucher.id, partner_a)

    with pytest.raises(ConflictError):
        state_machine.cancel(voucher.id, master, reason="Guest asked")


def test_cancel_twice(state_machine, issuer, master):
    voucher = issuer.issue(make_issue_request())
    cancelled = state_machine.cancel(voucher.id, master, reason="Booking refunded")

    assert cancelled.status == VoucherStatus.CANCELLED.value
    assert cancelled.cancelled_by == "admin-1"
    assert cancelled.cancel_reason == "Booking refunded"

    with pytest.raises(VoucherCancelledError):
        state_machine.cancel(voucher.id, master, reason="again")


def test_cancelled_voucher_cannot_be_redeemed(state_machine, issuer, master, partner_a):
    voucher = issuer.issue(make_issue_request())
    state_machine.cancel(voucher.id, master, reason="Booking refunded")

    with pytest.raises(VoucherCancelledError):
        state_machine.redeem(voucher.id, partner_a)


def test_cancel_lapsed_voucher_reports_expired(state_machine, restaurant_voucher, master, clock):
    clock.set(datetime(2025, 1, 11, 0, 0))

    with pytest.raises(ExpiredError):
        state_machine.cancel(restaurant_voucher.id, master, reason="too late")

    assert restaurant_voucher.status == VoucherStatus.EXPIRED.value


def test_cancel_permissions(state_machine, issuer, traveler, other_traveler, employee, partner_b):
    voucher = issuer.issue(make_issue_request())

    for actor in (other_traveler, employee, partner_b):
        with pytest.raises(ForbiddenError):
            state_machine.cancel(voucher.id, actor, reason="not mine")

    # Customer match is by email, ignoring case
    assert state_machine.cancel(voucher.id, traveler, reason="Change of plans").status == VoucherStatus.CANCELLED.value


def test_expire_if_lapsed_leaves_valid_voucher(state_machine, restaurant_voucher, clock):
    clock.set(restaurant_voucher.valid_until)
    state_machine.expire_if_lapsed(restaurant_voucher)
    assert restaurant_voucher.status == VoucherStatus.ACTIVE.value

    clock.advance(seconds=1)
    state_machine.expire_if_lapsed(restaurant_voucher)
    assert restaurant_voucher.status == VoucherStatus.EXPIRED.value


def test_concurrent_redeem_succeeds_once(session_factory, issuer, event_bus, clock, partner_a, employee):
    voucher_id = issuer.issue(make_issue_request()).id
    barrier = threading.Barrier(2)
    outcomes = []
    lock = threading.Lock()

    def scan(actor):
        db = session_factory()
        try:
            state_machine = VoucherStateMachine(db, events=event_bus, clock=clock)
            barrier.wait()
            state_machine.redeem(voucher_id, actor)
            result = "used"
        except ConflictError as e:
            result = e
        finally:
            db.close()
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=scan, args=(actor,)) for actor in (partner_a, employee)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert outcomes.count("used") == 1
    assert len(outcomes) == 2
    assert isinstance([o for o in outcomes if o != "used"][0], ConflictError)
