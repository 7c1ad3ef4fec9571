import re
from datetime import datetime, timedelta

import pytest

from voucher_system.models import Voucher, VoucherUsageLog
from voucher_system.vouchers.exceptions import AlreadyUsedError, ConflictError, ForbiddenError, VoucherValidationError
from voucher_system.vouchers.issuer import VoucherIssuer
from voucher_system.vouchers.schemas import VoucherStatus
from voucher_system.vouchers.utils import generate_voucher_filename
from tests.conftest import make_issue_request, booking_details_for, insert_voucher


def test_restaurant_window_is_four_hours_from_reservation(issuer):
    voucher = issuer.issue(make_issue_request("restaurant"))

    assert voucher.valid_from == datetime(2025, 1, 10, 19, 0)
    assert voucher.valid_until == voucher.valid_from + timedelta(hours=4)


def test_vehicle_window_covers_rental_span(issuer):
    voucher = issuer.issue(make_issue_request("vehicle"))

    assert voucher.valid_from == datetime(2025, 1, 12, 9, 0)
    assert voucher.valid_until == datetime(2025, 1, 15, 9, 0)


def test_package_ending_before_start_is_rejected(issuer):
    details = {"booking_type": "package", "start_at": "2025-02-08T00:00:00", "end_at": "2025-02-01T00:00:00"}

    with pytest.raises(VoucherValidationError):
        issuer.issue(make_issue_request("package", booking_details=details))


def test_other_categories_valid_for_a_year(issuer, clock):
    for index, booking_type in enumerate(("activity", "event", "accommodation")):
        voucher = issuer.issue(make_issue_request(booking_type, booking_id=f"booking-{index}"))
        assert voucher.valid_from == clock()
        assert voucher.valid_until == clock() + timedelta(days=365)


def test_details_must_match_booking_type(issuer):
    request = make_issue_request("restaurant", booking_details=booking_details_for("vehicle"))

    with pytest.raises(VoucherValidationError):
        issuer.issue(request)


def test_issued_voucher_fields(issuer, db):
    voucher = issuer.issue(make_issue_request())

    assert re.match(r"^VCH-\d{8}-\d{4}$", voucher.voucher_number)
    assert voucher.voucher_number.startswith("VCH-20250110-")
    assert voucher.status == VoucherStatus.ACTIVE.value
    assert voucher.customer_info["email"] == "guest@example.com"
    assert voucher.asset_info["name"] == "Sunset Kayak Tour"
    assert voucher.booking_details["booking_type"] == "activity"
    assert voucher.qr_code

    log = db.query(VoucherUsageLog).filter(VoucherUsageLog.voucher_id == voucher.id).one()
    assert log.action == "generated"
    assert log.actor_type == "system"
    assert log.success is True


def test_second_voucher_for_booking_conflicts(issuer, db):
    issuer.issue(make_issue_request())

    with pytest.raises(ConflictError):
        issuer.issue(make_issue_request())

    assert db.query(Voucher).count() == 1


def test_same_booking_id_different_type_is_allowed(issuer):
    issuer.issue(make_issue_request("activity"))
    voucher = issuer.issue(make_issue_request("event"))

    assert voucher.booking_type == "event"


def test_cancelled_voucher_does_not_block_reissue(issuer, db):
    first = issuer.issue(make_issue_request())
    first.status = VoucherStatus.CANCELLED.value
    db.commit()

    second = issuer.issue(make_issue_request())

    assert second.id != first.id


def test_number_collision_is_retried(issuer, db, clock, monkeypatch):
    insert_voucher(db, 1234, clock, booking_id="other-booking")
    numbers = iter(["VCH-20250110-1234", "VCH-20250110-5678"])
    monkeypatch.setattr(
        "voucher_system.vouchers.issuer.generate_voucher_number", lambda date=None: next(numbers)
    )

    voucher = issuer.issue(make_issue_request())

    assert voucher.voucher_number == "VCH-20250110-5678"


def test_number_allocation_gives_up(db, event_bus, clock, monkeypatch):
    insert_voucher(db, 1234, clock, booking_id="other-booking")
    monkeypatch.setattr(
        "voucher_system.vouchers.issuer.generate_voucher_number", lambda date=None: "VCH-20250110-1234"
    )
    issuer = VoucherIssuer(db, events=event_bus, clock=clock, max_number_attempts=3)

    with pytest.raises(ConflictError, match="unique voucher number"):
        issuer.issue(make_issue_request())


def test_partner_may_issue_only_for_itself(issuer, partner_a, partner_b, employee):
    assert issuer.issue(make_issue_request(booking_id="b-1"), actor=partner_a).partner_id == "partner-a"
    assert issuer.issue(make_issue_request(booking_id="b-2"), actor=employee)

    with pytest.raises(ForbiddenError):
        issuer.issue(make_issue_request(booking_id="b-3"), actor=partner_b)


def test_regenerate_cancels_and_replaces(issuer, partner_a, db):
    original = issuer.issue(make_issue_request("restaurant"))
    original_id = original.id

    replacement = issuer.regenerate(original_id, partner_a, reason="Guest lost the email")

    original = db.query(Voucher).filter(Voucher.id == original_id).one()
    assert original.status == VoucherStatus.CANCELLED.value
    assert original.cancel_reason == "Regenerated: Guest lost the email"
    assert replacement.status == VoucherStatus.ACTIVE.value
    assert replacement.regenerated_from_id == original_id
    assert replacement.voucher_number != original.voucher_number
    assert replacement.valid_from == original.valid_from
    assert replacement.valid_until == original.valid_until
    assert replacement.confirmation_code == original.confirmation_code


def test_regenerate_requires_master_or_owner(issuer, partner_b, employee):
    voucher = issuer.issue(make_issue_request())

    for actor in (partner_b, employee):
        with pytest.raises(ForbiddenError):
            issuer.regenerate(voucher.id, actor, reason="nope")


def _cancelled_logs(db):
    return db.query(VoucherUsageLog).filter(VoucherUsageLog.action == "cancelled").count()


def test_regenerate_without_free_number_keeps_original_active(db, event_bus, clock, partner_a, monkeypatch):
    issuer = VoucherIssuer(db, events=event_bus, clock=clock, max_number_attempts=2)
    original = issuer.issue(make_issue_request())
    original_id, taken_number = original.id, original.voucher_number
    monkeypatch.setattr(
        "voucher_system.vouchers.issuer.generate_voucher_number", lambda date=None: taken_number
    )

    with pytest.raises(ConflictError, match="unique voucher number"):
        issuer.regenerate(original_id, partner_a, reason="Guest lost the email")

    db.expire_all()
    original = db.query(Voucher).filter(Voucher.id == original_id).one()
    assert original.status == VoucherStatus.ACTIVE.value
    assert original.cancel_reason is None
    assert db.query(Voucher).count() == 1
    assert _cancelled_logs(db) == 0


def test_failed_replacement_insert_rolls_back_cancellation(db, event_bus, clock, partner_a, monkeypatch):
    issuer = VoucherIssuer(db, events=event_bus, clock=clock, max_number_attempts=2)
    original = issuer.issue(make_issue_request())
    original_id, taken_number = original.id, original.voucher_number
    monkeypatch.setattr(
        "voucher_system.vouchers.issuer.generate_voucher_number", lambda date=None: taken_number
    )
    # Miss the collision up front so the INSERT itself hits the unique index
    answers = iter([False, True, False, True])
    monkeypatch.setattr(issuer, "_number_taken", lambda voucher_number: next(answers))

    with pytest.raises(ConflictError):
        issuer.regenerate(original_id, partner_a, reason="Guest lost the email")

    db.expire_all()
    original = db.query(Voucher).filter(Voucher.id == original_id).one()
    assert original.status == VoucherStatus.ACTIVE.value
    assert original.cancelled_at is None
    assert _cancelled_logs(db) == 0


def test_regenerate_logs_cancellation_after_replacement(issuer, partner_a, db):
    original = issuer.issue(make_issue_request())

    replacement = issuer.regenerate(original.id, partner_a, reason="Typo in guest name")

    log = db.query(VoucherUsageLog).filter(VoucherUsageLog.action == "cancelled").one()
    assert log.voucher_id == original.id
    assert log.details["regenerated"] is True
    assert log.details["reason"] == "Regenerated: Typo in guest name"
    generated = db.query(VoucherUsageLog).filter(
        VoucherUsageLog.action == "generated", VoucherUsageLog.voucher_id == replacement.id
    ).one()
    assert generated.details["original_voucher_id"] == original.id


def test_regenerate_rejects_used_voucher(issuer, partner_a, master):
    voucher = issuer.issue(make_issue_request("restaurant"))
    issuer.db.query(Voucher).filter(Voucher.id == voucher.id).update({"status": "used"})
    issuer.db.commit()

    with pytest.raises(AlreadyUsedError):
        issuer.regenerate(voucher.id, partner_a, reason="again")


def test_generate_voucher_filename():
    assert generate_voucher_filename("VCH-20250110-0001", "Sunset Kayak Tour") == "Sunset_Kayak_Tour_VCH-20250110-0001.pdf"
    assert generate_voucher_filename("VCH-20250110-0001", "x" * 50) == "x" * 30 + "_VCH-20250110-0001.pdf"
    assert generate_voucher_filename("VCH-20250110-0001") == "voucher_VCH-20250110-0001.pdf"
    assert generate_voucher_filename("VCH-20250110-0001", None) == "voucher_VCH-20250110-0001.pdf"
    assert generate_voucher_filename("VCH-20250110-0001", "") == "voucher_VCH-20250110-0001.pdf"
