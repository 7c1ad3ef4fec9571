from datetime import datetime, timedelta
from typing import Tuple

from voucher_system.utils import to_naive_utc
from voucher_system.vouchers.exceptions import VoucherValidationError
from voucher_system.vouchers.schemas import (
    BookingType, RestaurantDetails, VehicleDetails, PackageDetails
)

RESTAURANT_WINDOW = timedelta(hours=4)
DEFAULT_VALIDITY = timedelta(days=365)


def calculate_validity_window(booking_type: BookingType, details, issued_at: datetime) -> Tuple[datetime, datetime]:
    """Return (valid_from, valid_until) for a booking.

    Restaurants may be redeemed for four hours from the reservation time,
    vehicle rentals and packages for their full span. Every other category
    is valid for a year from issuance.
    """
    if details.booking_type != booking_type.value:
        raise VoucherValidationError(
            f"Booking details are for '{details.booking_type}', expected '{booking_type.value}'"
        )
    
    if isinstance(details, RestaurantDetails):
        valid_from = to_naive_utc(details.reservation_at)
        return valid_from, valid_from + RESTAURANT_WINDOW
    
    if isinstance(details, (VehicleDetails, PackageDetails)):
        valid_from = to_naive_utc(details.start_at)
        valid_until = to_naive_utc(details.end_at)
        if valid_until < valid_from:
            raise VoucherValidationError("Booking ends before it starts")
        return valid_from, valid_until
    
    return issued_at, issued_at + DEFAULT_VALIDITY
