"""Booking voucher service: issuance, QR verification and redemption of booking vouchers."""

__version__ = "1.0.0"
