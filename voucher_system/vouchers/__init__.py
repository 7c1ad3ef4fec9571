"""
Voucher Module

This module turns confirmed bookings into vouchers that customers present at
the partner's venue. It includes:

- Voucher issuance with a per-booking uniqueness guarantee
- Validity windows derived from the booking type
- Signed, short-lived QR verification tokens
- Redemption, cancellation and regeneration through an at-most-once state machine
- Lookup by QR token, voucher number or confirmation code
- PDF voucher documents and download/email bookkeeping
- An append-only usage log fed by voucher events

Key Components:
- issuer.py: Voucher creation and regeneration
- token_service.py: HMAC-SHA256 token signing and verification
- state_machine.py: active -> used / cancelled / expired transitions
- lookup_service.py: Scans, manual lookups, listings and partner statistics
- document_service.py: PDF rendering (ReportLab + qrcode) and delivery tracking
- events.py, usage_log.py, notifications.py: Event bus and its handlers
- router.py: FastAPI endpoints, mounted by ``voucher_system.main``
"""

from .issuer import VoucherIssuer
from .token_service import VoucherTokenService
from .state_machine import VoucherStateMachine
from .lookup_service import VoucherLookupService
from .document_service import VoucherDeliveryService, PdfVoucherRenderer, LocalDocumentStorage
from .events import VoucherEvent, VoucherEventBus
from .usage_log import UsageLogRecorder
from .exceptions import (
    VoucherError, NotFoundError, ConflictError, AlreadyUsedError, VoucherCancelledError,
    NotYetValidError, ForbiddenError, ExpiredError, InvalidTokenError, VoucherValidationError
)
from .schemas import (
    BookingType, VoucherStatus, UsageAction, VoucherIssueRequest, VoucherView,
    VoucherVerificationResponse, TokenClaims, SweepResult
)

__all__ = [
    "VoucherIssuer",
    "VoucherTokenService",
    "VoucherStateMachine",
    "VoucherLookupService",
    "VoucherDeliveryService",
    "PdfVoucherRenderer",
    "LocalDocumentStorage",
    "VoucherEvent",
    "VoucherEventBus",
    "UsageLogRecorder",
    "VoucherError",
    "NotFoundError",
    "ConflictError",
    "AlreadyUsedError",
    "VoucherCancelledError",
    "NotYetValidError",
    "ForbiddenError",
    "ExpiredError",
    "InvalidTokenError",
    "VoucherValidationError",
    "BookingType",
    "VoucherStatus",
    "UsageAction",
    "VoucherIssueRequest",
    "VoucherView",
    "VoucherVerificationResponse",
    "TokenClaims",
    "SweepResult",
]
