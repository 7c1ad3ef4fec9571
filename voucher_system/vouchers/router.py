from fastapi import APIRouter, Depends, status, Query
from fastapi.responses import FileResponse
from sqlalchemy.orm import Session, sessionmaker
from typing import Callable, Optional
from datetime import datetime

from voucher_system.config import settings
from voucher_system.database import get_db
from voucher_system.auth import Identity, UserRole, get_current_identity, get_optional_identity
from voucher_system.jobs.expiration_sweeper import VoucherExpirationSweeper
from voucher_system.vouchers.dependencies import (
    get_clock, get_event_bus, get_token_service, get_document_renderer,
    get_document_storage, get_request_meta
)
from voucher_system.vouchers.document_service import VoucherDeliveryService, DocumentRenderer, DocumentStorage
from voucher_system.vouchers.events import VoucherEventBus
from voucher_system.vouchers.exceptions import ForbiddenError
from voucher_system.vouchers.issuer import VoucherIssuer
from voucher_system.vouchers.lookup_service import VoucherLookupService
from voucher_system.vouchers.schemas import (
    VoucherIssueRequest, VoucherIssueResponse, VoucherRedeemRequest, VoucherCancelRequest,
    VoucherRegenerateRequest, VoucherVerifyRequest, VoucherEmailSentRequest, RequestMeta,
    VoucherView, VoucherVerificationResponse, VoucherTokenResponse, VoucherPage,
    UsageLogPage, VoucherStats, VoucherStatus, SweepResult, BookingType
)
from voucher_system.vouchers.state_machine import VoucherStateMachine
from voucher_system.vouchers.token_service import VoucherTokenService

router = APIRouter()


def _issue_response(voucher) -> VoucherIssueResponse:
    return VoucherIssueResponse(
        voucher_id=voucher.id,
        voucher_number=voucher.voucher_number,
        qr_code=voucher.qr_code,
        valid_from=voucher.valid_from,
        valid_until=voucher.valid_until
    )


# Issuance
@router.post("", response_model=VoucherIssueResponse, status_code=status.HTTP_201_CREATED)
def issue_voucher(
    request: VoucherIssueRequest,
    identity: Identity = Depends(get_current_identity),
    meta: RequestMeta = Depends(get_request_meta),
    events: VoucherEventBus = Depends(get_event_bus),
    clock: Callable[[], datetime] = Depends(get_clock),
    db: Session = Depends(get_db)
):
    """Issue a voucher for a confirmed booking"""

    issuer = VoucherIssuer(db, events=events, clock=clock, max_number_attempts=settings.VOUCHER_NUMBER_MAX_ATTEMPTS)
    voucher = issuer.issue(request, actor=identity, meta=meta)
    return _issue_response(voucher)


# Lookup & Verification Endpoints
@router.get("/number/{voucher_number}", response_model=VoucherVerificationResponse)
def lookup_voucher_by_number(
    voucher_number: str,
    identity: Optional[Identity] = Depends(get_optional_identity),
    meta: RequestMeta = Depends(get_request_meta),
    events: VoucherEventBus = Depends(get_event_bus),
    clock: Callable[[], datetime] = Depends(get_clock),
    db: Session = Depends(get_db)
):
    """Manual lookup when the QR code cannot be scanned"""

    lookup_service = VoucherLookupService(db, events=events, clock=clock)
    return lookup_service.lookup_by_number(voucher_number, identity, meta=meta)


@router.get("/confirmation/{confirmation_code}", response_model=VoucherView)
def lookup_voucher_by_confirmation_code(
    confirmation_code: str,
    identity: Optional[Identity] = Depends(get_optional_identity),
    meta: RequestMeta = Depends(get_request_meta),
    events: VoucherEventBus = Depends(get_event_bus),
    clock: Callable[[], datetime] = Depends(get_clock),
    db: Session = Depends(get_db)
):
    """Resolve a voucher from the booking confirmation code"""

    lookup_service = VoucherLookupService(db, events=events, clock=clock)
    return lookup_service.lookup_by_confirmation_code(confirmation_code, identity, meta=meta)


@router.post("/verify", response_model=VoucherVerificationResponse)
def verify_voucher(
    request: VoucherVerifyRequest,
    identity: Optional[Identity] = Depends(get_optional_identity),
    meta: RequestMeta = Depends(get_request_meta),
    token_service: VoucherTokenService = Depends(get_token_service),
    events: VoucherEventBus = Depends(get_event_bus),
    clock: Callable[[], datetime] = Depends(get_clock),
    db: Session = Depends(get_db)
):
    """Verify scanned QR content"""

    lookup_service = VoucherLookupService(db, token_service=token_service, events=events, clock=clock)
    return lookup_service.verify_token(request.qr_content, identity, meta=meta)


@router.get("/booking/{booking_type}/{booking_id}", response_model=VoucherView)
def lookup_voucher_by_booking(
    booking_type: BookingType,
    booking_id: str,
    identity: Identity = Depends(get_current_identity),
    events: VoucherEventBus = Depends(get_event_bus),
    clock: Callable[[], datetime] = Depends(get_clock),
    db: Session = Depends(get_db)
):
    """Get the live voucher of a booking"""

    lookup_service = VoucherLookupService(db, events=events, clock=clock)
    return lookup_service.lookup_by_booking(booking_id, booking_type, identity)


# Listings
@router.get("/partner/{partner_id}", response_model=VoucherPage)
def list_partner_vouchers(
    partner_id: str,
    voucher_status: Optional[VoucherStatus] = Query(None, alias="status", description="Filter by status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    identity: Identity = Depends(get_current_identity),
    events: VoucherEventBus = Depends(get_event_bus),
    clock: Callable[[], datetime] = Depends(get_clock),
    db: Session = Depends(get_db)
):
    """Get vouchers issued for a partner"""

    lookup_service = VoucherLookupService(db, events=events, clock=clock)
    return lookup_service.list_partner_vouchers(partner_id, identity, voucher_status, limit, offset)


@router.get("/partner/{partner_id}/stats", response_model=VoucherStats)
def get_partner_stats(
    partner_id: str,
    identity: Identity = Depends(get_current_identity),
    events: VoucherEventBus = Depends(get_event_bus),
    clock: Callable[[], datetime] = Depends(get_clock),
    db: Session = Depends(get_db)
):
    """Voucher statistics for a partner"""

    lookup_service = VoucherLookupService(db, events=events, clock=clock)
    return lookup_service.get_partner_stats(partner_id, identity)


@router.get("/customer/me", response_model=VoucherPage)
def list_my_vouchers(
    voucher_status: Optional[VoucherStatus] = Query(None, alias="status", description="Filter by status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    identity: Identity = Depends(get_current_identity),
    events: VoucherEventBus = Depends(get_event_bus),
    clock: Callable[[], datetime] = Depends(get_clock),
    db: Session = Depends(get_db)
):
    """Get the caller's vouchers"""

    lookup_service = VoucherLookupService(db, events=events, clock=clock)
    return lookup_service.list_customer_vouchers(identity, voucher_status, limit, offset)


# Maintenance
@router.post("/sweep", response_model=SweepResult)
def run_expiration_sweep(
    identity: Identity = Depends(get_current_identity),
    events: VoucherEventBus = Depends(get_event_bus),
    clock: Callable[[], datetime] = Depends(get_clock),
    db: Session = Depends(get_db)
):
    """Expire every lapsed voucher now"""

    if identity.role != UserRole.MASTER:
        raise ForbiddenError("Master access required")

    session_factory = sessionmaker(autocommit=False, autoflush=False, bind=db.get_bind())
    sweeper = VoucherExpirationSweeper(session_factory, events=events, clock=clock)
    return sweeper.run()


# Single voucher operations
@router.get("/{voucher_id}", response_model=VoucherView)
def get_voucher(
    voucher_id: str,
    identity: Identity = Depends(get_current_identity),
    events: VoucherEventBus = Depends(get_event_bus),
    clock: Callable[[], datetime] = Depends(get_clock),
    db: Session = Depends(get_db)
):
    """Get voucher by ID"""

    lookup_service = VoucherLookupService(db, events=events, clock=clock)
    return lookup_service.get_voucher(voucher_id, identity)


@router.post("/{voucher_id}/token", response_model=VoucherTokenResponse)
def issue_verification_token(
    voucher_id: str,
    identity: Identity = Depends(get_current_identity),
    token_service: VoucherTokenService = Depends(get_token_service),
    events: VoucherEventBus = Depends(get_event_bus),
    clock: Callable[[], datetime] = Depends(get_clock),
    db: Session = Depends(get_db)
):
    """Sign a short-lived QR token for display at the venue"""

    lookup_service = VoucherLookupService(db, token_service=token_service, events=events, clock=clock)
    return lookup_service.issue_token(voucher_id, identity)


@router.post("/{voucher_id}/redeem", response_model=VoucherView)
def redeem_voucher(
    voucher_id: str,
    request: VoucherRedeemRequest,
    identity: Identity = Depends(get_current_identity),
    meta: RequestMeta = Depends(get_request_meta),
    events: VoucherEventBus = Depends(get_event_bus),
    clock: Callable[[], datetime] = Depends(get_clock),
    db: Session = Depends(get_db)
):
    """Mark voucher as used"""

    state_machine = VoucherStateMachine(db, events=events, clock=clock)
    voucher = state_machine.redeem(
        voucher_id, identity,
        usage_notes=request.usage_notes,
        location=request.location,
        meta=meta
    )
    return VoucherView.model_validate(voucher)


@router.post("/{voucher_id}/cancel", response_model=VoucherView)
def cancel_voucher(
    voucher_id: str,
    request: VoucherCancelRequest,
    identity: Identity = Depends(get_current_identity),
    meta: RequestMeta = Depends(get_request_meta),
    events: VoucherEventBus = Depends(get_event_bus),
    clock: Callable[[], datetime] = Depends(get_clock),
    db: Session = Depends(get_db)
):
    """Cancel an active voucher"""

    state_machine = VoucherStateMachine(db, events=events, clock=clock)
    voucher = state_machine.cancel(voucher_id, identity, reason=request.reason, meta=meta)
    return VoucherView.model_validate(voucher)


@router.post("/{voucher_id}/regenerate", response_model=VoucherIssueResponse, status_code=status.HTTP_201_CREATED)
def regenerate_voucher(
    voucher_id: str,
    request: VoucherRegenerateRequest,
    identity: Identity = Depends(get_current_identity),
    meta: RequestMeta = Depends(get_request_meta),
    events: VoucherEventBus = Depends(get_event_bus),
    clock: Callable[[], datetime] = Depends(get_clock),
    db: Session = Depends(get_db)
):
    """Cancel a voucher and issue a replacement"""

    issuer = VoucherIssuer(db, events=events, clock=clock, max_number_attempts=settings.VOUCHER_NUMBER_MAX_ATTEMPTS)
    voucher = issuer.regenerate(voucher_id, identity, reason=request.reason, meta=meta)
    return _issue_response(voucher)


@router.get("/{voucher_id}/document")
def download_voucher_document(
    voucher_id: str,
    identity: Identity = Depends(get_current_identity),
    meta: RequestMeta = Depends(get_request_meta),
    renderer: DocumentRenderer = Depends(get_document_renderer),
    storage: DocumentStorage = Depends(get_document_storage),
    events: VoucherEventBus = Depends(get_event_bus),
    clock: Callable[[], datetime] = Depends(get_clock),
    db: Session = Depends(get_db)
):
    """Download the voucher PDF"""

    delivery_service = VoucherDeliveryService(db, renderer, storage, events=events, clock=clock)
    document = delivery_service.get_document(voucher_id, identity, meta=meta)

    return FileResponse(
        delivery_service.document_path(document),
        media_type="application/pdf",
        filename=document.filename
    )


@router.post("/{voucher_id}/email-sent", response_model=VoucherView)
def record_voucher_email_sent(
    voucher_id: str,
    request: VoucherEmailSentRequest,
    identity: Identity = Depends(get_current_identity),
    meta: RequestMeta = Depends(get_request_meta),
    renderer: DocumentRenderer = Depends(get_document_renderer),
    storage: DocumentStorage = Depends(get_document_storage),
    events: VoucherEventBus = Depends(get_event_bus),
    clock: Callable[[], datetime] = Depends(get_clock),
    db: Session = Depends(get_db)
):
    """Record that the voucher email went out"""

    delivery_service = VoucherDeliveryService(db, renderer, storage, events=events, clock=clock)
    return delivery_service.record_email_sent(voucher_id, identity, request.email_address, meta=meta)


@router.get("/{voucher_id}/logs", response_model=UsageLogPage)
def get_voucher_usage_logs(
    voucher_id: str,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db)
):
    """Get the voucher's usage history"""

    lookup_service = VoucherLookupService(db)
    return lookup_service.get_usage_logs(voucher_id, identity, limit, offset)
