import logging
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from voucher_system.auth.schemas import Identity, UserRole
from voucher_system.models import Voucher, VoucherUsageLog
from voucher_system.utils import utcnow
from voucher_system.vouchers.events import VoucherEvent, VoucherEventBus
from voucher_system.vouchers.exceptions import (
    VoucherError, NotFoundError, ForbiddenError, InvalidTokenError,
    VoucherValidationError, ConflictError
)
from voucher_system.vouchers.schemas import (
    VoucherStatus, UsageAction, RequestMeta, VoucherView, VoucherSummary,
    VerificationInfo, VoucherVerificationResponse, VoucherTokenResponse,
    VoucherPage, UsageLogEntry, UsageLogPage, VoucherStats, BookingType
)
from voucher_system.vouchers.state_machine import VoucherStateMachine
from voucher_system.vouchers.token_service import VoucherTokenService
from voucher_system.vouchers.utils import format_voucher_number, is_valid_voucher_number

logger = logging.getLogger(__name__)


def can_view_voucher(actor: Optional[Identity], voucher: Voucher) -> bool:
    """Staff see everything, partners their own vouchers, travelers their bookings"""
    if actor is None:
        return False
    if actor.is_staff:
        return True
    if actor.role == UserRole.PARTNER:
        return actor.owns_partner(voucher.partner_id)
    return actor.matches_email((voucher.customer_info or {}).get("email"))


class VoucherLookupService:
    """Resolves vouchers for scanners, partners and customers.

    Visibility rules: master and employee see every voucher, a partner sees
    its own vouchers, a traveler sees vouchers issued to their email address.
    Anonymous callers can only resolve a voucher by confirmation code.
    Every scan and manual lookup is published as a usage event, including
    the ones that fail.
    """

    def __init__(
        self,
        db: Session,
        token_service: Optional[VoucherTokenService] = None,
        events: Optional[VoucherEventBus] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.db = db
        self.token_service = token_service
        self.events = events
        self.clock = clock or utcnow
        self.state_machine = VoucherStateMachine(db, events=events, clock=self.clock)

    # Single voucher resolution
    def get_voucher(self, voucher_id: str, actor: Identity) -> VoucherView:
        """Get a visible voucher by ID"""
        voucher = self.state_machine.get_voucher(voucher_id)
        self._ensure_visible(actor, voucher)
        self.state_machine.expire_if_lapsed(voucher)
        return VoucherView.model_validate(voucher)

    def lookup_by_number(
        self,
        voucher_number: str,
        actor: Optional[Identity],
        meta: Optional[RequestMeta] = None
    ) -> VoucherVerificationResponse:
        """Manual lookup when the QR code cannot be scanned"""

        voucher = None
        normalized = format_voucher_number(voucher_number or "")
        try:
            if actor is None:
                raise ForbiddenError("Sign in to look up vouchers by number")

            if not is_valid_voucher_number(normalized):
                raise VoucherValidationError("Voucher number must look like VCH-YYYYMMDD-NNNN")

            voucher = self._find_by_number(normalized)
            self._ensure_visible(actor, voucher)
            self.state_machine.expire_if_lapsed(voucher)

        except VoucherError as e:
            self._emit(VoucherEvent.build(
                UsageAction.LOOKED_UP, actor=actor, meta=meta, voucher=voucher,
                voucher_number=normalized or None,
                success=False,
                metadata={"lookup_method": "manual", "error": e.detail, "kind": e.kind}
            ))
            raise

        self._emit(VoucherEvent.build(
            UsageAction.LOOKED_UP, actor=actor, meta=meta, voucher=voucher,
            metadata={"lookup_method": "manual"}
        ))

        return VoucherVerificationResponse(
            voucher=VoucherView.model_validate(voucher),
            verification=VerificationInfo(
                verified_at=self.clock(),
                token_valid=False,
                partner_verified=True,
                can_use=self._can_use(voucher)
            )
        )

    def lookup_by_confirmation_code(
        self,
        confirmation_code: str,
        actor: Optional[Identity] = None,
        meta: Optional[RequestMeta] = None
    ) -> VoucherView:
        """Resolve a voucher from its booking confirmation code (shareable link)"""

        voucher = None
        try:
            candidates = self.db.query(Voucher).filter(
                Voucher.confirmation_code == confirmation_code
            ).order_by(Voucher.generated_at.desc()).all()

            if not candidates:
                raise NotFoundError("Voucher not found")

            # A regenerated booking keeps its code; prefer the live voucher
            open_vouchers = [v for v in candidates if v.status != VoucherStatus.CANCELLED.value]
            voucher = open_vouchers[0] if open_vouchers else candidates[0]
            self.state_machine.expire_if_lapsed(voucher)

        except VoucherError as e:
            self._emit(VoucherEvent.build(
                UsageAction.LOOKED_UP, actor=actor, meta=meta,
                success=False,
                metadata={"lookup_method": "confirmation_code", "error": e.detail, "kind": e.kind}
            ))
            raise

        self._emit(VoucherEvent.build(
            UsageAction.LOOKED_UP, actor=actor, meta=meta, voucher=voucher,
            metadata={"lookup_method": "confirmation_code"}
        ))
        return VoucherView.model_validate(voucher)

    def lookup_by_booking(
        self,
        booking_id: str,
        booking_type: BookingType,
        actor: Optional[Identity]
    ) -> VoucherView:
        """Get the voucher of a booking, preferring the live one over cancelled ones"""
        if actor is None:
            raise ForbiddenError("Sign in to look up vouchers")

        booking_type = BookingType(booking_type).value
        candidates = self.db.query(Voucher).filter(
            Voucher.booking_id == booking_id,
            Voucher.booking_type == booking_type
        ).order_by(Voucher.generated_at.desc()).all()

        if not candidates:
            raise NotFoundError("No voucher found for this booking")

        open_vouchers = [v for v in candidates if v.status != VoucherStatus.CANCELLED.value]
        voucher = open_vouchers[0] if open_vouchers else candidates[0]

        self._ensure_visible(actor, voucher)
        self.state_machine.expire_if_lapsed(voucher)
        return VoucherView.model_validate(voucher)

    def verify_token(
        self,
        qr_content: str,
        actor: Optional[Identity],
        meta: Optional[RequestMeta] = None
    ) -> VoucherVerificationResponse:
        """Verify a scanned QR token and resolve its voucher"""

        voucher = None
        claims = None
        try:
            if actor is None:
                raise ForbiddenError("Sign in to verify vouchers")

            claims = self._token_service().verify(qr_content)
            voucher = self._find_by_number(claims.voucher_number)

            if claims.system_id != voucher.id:
                raise InvalidTokenError("Token does not match this voucher")

            self._ensure_visible(actor, voucher)

            if claims.partner_id != voucher.partner_id:
                raise ForbiddenError("Voucher does not belong to this partner")

            self.state_machine.expire_if_lapsed(voucher)
            self._record_scan(voucher)

        except VoucherError as e:
            self._emit(VoucherEvent.build(
                UsageAction.SCANNED, actor=actor, meta=meta, voucher=voucher,
                voucher_number=claims.voucher_number if claims else None,
                success=False,
                metadata={"error": e.detail, "kind": e.kind}
            ))
            raise

        can_use = self._can_use(voucher)
        self._emit(VoucherEvent.build(
            UsageAction.SCANNED, actor=actor, meta=meta, voucher=voucher,
            metadata={
                "token_version": claims.version,
                "scan_count": voucher.scan_count,
                "can_use": can_use
            }
        ))

        return VoucherVerificationResponse(
            voucher=VoucherView.model_validate(voucher),
            verification=VerificationInfo(
                verified_at=self.clock(),
                token_valid=True,
                partner_verified=True,
                can_use=can_use
            )
        )

    def issue_token(self, voucher_id: str, actor: Identity) -> VoucherTokenResponse:
        """Sign a fresh verification token for an active voucher"""

        voucher = self.state_machine.get_voucher(voucher_id)
        self._ensure_visible(actor, voucher)
        self.state_machine.expire_if_lapsed(voucher)

        if voucher.status != VoucherStatus.ACTIVE.value:
            raise ConflictError(f"Voucher is {voucher.status}")

        token_service = self._token_service()
        qr_content = token_service.sign(
            voucher_number=voucher.voucher_number,
            partner_id=voucher.partner_id,
            system_id=voucher.id
        )
        claims = token_service.verify(qr_content)

        return VoucherTokenResponse(
            voucher_number=voucher.voucher_number,
            qr_content=qr_content,
            expires_at=claims.expires_at_datetime
        )

    # Listings
    def list_partner_vouchers(
        self,
        partner_id: str,
        actor: Identity,
        status: Optional[VoucherStatus] = None,
        limit: int = 50,
        offset: int = 0
    ) -> VoucherPage:
        """Get vouchers issued for a partner, newest first"""

        if not (actor.is_staff or actor.owns_partner(partner_id)):
            raise ForbiddenError("Not allowed to list this partner's vouchers")

        query = self.db.query(Voucher).filter(Voucher.partner_id == partner_id)
        return self._paginate(query, status, limit, offset)

    def list_customer_vouchers(
        self,
        actor: Identity,
        status: Optional[VoucherStatus] = None,
        limit: int = 50,
        offset: int = 0
    ) -> VoucherPage:
        """Get vouchers issued to the caller's email address"""

        if not actor.email:
            raise VoucherValidationError("Caller identity has no email address")

        email = func.lower(Voucher.customer_info["email"].as_string())
        query = self.db.query(Voucher).filter(email == actor.email.strip().lower())
        return self._paginate(query, status, limit, offset)

    def get_usage_logs(
        self,
        voucher_id: str,
        actor: Identity,
        limit: int = 50,
        offset: int = 0
    ) -> UsageLogPage:
        """Get the audit trail of a voucher, newest first"""

        voucher = self.state_machine.get_voucher(voucher_id)
        self._ensure_visible(actor, voucher)

        query = self.db.query(VoucherUsageLog).filter(VoucherUsageLog.voucher_id == voucher.id)
        total = query.count()
        logs = query.order_by(
            VoucherUsageLog.timestamp.desc(), VoucherUsageLog.id.desc()
        ).offset(offset).limit(limit).all()

        return UsageLogPage(
            logs=[UsageLogEntry.model_validate(log) for log in logs],
            total=total,
            has_more=offset + len(logs) < total
        )

    def get_partner_stats(self, partner_id: str, actor: Identity) -> VoucherStats:
        """Voucher counts and engagement totals for a partner"""

        if not (actor.is_staff or actor.owns_partner(partner_id)):
            raise ForbiddenError("Not allowed to view this partner's statistics")

        base = self.db.query(Voucher).filter(Voucher.partner_id == partner_id)
        self._expire_lapsed(base)

        by_status = {status.value: 0 for status in VoucherStatus}
        for status, count in base.with_entities(Voucher.status, func.count(Voucher.id)).group_by(Voucher.status):
            by_status[status] = count

        by_booking_type = {booking_type.value: 0 for booking_type in BookingType}
        for booking_type, count in base.with_entities(Voucher.booking_type, func.count(Voucher.id)).group_by(Voucher.booking_type):
            by_booking_type[booking_type] = count

        total_scans, total_downloads = base.with_entities(
            func.coalesce(func.sum(Voucher.scan_count), 0),
            func.coalesce(func.sum(Voucher.download_count), 0)
        ).one()

        return VoucherStats(
            partner_id=partner_id,
            total=sum(by_status.values()),
            by_status=by_status,
            by_booking_type=by_booking_type,
            total_scans=int(total_scans),
            total_downloads=int(total_downloads)
        )

    # Access rules
    def can_view(self, actor: Optional[Identity], voucher: Voucher) -> bool:
        return can_view_voucher(actor, voucher)

    def _ensure_visible(self, actor: Optional[Identity], voucher: Voucher):
        if not self.can_view(actor, voucher):
            raise ForbiddenError("Not allowed to access this voucher")

    def _find_by_number(self, voucher_number: str) -> Voucher:
        voucher = self.db.query(Voucher).filter(Voucher.voucher_number == voucher_number).first()
        if not voucher:
            raise NotFoundError("Voucher not found")
        return voucher

    def _can_use(self, voucher: Voucher) -> bool:
        now = self.clock()
        return (
            voucher.status == VoucherStatus.ACTIVE.value
            and voucher.valid_from <= now <= voucher.valid_until
        )

    def _record_scan(self, voucher: Voucher):
        """Bump the scan counter in place"""
        try:
            self.db.query(Voucher).filter(Voucher.id == voucher.id).update({
                "scan_count": Voucher.scan_count + 1,
                "last_scanned_at": self.clock()
            }, synchronize_session=False)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(voucher)

    def _expire_lapsed(self, query):
        """Expire the lapsed active rows a listing covers before it is filtered or counted"""
        lapsed = query.filter(
            Voucher.status == VoucherStatus.ACTIVE.value,
            Voucher.valid_until < self.clock()
        ).all()
        for voucher in lapsed:
            self.state_machine.expire(voucher)

    def _paginate(self, query, status: Optional[VoucherStatus], limit: int, offset: int) -> VoucherPage:
        self._expire_lapsed(query)

        if status is not None:
            query = query.filter(Voucher.status == status.value)

        total = query.count()
        vouchers: List[Voucher] = query.order_by(Voucher.generated_at.desc()).offset(offset).limit(limit).all()

        return VoucherPage(
            vouchers=[VoucherSummary.model_validate(v) for v in vouchers],
            total=total,
            has_more=offset + len(vouchers) < total
        )

    def _token_service(self) -> VoucherTokenService:
        if self.token_service is None:
            raise RuntimeError("VoucherLookupService was created without a token service")
        return self.token_service

    def _emit(self, event: VoucherEvent):
        if self.events is not None:
            self.events.emit(event)
