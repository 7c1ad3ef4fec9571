import logging
from datetime import datetime
from typing import Callable, Dict, Any, Optional

from sqlalchemy.orm import Session

from voucher_system.auth.schemas import Identity, UserRole
from voucher_system.models import Voucher
from voucher_system.utils import utcnow
from voucher_system.vouchers.events import VoucherEvent, VoucherEventBus
from voucher_system.vouchers.exceptions import (
    VoucherError, NotFoundError, ForbiddenError, ExpiredError,
    AlreadyUsedError, VoucherCancelledError, NotYetValidError, ConflictError
)
from voucher_system.vouchers.schemas import VoucherStatus, UsageAction, RequestMeta

logger = logging.getLogger(__name__)

REDEEM_ROLES = (UserRole.MASTER, UserRole.EMPLOYEE)


class VoucherStateMachine:
    """Applies voucher status transitions.

    ``active`` is the only state with outgoing transitions; ``used``,
    ``cancelled`` and ``expired`` are terminal. Each transition is a
    conditional UPDATE that only matches while the row is still ``active``,
    so two concurrent scans cannot both redeem the same voucher.
    """

    def __init__(
        self,
        db: Session,
        events: Optional[VoucherEventBus] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.db = db
        self.events = events
        self.clock = clock or utcnow

    def get_voucher(self, voucher_id: str) -> Voucher:
        """Get voucher by ID or raise NotFound"""
        voucher = self.db.query(Voucher).filter(Voucher.id == voucher_id).first()
        if not voucher:
            raise NotFoundError("Voucher not found")
        return voucher

    def expire_if_lapsed(self, voucher: Voucher) -> Voucher:
        """Expire an active voucher whose window has closed (lazy expiration)"""
        if voucher.status == VoucherStatus.ACTIVE.value and self.clock() > voucher.valid_until:
            self.expire(voucher)
        return voucher

    def expire(self, voucher: Voucher) -> bool:
        """Move an active, lapsed voucher to expired. Returns False if it was not eligible."""
        now = self.clock()
        if now <= voucher.valid_until:
            return False

        expired = self._compare_and_set(
            voucher.id,
            {"status": VoucherStatus.EXPIRED.value, "expired_at": now, "updated_at": now},
            lapsed_before=now
        )
        self.db.refresh(voucher)

        if expired:
            logger.info(f"Voucher {voucher.voucher_number} expired (valid until {voucher.valid_until.isoformat()})")
        return expired

    def redeem(
        self,
        voucher_id: str,
        actor: Identity,
        usage_notes: Optional[str] = None,
        location: Optional[str] = None,
        meta: Optional[RequestMeta] = None
    ) -> Voucher:
        """Mark a voucher as used at the point of service"""

        voucher = None
        try:
            voucher = self.get_voucher(voucher_id)

            if not self._can_redeem(actor, voucher):
                raise ForbiddenError("Voucher does not belong to this partner")

            self._ensure_active(voucher)

            now = self.clock()
            if now < voucher.valid_from:
                raise NotYetValidError(
                    f"Voucher is valid from {voucher.valid_from.strftime('%Y-%m-%d %H:%M')}"
                )

            if now > voucher.valid_until:
                self.expire(voucher)
                raise ExpiredError("Voucher has expired")

            redeemed = self._compare_and_set(voucher.id, {
                "status": VoucherStatus.USED.value,
                "used_at": now,
                "used_by": actor.user_id,
                "updated_at": now
            })
            self.db.refresh(voucher)

            if not redeemed:
                # Lost the race to another writer
                self._ensure_active(voucher)
                raise ConflictError("Voucher could not be redeemed")

        except VoucherError as e:
            self._emit(VoucherEvent.build(
                UsageAction.USED, actor=actor, meta=meta, voucher=voucher,
                success=False,
                metadata={
                    "requested_voucher_id": voucher_id,
                    "error": e.detail,
                    "kind": e.kind,
                    "location": location
                }
            ))
            raise

        self._emit(VoucherEvent.build(
            UsageAction.USED, actor=actor, meta=meta, voucher=voucher,
            metadata={
                "partner_id": voucher.partner_id,
                "usage_notes": usage_notes,
                "location": location
            }
        ))
        return voucher

    def cancel(
        self,
        voucher_id: str,
        actor: Identity,
        reason: str,
        meta: Optional[RequestMeta] = None,
        extra_metadata: Optional[Dict[str, Any]] = None
    ) -> Voucher:
        """Cancel an active voucher"""

        voucher = self.get_voucher(voucher_id)

        if not self._can_cancel(actor, voucher):
            raise ForbiddenError("Not allowed to cancel this voucher")

        self.ensure_open(voucher)
        self.mark_cancelled(voucher, actor, reason)
        self.announce_cancelled(voucher, actor, reason, meta=meta, extra_metadata=extra_metadata)
        return voucher

    def ensure_open(self, voucher: Voucher):
        """Expire the voucher if it lapsed, then raise unless it is still active"""
        self.expire_if_lapsed(voucher)
        self._ensure_active(voucher)

    def mark_cancelled(self, voucher: Voucher, actor: Identity, reason: str, commit: bool = True):
        """Flip an active voucher to cancelled.

        With ``commit=False`` the UPDATE joins the caller's transaction, which
        lets a replacement voucher be written in the same commit.
        """
        now = self.clock()
        cancelled = self._compare_and_set(voucher.id, {
            "status": VoucherStatus.CANCELLED.value,
            "cancelled_at": now,
            "cancelled_by": actor.user_id,
            "cancel_reason": reason,
            "updated_at": now
        }, commit=commit)
        self.db.refresh(voucher)

        if not cancelled:
            self._ensure_active(voucher)
            raise ConflictError("Voucher could not be cancelled")

    def announce_cancelled(
        self,
        voucher: Voucher,
        actor: Identity,
        reason: str,
        meta: Optional[RequestMeta] = None,
        extra_metadata: Optional[Dict[str, Any]] = None
    ):
        metadata = {"reason": reason}
        metadata.update(extra_metadata or {})
        self._emit(VoucherEvent.build(
            UsageAction.CANCELLED, actor=actor, meta=meta, voucher=voucher, metadata=metadata
        ))

    def _compare_and_set(
        self,
        voucher_id: str,
        values: Dict[str, Any],
        lapsed_before: Optional[datetime] = None,
        commit: bool = True
    ) -> bool:
        """UPDATE the row only while it is still active; True if this call won"""
        query = self.db.query(Voucher).filter(
            Voucher.id == voucher_id,
            Voucher.status == VoucherStatus.ACTIVE.value
        )
        if lapsed_before is not None:
            query = query.filter(Voucher.valid_until < lapsed_before)

        try:
            updated = query.update(values, synchronize_session=False)
            if commit:
                self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        return updated == 1

    def _ensure_active(self, voucher: Voucher):
        """Raise the error matching a terminal status"""
        if voucher.status == VoucherStatus.USED.value:
            used_at = voucher.used_at.strftime('%Y-%m-%d %H:%M') if voucher.used_at else "an earlier visit"
            raise AlreadyUsedError(f"Voucher was already used on {used_at}")

        if voucher.status == VoucherStatus.CANCELLED.value:
            raise VoucherCancelledError("Voucher has been cancelled")

        if voucher.status == VoucherStatus.EXPIRED.value:
            raise ExpiredError("Voucher has expired")

    def _can_redeem(self, actor: Identity, voucher: Voucher) -> bool:
        return actor.role in REDEEM_ROLES or actor.owns_partner(voucher.partner_id)

    def _can_cancel(self, actor: Identity, voucher: Voucher) -> bool:
        if actor.role == UserRole.MASTER or actor.owns_partner(voucher.partner_id):
            return True
        customer_email = (voucher.customer_info or {}).get("email")
        return actor.role == UserRole.TRAVELER and actor.matches_email(customer_email)

    def _emit(self, event: VoucherEvent):
        if self.events is not None:
            self.events.emit(event)
