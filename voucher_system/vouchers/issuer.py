import logging
from datetime import datetime
from typing import Callable, Dict, Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from voucher_system.auth.schemas import Identity, UserRole
from voucher_system.models import Voucher
from voucher_system.utils import utcnow
from voucher_system.vouchers.events import VoucherEvent, VoucherEventBus
from voucher_system.vouchers.exceptions import ConflictError, ForbiddenError
from voucher_system.vouchers.schemas import (
    VoucherIssueRequest, VoucherStatus, UsageAction, RequestMeta
)
from voucher_system.vouchers.state_machine import VoucherStateMachine
from voucher_system.vouchers.utils import generate_voucher_number, build_qr_code_data
from voucher_system.vouchers.validity import calculate_validity_window

logger = logging.getLogger(__name__)


class VoucherIssuer:
    """Creates vouchers for confirmed bookings"""

    def __init__(
        self,
        db: Session,
        events: Optional[VoucherEventBus] = None,
        clock: Optional[Callable[[], datetime]] = None,
        max_number_attempts: int = 10
    ):
        self.db = db
        self.events = events
        self.clock = clock or utcnow
        self.max_number_attempts = max_number_attempts

    def issue(
        self,
        request: VoucherIssueRequest,
        actor: Optional[Identity] = None,
        meta: Optional[RequestMeta] = None
    ) -> Voucher:
        """Issue a voucher from a booking snapshot.

        ``actor`` is None when the booking subsystem issues on confirmation;
        otherwise only staff or the owning partner may issue.
        """

        if actor is not None and not self._can_issue(actor, request.partner_id):
            raise ForbiddenError("Not allowed to issue vouchers for this partner")

        if self.get_open_voucher(request.booking_id, request.booking_type.value):
            raise ConflictError("A voucher already exists for this booking")

        now = self.clock()
        valid_from, valid_until = calculate_validity_window(
            request.booking_type, request.booking_details, now
        )

        voucher = self._insert_with_unique_number({
            "booking_id": request.booking_id,
            "booking_type": request.booking_type.value,
            "partner_id": request.partner_id,
            "customer_id": request.customer_id,
            "confirmation_code": request.confirmation_code,
            "customer_info": request.customer_info.model_dump(mode="json"),
            "asset_info": request.asset_info.model_dump(mode="json"),
            "partner_info": request.partner_info.model_dump(mode="json") if request.partner_info else {},
            "booking_details": request.booking_details.model_dump(mode="json"),
            "valid_from": valid_from,
            "valid_until": valid_until,
        })

        logger.info(f"Issued voucher {voucher.voucher_number} for {voucher.booking_type} booking {voucher.booking_id}")

        self._emit(VoucherEvent.build(
            UsageAction.GENERATED, actor=actor, meta=meta, voucher=voucher,
            actor_type=actor.role.value if actor else "system",
            metadata={
                "booking_id": voucher.booking_id,
                "booking_type": voucher.booking_type,
                "generated_by": actor.user_id if actor else "system"
            }
        ))
        return voucher

    def regenerate(
        self,
        voucher_id: str,
        actor: Identity,
        reason: str,
        meta: Optional[RequestMeta] = None
    ) -> Voucher:
        """Cancel a voucher and issue a replacement with the same snapshot.

        The cancellation and the replacement are committed together; if no
        replacement can be written the original stays active.
        """

        state_machine = VoucherStateMachine(self.db, events=self.events, clock=self.clock)
        original = state_machine.get_voucher(voucher_id)

        if not (actor.role == UserRole.MASTER or actor.owns_partner(original.partner_id)):
            raise ForbiddenError("Not allowed to regenerate this voucher")

        state_machine.ensure_open(original)

        cancel_reason = f"Regenerated: {reason}"
        fields = {
            "booking_id": original.booking_id,
            "booking_type": original.booking_type,
            "partner_id": original.partner_id,
            "customer_id": original.customer_id,
            "confirmation_code": original.confirmation_code,
            "customer_info": dict(original.customer_info or {}),
            "asset_info": dict(original.asset_info or {}),
            "partner_info": dict(original.partner_info or {}),
            "booking_details": dict(original.booking_details or {}),
            "valid_from": original.valid_from,
            "valid_until": original.valid_until,
            "regenerated_from_id": original.id,
        }

        replacement = self._insert_with_unique_number(
            fields,
            before_insert=lambda: state_machine.mark_cancelled(original, actor, cancel_reason, commit=False)
        )
        self.db.refresh(original)

        logger.info(f"Voucher {original.voucher_number} regenerated as {replacement.voucher_number}")

        state_machine.announce_cancelled(
            original, actor, cancel_reason, meta=meta, extra_metadata={"regenerated": True}
        )
        self._emit(VoucherEvent.build(
            UsageAction.GENERATED, actor=actor, meta=meta, voucher=replacement,
            metadata={
                "regenerated": True,
                "original_voucher_id": original.id,
                "reason": reason,
                "generated_by": actor.user_id
            }
        ))
        return replacement

    def get_open_voucher(self, booking_id: str, booking_type: str) -> Optional[Voucher]:
        """Get the non-cancelled voucher for a booking, if any"""
        return self.db.query(Voucher).filter(
            Voucher.booking_id == booking_id,
            Voucher.booking_type == booking_type,
            Voucher.status != VoucherStatus.CANCELLED.value
        ).first()

    def _insert_with_unique_number(
        self,
        fields: Dict[str, Any],
        before_insert: Optional[Callable[[], None]] = None
    ) -> Voucher:
        """Persist a new active voucher, retrying when the number is taken.

        ``before_insert`` runs inside the same transaction as the INSERT and
        is rolled back with it.
        """

        for attempt in range(1, self.max_number_attempts + 1):
            now = self.clock()
            voucher_number = generate_voucher_number(now)

            if self._number_taken(voucher_number):
                logger.debug(f"Voucher number {voucher_number} taken (attempt {attempt})")
                continue

            voucher = Voucher(
                voucher_number=voucher_number,
                qr_code=build_qr_code_data(voucher_number),
                status=VoucherStatus.ACTIVE.value,
                generated_at=now,
                created_at=now,
                updated_at=now,
                **fields
            )

            try:
                if before_insert is not None:
                    before_insert()
                self.db.add(voucher)
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                if self._number_taken(voucher_number):
                    logger.debug(f"Voucher number {voucher_number} taken concurrently (attempt {attempt})")
                    continue
                raise ConflictError("A voucher already exists for this booking")
            except Exception:
                self.db.rollback()
                raise

            self.db.refresh(voucher)
            return voucher

        raise ConflictError("Could not allocate a unique voucher number")

    def _number_taken(self, voucher_number: str) -> bool:
        return self.db.query(Voucher.id).filter(Voucher.voucher_number == voucher_number).first() is not None

    def _can_issue(self, actor: Identity, partner_id: str) -> bool:
        return actor.is_staff or actor.owns_partner(partner_id)

    def _emit(self, event: VoucherEvent):
        if self.events is not None:
            self.events.emit(event)
