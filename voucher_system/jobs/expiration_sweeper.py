import logging
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from voucher_system.models import Voucher
from voucher_system.utils import utcnow
from voucher_system.vouchers.events import VoucherEventBus
from voucher_system.vouchers.schemas import VoucherStatus, VoucherView, SweepError, SweepResult
from voucher_system.vouchers.state_machine import VoucherStateMachine

logger = logging.getLogger(__name__)


class VoucherExpirationSweeper:
    """Moves every active voucher past its ``valid_until`` to expired.

    Each voucher is loaded, validated and expired in a session of its own,
    so one corrupted row is reported in ``errors`` without stopping the
    rest of the batch. Running the sweep twice is harmless: the second run
    finds nothing left to expire.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        events: Optional[VoucherEventBus] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.session_factory = session_factory
        self.events = events
        self.clock = clock or utcnow

    def run(self) -> SweepResult:
        result = SweepResult(started_at=self.clock())

        for voucher_id in self._lapsed_voucher_ids(result.started_at):
            try:
                if self._expire_one(voucher_id):
                    result.expired_count += 1
            except Exception as e:
                logger.warning(f"Could not expire voucher {voucher_id}: {e}")
                result.errors.append(SweepError(voucher_id=voucher_id, error=str(e)))

        result.finished_at = self.clock()
        logger.info(
            f"Expiration sweep finished: {result.expired_count} expired, {len(result.errors)} errors"
        )
        return result

    def _lapsed_voucher_ids(self, now: datetime) -> List[str]:
        db = self.session_factory()
        try:
            rows = db.query(Voucher.id).filter(
                Voucher.status == VoucherStatus.ACTIVE.value,
                Voucher.valid_until < now
            ).order_by(Voucher.valid_until).all()
            return [row.id for row in rows]
        finally:
            db.close()

    def _expire_one(self, voucher_id: str) -> bool:
        db = self.session_factory()
        try:
            state_machine = VoucherStateMachine(db, events=self.events, clock=self.clock)
            voucher = state_machine.get_voucher(voucher_id)

            # Refuse to touch rows whose snapshot no longer parses
            VoucherView.model_validate(voucher)

            return state_machine.expire(voucher)
        finally:
            db.close()


def sweep_expired_vouchers() -> SweepResult:
    """Scheduled entry point using the application's session factory"""
    from voucher_system.database import SessionLocal
    from voucher_system.vouchers.dependencies import get_event_bus

    sweeper = VoucherExpirationSweeper(SessionLocal, events=get_event_bus())
    return sweeper.run()
