import logging
from typing import Callable

from sqlalchemy.orm import Session

from voucher_system.models import VoucherUsageLog
from voucher_system.vouchers.events import VoucherEvent

logger = logging.getLogger(__name__)


class UsageLogRecorder:
    """Event handler that appends one usage log row per voucher event.

    Writes go through a session of their own so a failed insert never
    touches the transaction that produced the event.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def __call__(self, event: VoucherEvent) -> None:
        db = self.session_factory()
        try:
            db.add(VoucherUsageLog(
                voucher_id=event.voucher_id,
                voucher_number=event.voucher_number,
                action=event.action.value,
                actor_id=event.actor_id,
                actor_type=event.actor_type,
                ip_address=event.ip_address,
                user_agent=event.user_agent,
                success=event.success,
                details=event.metadata,
                timestamp=event.timestamp
            ))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        
        logger.debug("Recorded %s for voucher %s", event.action.value, event.voucher_number)
