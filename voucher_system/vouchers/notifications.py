import logging
from typing import Protocol

from voucher_system.vouchers.events import VoucherEvent
from voucher_system.vouchers.schemas import UsageAction

logger = logging.getLogger(__name__)

NOTIFY_ACTIONS = (UsageAction.GENERATED, UsageAction.USED, UsageAction.CANCELLED)


class NotificationSink(Protocol):
    def notify(self, event: VoucherEvent) -> None:
        ...


class LoggingNotificationSink:
    """Default sink until a delivery channel is configured"""

    def notify(self, event: VoucherEvent) -> None:
        logger.info(
            "Voucher %s %s (actor=%s)",
            event.voucher_number, event.action.value, event.actor_id or "system"
        )


class NotificationDispatcher:
    """Forwards lifecycle events to the notification collaborator"""

    def __init__(self, sink: NotificationSink):
        self.sink = sink

    def __call__(self, event: VoucherEvent) -> None:
        if event.action not in NOTIFY_ACTIONS or not event.success:
            return
        self.sink.notify(event)
