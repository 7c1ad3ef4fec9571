import logging
import threading
from datetime import datetime
from typing import Callable, Dict, Any, List, Optional, Iterable, Tuple

from pydantic import BaseModel, Field

from voucher_system.auth.schemas import Identity
from voucher_system.utils import utcnow
from voucher_system.vouchers.schemas import UsageAction, RequestMeta

logger = logging.getLogger(__name__)


class VoucherEvent(BaseModel):
    """Something that happened to a voucher, published after the fact"""
    action: UsageAction
    voucher_id: Optional[str] = None
    voucher_number: Optional[str] = None
    actor_id: Optional[str] = None
    actor_type: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    success: bool = True
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)

    @classmethod
    def build(
        cls,
        action: UsageAction,
        actor: Optional[Identity] = None,
        meta: Optional[RequestMeta] = None,
        voucher=None,
        **fields
    ) -> "VoucherEvent":
        """Fill actor, client and voucher fields from the usual objects"""
        if voucher is not None:
            fields.setdefault("voucher_id", voucher.id)
            fields.setdefault("voucher_number", voucher.voucher_number)
        if actor is not None:
            fields.setdefault("actor_id", actor.user_id)
            fields.setdefault("actor_type", actor.role.value)
        else:
            fields.setdefault("actor_type", "anonymous")
        if meta is not None:
            fields.setdefault("ip_address", meta.ip_address)
            fields.setdefault("user_agent", meta.user_agent)
        return cls(action=action, **fields)


EventHandler = Callable[[VoucherEvent], None]


class VoucherEventBus:
    """In-process fan-out of voucher events.

    Handlers run synchronously after the originating transaction has been
    committed. A failing handler is logged and skipped: it can neither undo
    the action nor change what the caller gets back.
    """

    def __init__(self):
        self._handlers: List[Tuple[EventHandler, Optional[frozenset]]] = []
        self._lock = threading.Lock()

    def subscribe(self, handler: EventHandler, actions: Optional[Iterable[UsageAction]] = None):
        with self._lock:
            self._handlers.append((handler, frozenset(actions) if actions else None))

    def emit(self, event: VoucherEvent) -> None:
        with self._lock:
            handlers = list(self._handlers)

        for handler, actions in handlers:
            if actions is not None and event.action not in actions:
                continue
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Voucher event handler %r failed for %s on %s",
                    handler, event.action.value, event.voucher_number or event.voucher_id
                )
