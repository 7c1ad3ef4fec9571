from datetime import datetime
from functools import lru_cache
from typing import Callable

from fastapi import Depends, Request

from voucher_system.config import settings
from voucher_system.database import SessionLocal
from voucher_system.utils import utcnow
from voucher_system.vouchers.document_service import (
    DocumentRenderer, DocumentStorage, LocalDocumentStorage, PdfVoucherRenderer
)
from voucher_system.vouchers.events import VoucherEventBus
from voucher_system.vouchers.notifications import NotificationDispatcher, LoggingNotificationSink
from voucher_system.vouchers.schemas import RequestMeta
from voucher_system.vouchers.token_service import VoucherTokenService
from voucher_system.vouchers.usage_log import UsageLogRecorder


def get_clock() -> Callable[[], datetime]:
    return utcnow


@lru_cache()
def get_event_bus() -> VoucherEventBus:
    """Process-wide event bus with the usage log and notification handlers"""
    bus = VoucherEventBus()
    bus.subscribe(UsageLogRecorder(SessionLocal))
    bus.subscribe(NotificationDispatcher(LoggingNotificationSink()))
    return bus


def get_token_service(clock: Callable[[], datetime] = Depends(get_clock)) -> VoucherTokenService:
    return VoucherTokenService(
        settings.VOUCHER_SECRET,
        ttl_hours=settings.VOUCHER_TOKEN_TTL_HOURS,
        clock=clock
    )


def get_document_renderer() -> DocumentRenderer:
    return PdfVoucherRenderer(title=settings.PROJECT_NAME)


@lru_cache()
def get_document_storage() -> DocumentStorage:
    return LocalDocumentStorage(settings.VOUCHER_DOCUMENT_DIR)


def get_request_meta(request: Request) -> RequestMeta:
    """Client address and user agent for the usage log"""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip_address = forwarded.split(",")[0].strip()
    else:
        ip_address = request.client.host if request.client else None

    return RequestMeta(
        ip_address=ip_address,
        user_agent=request.headers.get("user-agent")
    )
