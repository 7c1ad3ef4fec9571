import logging
import os
from datetime import datetime
from io import BytesIO
from typing import Callable, Optional, Protocol

import qrcode
from qrcode import constants
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.platypus import SimpleDocTemplate, Table, TableStyle, Paragraph, Spacer, Image
from sqlalchemy.orm import Session

from voucher_system.auth.schemas import Identity
from voucher_system.models import Voucher
from voucher_system.utils import utcnow
from voucher_system.vouchers.events import VoucherEvent, VoucherEventBus
from voucher_system.vouchers.exceptions import ForbiddenError
from voucher_system.vouchers.lookup_service import can_view_voucher
from voucher_system.vouchers.schemas import (
    VoucherView, VoucherDocument, UsageAction, RequestMeta
)
from voucher_system.vouchers.state_machine import VoucherStateMachine
from voucher_system.vouchers.utils import generate_voucher_filename

logger = logging.getLogger(__name__)


class DocumentRenderer(Protocol):
    def render(self, voucher: VoucherView) -> bytes:
        ...


class DocumentStorage(Protocol):
    def store(self, name: str, data: bytes) -> str:
        ...

    def exists(self, ref: str) -> bool:
        ...

    def path(self, ref: str) -> str:
        ...


class LocalDocumentStorage:
    """Keeps rendered documents on the local filesystem"""

    def __init__(self, directory: str):
        self.directory = directory
        os.makedirs(self.directory, exist_ok=True)

    def store(self, name: str, data: bytes) -> str:
        file_path = os.path.join(self.directory, os.path.basename(name))
        with open(file_path, "wb") as f:
            f.write(data)
        return file_path

    def exists(self, ref: str) -> bool:
        return bool(ref) and os.path.exists(ref)

    def path(self, ref: str) -> str:
        return ref


class PdfVoucherRenderer:
    """Single page PDF voucher with the scannable QR code"""

    def __init__(self, title: str = "Booking Voucher", qr_size: int = 180):
        self.title = title
        self.qr_size = qr_size

    def render(self, voucher: VoucherView) -> bytes:
        buffer = BytesIO()
        doc = SimpleDocTemplate(buffer, pagesize=A4)
        styles = getSampleStyleSheet()
        story = []

        story.append(Paragraph(self.title, styles['Title']))
        story.append(Spacer(1, 20))

        story.append(Paragraph(f"Voucher {voucher.voucher_number}", styles['Heading2']))
        story.append(Spacer(1, 10))

        story.append(Image(self._qr_png(voucher.qr_code), width=self.qr_size, height=self.qr_size))
        story.append(Spacer(1, 10))

        # Guest and booking info
        booking_info = [
            ["Guest:", voucher.customer_info.name],
            ["Email:", voucher.customer_info.email],
            ["Booking:", voucher.booking_type.value.title()],
            ["Confirmation:", voucher.confirmation_code],
            ["Status:", voucher.status.value.title()]
        ]
        story.append(self._table(booking_info, colors.lightgrey))
        story.append(Spacer(1, 10))

        asset_info = [["Venue:", voucher.asset_info.name]]
        if voucher.asset_info.address:
            asset_info.append(["Address:", voucher.asset_info.address])
        if voucher.partner_info and voucher.partner_info.name:
            asset_info.append(["Provider:", voucher.partner_info.name])
        if voucher.partner_info and voucher.partner_info.phone:
            asset_info.append(["Contact:", voucher.partner_info.phone])
        story.append(self._table(asset_info, colors.lightblue))
        story.append(Spacer(1, 10))

        validity_info = Paragraph(
            f"Valid from {voucher.valid_from.strftime('%Y-%m-%d %H:%M')} "
            f"to {voucher.valid_until.strftime('%Y-%m-%d %H:%M')} (UTC)",
            styles['Italic']
        )
        story.append(validity_info)

        doc.build(story)
        return buffer.getvalue()

    def _qr_png(self, data: str) -> BytesIO:
        qr = qrcode.QRCode(
            version=1,
            error_correction=constants.ERROR_CORRECT_M,
            box_size=10,
            border=4,
        )
        qr.add_data(data)
        qr.make(fit=True)

        image = BytesIO()
        qr.make_image(fill_color="black", back_color="white").save(image)
        image.seek(0)
        return image

    def _table(self, rows, background) -> Table:
        table = Table(rows, colWidths=[100, 300])
        table.setStyle(TableStyle([
            ('BACKGROUND', (0, 0), (-1, -1), background),
            ('TEXTCOLOR', (0, 0), (-1, -1), colors.black),
            ('ALIGN', (0, 0), (-1, -1), 'LEFT'),
            ('FONTNAME', (0, 0), (-1, -1), 'Helvetica'),
            ('FONTSIZE', (0, 0), (-1, -1), 10),
            ('BOTTOMPADDING', (0, 0), (-1, -1), 6),
        ]))
        return table


class VoucherDeliveryService:
    """Voucher document downloads and email bookkeeping"""

    def __init__(
        self,
        db: Session,
        renderer: DocumentRenderer,
        storage: DocumentStorage,
        events: Optional[VoucherEventBus] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.db = db
        self.renderer = renderer
        self.storage = storage
        self.events = events
        self.clock = clock or utcnow
        self.state_machine = VoucherStateMachine(db, events=events, clock=self.clock)

    def get_document(
        self,
        voucher_id: str,
        actor: Identity,
        meta: Optional[RequestMeta] = None
    ) -> VoucherDocument:
        """Return the stored document, rendering it on first request"""

        voucher = self.state_machine.get_voucher(voucher_id)
        if not can_view_voucher(actor, voucher):
            raise ForbiddenError("Not allowed to access this voucher")

        self.state_machine.expire_if_lapsed(voucher)

        filename = generate_voucher_filename(
            voucher.voucher_number, (voucher.asset_info or {}).get("name")
        )

        rendered = False
        current_ref = voucher.document_ref
        if not (current_ref and self.storage.exists(current_ref)):
            data = self.renderer.render(VoucherView.model_validate(voucher))
            ref = self.storage.store(filename, data)
            rendered = self._claim_document_ref(voucher, current_ref, ref)
            logger.info(f"Rendered voucher document {filename}")

        try:
            self.db.query(Voucher).filter(Voucher.id == voucher.id).update({
                "download_count": Voucher.download_count + 1
            }, synchronize_session=False)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(voucher)

        self._emit(VoucherEvent.build(
            UsageAction.DOWNLOADED, actor=actor, meta=meta, voucher=voucher,
            metadata={"filename": filename, "rendered": rendered, "download_count": voucher.download_count}
        ))

        return VoucherDocument(
            voucher_id=voucher.id,
            document_ref=voucher.document_ref,
            filename=filename,
            rendered=rendered
        )

    def document_path(self, document: VoucherDocument) -> str:
        return self.storage.path(document.document_ref)

    def record_email_sent(
        self,
        voucher_id: str,
        actor: Identity,
        email_address: str,
        meta: Optional[RequestMeta] = None
    ) -> VoucherView:
        """Mark that the voucher was emailed to the customer"""

        voucher = self.state_machine.get_voucher(voucher_id)
        if not (actor.is_staff or actor.owns_partner(voucher.partner_id)):
            raise ForbiddenError("Not allowed to update this voucher")

        now = self.clock()
        voucher.email_sent = True
        voucher.email_sent_at = now
        voucher.updated_at = now
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(voucher)

        self._emit(VoucherEvent.build(
            UsageAction.EMAILED, actor=actor, meta=meta, voucher=voucher,
            metadata={"email_address": email_address}
        ))
        return VoucherView.model_validate(voucher)

    def _claim_document_ref(self, voucher: Voucher, previous_ref: Optional[str], ref: str) -> bool:
        """Store ref unless a concurrent download already did"""
        query = self.db.query(Voucher).filter(Voucher.id == voucher.id)
        if previous_ref is None:
            query = query.filter(Voucher.document_ref.is_(None))
        else:
            query = query.filter(Voucher.document_ref == previous_ref)

        try:
            claimed = query.update({"document_ref": ref}, synchronize_session=False) == 1
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(voucher)
        return claimed

    def _emit(self, event: VoucherEvent):
        if self.events is not None:
            self.events.emit(event)
