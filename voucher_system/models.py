import uuid

from sqlalchemy import Column, Integer, BigInteger, String, Boolean, DateTime, Text, ForeignKey, JSON, Index, text
from sqlalchemy.orm import relationship

from voucher_system.database import Base
from voucher_system.utils import utcnow

# BIGINT primary keys do not autoincrement on SQLite
BigIntegerPK = BigInteger().with_variant(Integer, "sqlite")


def _new_id() -> str:
    return str(uuid.uuid4())

# ================================
# Vouchers
# ================================
class Voucher(Base):
    __tablename__ = "vouchers"
    
    id = Column(String(36), primary_key=True, default=_new_id)
    voucher_number = Column(String(32), unique=True, nullable=False, index=True)
    booking_id = Column(String(64), nullable=False, index=True)
    booking_type = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default="active", index=True)
    
    # Snapshot taken at issuance
    partner_id = Column(String(64), nullable=False, index=True)
    customer_id = Column(String(64), index=True)
    confirmation_code = Column(String(64), nullable=False, index=True)
    customer_info = Column(JSON, nullable=False, default=dict)
    asset_info = Column(JSON, nullable=False, default=dict)
    partner_info = Column(JSON, default=dict)
    booking_details = Column(JSON, nullable=False, default=dict)
    qr_code = Column(Text, nullable=False)
    
    # Redemption window
    valid_from = Column(DateTime, nullable=False)
    valid_until = Column(DateTime, nullable=False, index=True)
    
    # Lifecycle
    generated_at = Column(DateTime, nullable=False, default=utcnow)
    used_at = Column(DateTime)
    used_by = Column(String(64))
    cancelled_at = Column(DateTime)
    cancelled_by = Column(String(64))
    cancel_reason = Column(Text)
    expired_at = Column(DateTime)
    regenerated_from_id = Column(String(36), ForeignKey("vouchers.id"))
    
    # Delivery bookkeeping
    scan_count = Column(Integer, nullable=False, default=0)
    last_scanned_at = Column(DateTime)
    download_count = Column(Integer, nullable=False, default=0)
    email_sent = Column(Boolean, nullable=False, default=False)
    email_sent_at = Column(DateTime)
    document_ref = Column(String(255))
    
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    
    # Relationships
    usage_logs = relationship("VoucherUsageLog", back_populates="voucher")
    
    __table_args__ = (
        # At most one non-cancelled voucher per booking
        Index(
            "uq_vouchers_open_booking",
            "booking_id",
            "booking_type",
            unique=True,
            sqlite_where=text("status != 'cancelled'"),
            postgresql_where=text("status != 'cancelled'"),
        ),
        Index("ix_vouchers_status_valid_until", "status", "valid_until"),
    )

class VoucherUsageLog(Base):
    __tablename__ = "voucher_usage_logs"
    
    id = Column(BigIntegerPK, primary_key=True, autoincrement=True)
    voucher_id = Column(String(36), ForeignKey("vouchers.id"), index=True)
    voucher_number = Column(String(32), index=True)
    action = Column(String(20), nullable=False, index=True)
    actor_id = Column(String(64))
    actor_type = Column(String(20))
    ip_address = Column(String(45))
    user_agent = Column(Text)
    success = Column(Boolean, nullable=False, default=True, index=True)
    details = Column("metadata", JSON, default=dict)
    timestamp = Column(DateTime, nullable=False, default=utcnow, index=True)
    
    # Relationships
    voucher = relationship("Voucher", back_populates="usage_logs")
