from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional, Dict, Literal, Union, Any, Annotated
from datetime import datetime
from enum import Enum

from voucher_system.utils import from_unix_millis

class BookingType(str, Enum):
    """Booking categories a voucher can be issued for"""
    ACTIVITY = "activity"
    EVENT = "event"
    RESTAURANT = "restaurant"
    VEHICLE = "vehicle"
    ACCOMMODATION = "accommodation"
    PACKAGE = "package"

class VoucherStatus(str, Enum):
    """Voucher status enumeration"""
    ACTIVE = "active"
    USED = "used"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

class UsageAction(str, Enum):
    """Actions recorded in the usage log"""
    GENERATED = "generated"
    EMAILED = "emailed"
    DOWNLOADED = "downloaded"
    SCANNED = "scanned"
    USED = "used"
    CANCELLED = "cancelled"
    LOOKED_UP = "looked_up"

# Booking detail variants, one per booking type
class ActivityDetails(BaseModel):
    booking_type: Literal["activity"] = "activity"
    activity_date: datetime
    participants: int = Field(1, ge=1)
    ticket_name: Optional[str] = None

class EventDetails(BaseModel):
    booking_type: Literal["event"] = "event"
    event_date: datetime
    ticket_quantity: int = Field(1, ge=1)
    ticket_type: Optional[str] = None

class RestaurantDetails(BaseModel):
    booking_type: Literal["restaurant"] = "restaurant"
    reservation_at: datetime
    party_size: int = Field(1, ge=1)
    table_name: Optional[str] = None

class VehicleDetails(BaseModel):
    booking_type: Literal["vehicle"] = "vehicle"
    start_at: datetime
    end_at: datetime
    pickup_location: Optional[str] = None

class AccommodationDetails(BaseModel):
    booking_type: Literal["accommodation"] = "accommodation"
    check_in: datetime
    check_out: datetime
    guests: int = Field(1, ge=1)

class PackageDetails(BaseModel):
    booking_type: Literal["package"] = "package"
    start_at: datetime
    end_at: datetime
    travelers: int = Field(1, ge=1)

BookingDetails = Annotated[
    Union[
        ActivityDetails, EventDetails, RestaurantDetails,
        VehicleDetails, AccommodationDetails, PackageDetails
    ],
    Field(discriminator="booking_type")
]

# Snapshots copied from the booking at issuance
class CustomerInfo(BaseModel):
    name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    phone: Optional[str] = None

class AssetInfo(BaseModel):
    asset_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    address: Optional[str] = None
    description: Optional[str] = None

class PartnerInfo(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

# Request Models
class VoucherIssueRequest(BaseModel):
    """Request from the booking subsystem to issue a voucher"""
    booking_id: str = Field(..., min_length=1)
    booking_type: BookingType
    booking_details: BookingDetails
    partner_id: str = Field(..., min_length=1)
    customer_id: Optional[str] = None
    confirmation_code: str = Field(..., min_length=1)
    customer_info: CustomerInfo
    asset_info: AssetInfo
    partner_info: Optional[PartnerInfo] = None

class VoucherRedeemRequest(BaseModel):
    usage_notes: Optional[str] = None
    location: Optional[str] = None

class VoucherCancelRequest(BaseModel):
    reason: str = Field(..., min_length=1)

class VoucherRegenerateRequest(BaseModel):
    reason: str = Field(..., min_length=1)

class VoucherVerifyRequest(BaseModel):
    qr_content: str = Field(..., min_length=1)

class VoucherEmailSentRequest(BaseModel):
    email_address: str = Field(..., min_length=3)

class RequestMeta(BaseModel):
    """Client details attached to usage log entries"""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

# Response Models
class VoucherSummary(BaseModel):
    """Voucher row for listings"""
    model_config = ConfigDict(from_attributes=True)

    id: str
    voucher_number: str
    booking_id: str
    booking_type: BookingType
    status: VoucherStatus
    confirmation_code: str
    customer_info: CustomerInfo
    asset_info: AssetInfo
    valid_from: datetime
    valid_until: datetime
    generated_at: datetime
    used_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

class VoucherView(VoucherSummary):
    """Assembled voucher with partner, asset and booking snapshot"""
    partner_id: str
    customer_id: Optional[str] = None
    partner_info: Optional[PartnerInfo] = None
    booking_details: BookingDetails
    qr_code: str
    used_by: Optional[str] = None
    cancel_reason: Optional[str] = None
    expired_at: Optional[datetime] = None
    scan_count: int = 0
    download_count: int = 0
    email_sent: bool = False

class VoucherIssueResponse(BaseModel):
    voucher_id: str
    voucher_number: str
    qr_code: str
    valid_from: datetime
    valid_until: datetime

class VerificationInfo(BaseModel):
    verified_at: datetime
    token_valid: bool
    partner_verified: bool
    can_use: bool

class VoucherVerificationResponse(BaseModel):
    """Result of a QR scan or manual lookup"""
    success: bool = True
    voucher: VoucherView
    verification: VerificationInfo

class VoucherTokenResponse(BaseModel):
    voucher_number: str
    qr_content: str
    expires_at: datetime

class TokenClaims(BaseModel):
    """Decoded verification token"""
    version: str
    type: str
    voucher_number: str
    issued_at: int  # unix millis
    expires_at: int  # unix millis
    partner_id: str
    system_id: str
    signature: str

    @property
    def expires_at_datetime(self) -> datetime:
        return from_unix_millis(self.expires_at)

class UsageLogEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: int
    voucher_id: Optional[str] = None
    voucher_number: Optional[str] = None
    action: UsageAction
    actor_id: Optional[str] = None
    actor_type: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    success: bool
    metadata: Dict[str, Any] = Field(default_factory=dict, validation_alias="details")
    timestamp: datetime

class UsageLogPage(BaseModel):
    logs: List[UsageLogEntry]
    total: int
    has_more: bool

class VoucherPage(BaseModel):
    vouchers: List[VoucherSummary]
    total: int
    has_more: bool

class VoucherStats(BaseModel):
    """Voucher statistics for a partner dashboard"""
    partner_id: str
    total: int
    by_status: Dict[str, int]
    by_booking_type: Dict[str, int]
    total_scans: int
    total_downloads: int

class VoucherDocument(BaseModel):
    voucher_id: str
    document_ref: str
    filename: str
    rendered: bool

# Expiration sweep
class SweepError(BaseModel):
    voucher_id: str
    error: str

class SweepResult(BaseModel):
    expired_count: int = 0
    errors: List[SweepError] = []
    started_at: datetime
    finished_at: Optional[datetime] = None
