import base64
import json
import re
import secrets
from datetime import datetime
from typing import Optional

from voucher_system.utils import utcnow

VOUCHER_NUMBER_PATTERN = re.compile(r"^VCH-\d{8}-\d{4}$")
QR_VERSION = "1.0"
QR_TYPE = "voucher"


def generate_voucher_number(date: Optional[datetime] = None) -> str:
    """Generate a voucher number in the form VCH-YYYYMMDD-NNNN"""
    voucher_date = date or utcnow()
    suffix = secrets.randbelow(10000)
    return f"VCH-{voucher_date.strftime('%Y%m%d')}-{suffix:04d}"


def is_valid_voucher_number(voucher_number: str) -> bool:
    return bool(VOUCHER_NUMBER_PATTERN.match(voucher_number or ""))


def format_voucher_number(voucher_number: str) -> str:
    """Restore hyphens on a number typed without them"""
    compact = voucher_number.strip().upper()
    if len(compact) == 15 and "-" not in compact:
        return f"{compact[:3]}-{compact[3:11]}-{compact[11:]}"
    return compact


def build_qr_code_data(voucher_number: str) -> str:
    """Identifying payload printed on the voucher document"""
    qr_data = {"v": QR_VERSION, "t": QR_TYPE, "n": voucher_number}
    json_data = json.dumps(qr_data, separators=(',', ':'))
    return base64.b64encode(json_data.encode()).decode()


def generate_voucher_filename(voucher_number: str, asset_name: Optional[str] = None) -> str:
    """Filename for the downloadable voucher document"""
    sanitized = re.sub(r"[^a-zA-Z0-9\-_]", "_", asset_name)[:30] if asset_name else "voucher"
    return f"{sanitized}_{voucher_number}.pdf"
