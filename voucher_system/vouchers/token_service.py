import base64
import binascii
import hashlib
import hmac
import json
from datetime import datetime, timedelta
from typing import Callable, Dict, Any, Optional

from voucher_system.utils import utcnow, to_unix_millis
from voucher_system.vouchers.exceptions import ExpiredError, InvalidTokenError
from voucher_system.vouchers.schemas import TokenClaims
from voucher_system.vouchers.utils import QR_TYPE

SUPPORTED_VERSIONS = ("1.0",)
CURRENT_VERSION = "1.0"
REQUIRED_FIELDS = ("v", "t", "n", "exp", "iat", "pid", "sid", "sig")


class VoucherTokenService:
    """Signs and verifies the short-lived tokens carried in voucher QR codes.

    A token is ``base64(JSON{v, t, n, exp, iat, pid, sid, sig})`` where ``sig``
    is an HMAC-SHA256 over every other field, serialized as compact JSON with
    sorted keys. The service holds no state besides its secret, so one
    instance can be shared between threads.
    """

    def __init__(
        self,
        secret: str,
        ttl_hours: int = 24,
        clock: Optional[Callable[[], datetime]] = None
    ):
        if not secret:
            raise ValueError("A voucher signing secret is required")
        self._secret = secret.encode()
        self.ttl = timedelta(hours=ttl_hours)
        self.clock = clock or utcnow

    def sign(
        self,
        voucher_number: str,
        partner_id: str,
        system_id: str,
        expires_at: Optional[datetime] = None
    ) -> str:
        """Build a signed token and encode it for QR transport"""

        now = self.clock()
        expiry = expires_at or (now + self.ttl)

        payload = {
            "v": CURRENT_VERSION,
            "t": QR_TYPE,
            "n": voucher_number,
            "exp": to_unix_millis(expiry),
            "iat": to_unix_millis(now),
            "pid": partner_id,
            "sid": system_id,
        }
        payload["sig"] = self._signature(payload)

        json_data = json.dumps(payload, separators=(',', ':'))
        return base64.b64encode(json_data.encode()).decode()

    def verify(self, qr_content: str) -> TokenClaims:
        """Decode a token and check structure, version, expiry and signature"""

        try:
            decoded = base64.b64decode(qr_content.strip(), validate=True)
            token_data = json.loads(decoded.decode("utf-8"))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            raise InvalidTokenError("QR code is malformed or corrupted")

        if not isinstance(token_data, dict):
            raise InvalidTokenError("QR code is malformed or corrupted")

        missing = [field for field in REQUIRED_FIELDS if token_data.get(field) in (None, "")]
        if missing:
            raise InvalidTokenError(f"Token is missing fields: {', '.join(missing)}")

        if token_data["v"] not in SUPPORTED_VERSIONS:
            raise InvalidTokenError(f"Unsupported token version: {token_data['v']}")

        if token_data["t"] != QR_TYPE:
            raise InvalidTokenError(f"Unsupported token type: {token_data['t']}")

        if not isinstance(token_data["exp"], int) or not isinstance(token_data["iat"], int):
            raise InvalidTokenError("Token timestamps are malformed")

        if to_unix_millis(self.clock()) > token_data["exp"]:
            raise ExpiredError("Verification token has expired")

        # Tampering check over everything except the signature itself
        unsigned = {key: value for key, value in token_data.items() if key != "sig"}
        expected = self._signature(unsigned)
        if not isinstance(token_data["sig"], str) or not hmac.compare_digest(expected, token_data["sig"]):
            raise InvalidTokenError("Token signature is invalid")

        return TokenClaims(
            version=token_data["v"],
            type=token_data["t"],
            voucher_number=str(token_data["n"]),
            issued_at=token_data["iat"],
            expires_at=token_data["exp"],
            partner_id=str(token_data["pid"]),
            system_id=str(token_data["sid"]),
            signature=token_data["sig"]
        )

    def _signature(self, payload: Dict[str, Any]) -> str:
        canonical = json.dumps(payload, separators=(',', ':'), sort_keys=True)
        digest = hmac.new(self._secret, canonical.encode(), hashlib.sha256).digest()
        return base64.urlsafe_b64encode(digest).decode().rstrip("=")
