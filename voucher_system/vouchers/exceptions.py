"""Voucher domain errors.

Every error carries a stable ``kind`` and the HTTP status the API answers
with, so callers can branch on the kind rather than on message text.
"""


class VoucherError(Exception):
    kind = "voucher_error"
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

    def to_dict(self) -> dict:
        return {"kind": self.kind, "detail": self.detail}


class NotFoundError(VoucherError):
    kind = "not_found"
    status_code = 404


class ConflictError(VoucherError):
    kind = "conflict"
    status_code = 409


class AlreadyUsedError(ConflictError):
    pass


class VoucherCancelledError(ConflictError):
    kind = "cancelled"


class NotYetValidError(ConflictError):
    pass


class ForbiddenError(VoucherError):
    kind = "forbidden"
    status_code = 403


class ExpiredError(VoucherError):
    kind = "expired"
    status_code = 410


class InvalidTokenError(VoucherError):
    kind = "invalid_token"
    status_code = 400


class VoucherValidationError(VoucherError):
    kind = "validation_error"
    status_code = 422
