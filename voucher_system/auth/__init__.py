"""
Identity Module

The voucher service never authenticates users itself. Callers present a bearer
token minted by the identity provider; this module decodes it into an
``Identity`` (user id, role, email, partner) that the voucher services use for
authorization decisions.
"""

from .schemas import Identity, UserRole
from .dependencies import get_current_identity, get_optional_identity

__all__ = [
    "Identity",
    "UserRole",
    "get_current_identity",
    "get_optional_identity",
]
