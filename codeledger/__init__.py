"""
Coupon & Access Code Ledger

This package provides:
- Referral coupons, one per identity, with one-time cross-user redemption
- Role matching and follower thresholds shared by issuance and redemption
- Quota- and expiry-limited access codes for beta gating
- Pluggable stores (in-memory, MongoDB) with atomic conditional writes
"""

from .models import (
    Role,
    Coupon,
    AccessCode,
    RedemptionResult,
)
from .errors import ErrorKind, DenialReason, ServiceError
from .coupon_service import CouponService
from .access_code_service import AccessCodeService
from .storage import InMemoryStorage

__all__ = [
    "Role",
    "Coupon",
    "AccessCode",
    "RedemptionResult",
    "ErrorKind",
    "DenialReason",
    "ServiceError",
    "CouponService",
    "AccessCodeService",
    "InMemoryStorage",
]
