from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    INVALID_INPUT = "invalid_input"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    INVALID_STATE = "invalid_state"
    UNAUTHORIZED = "unauthorized"

    @property
    def status_code(self) -> int:
        return _STATUS_CODES[self]


_STATUS_CODES = {
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.CONFLICT: 409,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.INVALID_STATE: 400,
    ErrorKind.UNAUTHORIZED: 401,
}


class DenialReason(str, Enum):
    SELF_REDEMPTION = "self_redemption"
    ALREADY_REDEEMED = "already_redeemed"
    ROLE_MISMATCH = "role_mismatch"
    MISSING_NEW_USER_INFO = "missing_new_user_info"
    BELOW_FOLLOWER_THRESHOLD = "below_follower_threshold"
    EXPIRED = "expired"
    INACTIVE = "inactive"
    QUOTA_EXHAUSTED = "quota_exhausted"
    ALREADY_USED = "already_used"


DENIAL_MESSAGES = {
    DenialReason.SELF_REDEMPTION: "Cannot redeem your own coupon",
    DenialReason.ALREADY_REDEEMED: (
        "You have already redeemed a coupon before. Each user can only redeem one coupon."
    ),
    DenialReason.ROLE_MISMATCH: "Creator and redeemer must have the same role",
    DenialReason.MISSING_NEW_USER_INFO: "Display name and follower count are required for new users",
    DenialReason.BELOW_FOLLOWER_THRESHOLD: "Minimum 1000 followers required",
    DenialReason.EXPIRED: "Access code has expired",
    DenialReason.INACTIVE: "Access code is inactive",
    DenialReason.QUOTA_EXHAUSTED: "Access code has reached maximum usage limit",
    DenialReason.ALREADY_USED: "You have already used this access code",
}


class ServiceError(Exception):
    """Business failure raised by the ledgers.

    ``kind`` selects the transport status; ``reason`` narrows down why a
    redemption or validation was refused.
    """

    def __init__(self, kind: ErrorKind, message: str, reason: Optional[DenialReason] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.reason = reason

    @classmethod
    def denied(cls, reason: DenialReason, kind: ErrorKind = ErrorKind.FORBIDDEN) -> "ServiceError":
        return cls(kind, DENIAL_MESSAGES[reason], reason)

    @classmethod
    def not_found(cls, message: str) -> "ServiceError":
        return cls(ErrorKind.NOT_FOUND, message)

    @classmethod
    def invalid_input(cls, message: str) -> "ServiceError":
        return cls(ErrorKind.INVALID_INPUT, message)

    def to_dict(self) -> dict:
        return {
            "detail": self.message,
            "kind": self.kind.value,
            "reason": self.reason.value if self.reason else None,
        }


class StorageError(Exception):
    pass


class DuplicateKeyError(StorageError):
    def __init__(self, field: str, value=None):
        super().__init__(f"Duplicate value for {field}: {value}")
        self.field = field
        self.value = value


class WriteConflictError(StorageError):
    """A conditional write found the document no longer matching its guard."""
