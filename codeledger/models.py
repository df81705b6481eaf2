from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict

from .errors import DenialReason


class Role(str, Enum):
    CREATOR = "creator"
    USER = "user"


class Coupon(BaseModel):
    id: UUID
    code: str
    owner_id: str
    display_name: str
    follower_count: int
    role: Role = Role.USER
    points: int = 0
    redemption_count: int = 0
    last_redeemed_at: Optional[datetime] = None
    has_redeemed_elsewhere: bool = False
    redeemed_coupon_code: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AccessCodeUse(BaseModel):
    username: str
    redeemed_at: datetime


class AccessCode(BaseModel):
    id: UUID
    code: str
    description: str = "Beta access code"
    active: bool = True
    max_uses: int
    used_count: int = 0
    expires_at: datetime
    created_by: str
    used_by: list[AccessCodeUse] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class IssueCouponRequest(BaseModel):
    owner_id: str = Field(..., min_length=1, description="External account id of the coupon owner")
    display_name: str = Field(..., min_length=1)
    follower_count: int
    role: Role = Role.USER

    model_config = ConfigDict(str_strip_whitespace=True, json_schema_extra={
        "example": {
            "owner_id": "123456789",
            "display_name": "creator_test",
            "follower_count": 5000,
            "role": "creator"
        }
    })


class NewUserInfo(BaseModel):
    display_name: str = Field(..., min_length=1)
    follower_count: int

    model_config = ConfigDict(str_strip_whitespace=True)


class RedeemCouponRequest(BaseModel):
    redeemer_id: str = Field(..., min_length=1)
    coupon_code: str = Field(..., min_length=1)
    new_user: Optional[NewUserInfo] = Field(
        default=None, description="Required when the redeemer has no coupon yet"
    )

    model_config = ConfigDict(str_strip_whitespace=True, json_schema_extra={
        "example": {
            "redeemer_id": "555666777",
            "coupon_code": "3F9A-01CD",
            "new_user": {"display_name": "new_fan", "follower_count": 2000}
        }
    })


class RedemptionResult(BaseModel):
    coupon_code: str
    owner_points: int
    redeemer_points: int
    new_user: bool = False
    new_coupon_code: Optional[str] = None
    message: str


class CouponFilter(BaseModel):
    role: Optional[Role] = None
    min_followers: Optional[int] = None
    display_name: Optional[str] = None


class CouponPage(BaseModel):
    items: list[Coupon]
    total: int
    page: int
    pages: int
    limit: int


class CouponStats(BaseModel):
    total_coupons: int
    creators: int
    users: int
    total_redemptions: int
    most_redeemed: Optional[Coupon] = None


class CreateAccessCodeRequest(BaseModel):
    description: Optional[str] = None
    max_uses: int
    expiry_days: int

    model_config = ConfigDict(json_schema_extra={
        "example": {"description": "Closed beta wave 1", "max_uses": 50, "expiry_days": 14}
    })


class RedeemAccessCodeRequest(BaseModel):
    code: str = Field(..., min_length=1)
    username: str = Field(..., min_length=1)

    model_config = ConfigDict(str_strip_whitespace=True)


class AccessCodeValidation(BaseModel):
    code: str
    valid: bool
    reason: Optional[DenialReason] = None
    message: str
    description: Optional[str] = None
    expires_at: Optional[datetime] = None
    used_count: Optional[int] = None
    remaining_uses: Optional[int] = None


class AccessCodeRedemption(BaseModel):
    code: str
    username: str
    description: str
    active: bool
    used_count: int
    message: str


class AccessCodeUsage(BaseModel):
    code: str
    description: str
    expires_at: datetime
    created_at: datetime
    is_valid: bool


class UserAccessSummary(BaseModel):
    username: str
    has_used_access_code: bool
    has_valid_access: bool
    used_codes: list[AccessCodeUsage]
    valid_access_code: Optional[str] = None


class AccessCodeFilter(BaseModel):
    active: Optional[bool] = None
    expired: Optional[bool] = None
    code: Optional[str] = None


class AccessCodePage(BaseModel):
    items: list[AccessCode]
    total: int
    page: int
    pages: int
    limit: int


class AccessCodeUsageStats(BaseModel):
    usage_percentage: float
    is_expired: bool
    is_usable: bool
    remaining_uses: int
    days_until_expiry: int


class AccessCodeDetails(BaseModel):
    access_code: AccessCode
    stats: AccessCodeUsageStats


class AccessCodeStats(BaseModel):
    total_access_codes: int
    active_access_codes: int
    expired_access_codes: int
    fully_used_access_codes: int
    total_usages: int
    most_used: Optional[AccessCode] = None


class ToggleResponse(BaseModel):
    code: str
    active: bool
    message: str
