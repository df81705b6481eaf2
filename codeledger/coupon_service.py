import math
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from .codes import generate_coupon_code, normalize_code
from .errors import (
    DenialReason,
    DuplicateKeyError,
    ErrorKind,
    ServiceError,
    WriteConflictError,
)
from .logging_config import get_logger
from .models import (
    Coupon,
    CouponFilter,
    CouponPage,
    CouponStats,
    IssueCouponRequest,
    RedeemCouponRequest,
    RedemptionResult,
    Role,
)
from .policy import REDEMPTION_REWARD_POINTS, meets_follower_threshold, roles_match
from .storage import InMemoryStorage

logger = get_logger(__name__)

MAX_WRITE_ATTEMPTS = 3


class CouponService:
    """Issues coupons and runs the cross-user redemption flow.

    Nothing is cached between calls: every operation reads from the store,
    validates, and hands one guarded write back to it. When the guard no
    longer holds because another request got there first, the flow starts
    over so the caller sees the business error for the new state.
    """

    def __init__(self, storage=None, reward_points: int = REDEMPTION_REWARD_POINTS):
        self.storage = storage if storage is not None else InMemoryStorage()
        self.reward_points = reward_points

    def issue_coupon(self, request: IssueCouponRequest) -> Coupon:
        if not meets_follower_threshold(request.follower_count):
            raise ServiceError.denied(DenialReason.BELOW_FOLLOWER_THRESHOLD, ErrorKind.INVALID_INPUT)

        if self.storage.find_coupon_by_owner(request.owner_id):
            raise ServiceError(ErrorKind.CONFLICT, "User already has a coupon")

        data = self._new_coupon(request.owner_id, request.display_name, request.follower_count, request.role)
        try:
            self.storage.insert_coupon(data)
        except DuplicateKeyError as e:
            logger.warning("coupon_issue_conflict", owner_id=request.owner_id, field=e.field)
            if e.field == "owner_id":
                raise ServiceError(ErrorKind.CONFLICT, "User already has a coupon") from e
            raise ServiceError(ErrorKind.CONFLICT, f"Duplicate {e.field}, please retry") from e

        logger.info("coupon_issued", owner_id=request.owner_id, code=data["code"], role=data["role"])
        return Coupon(**data)

    def get_coupon(self, owner_id: str) -> Coupon:
        data = self.storage.find_coupon_by_owner(owner_id)
        if not data:
            raise ServiceError.not_found("Coupon not found")
        return Coupon(**data)

    def redeem_coupon(self, request: RedeemCouponRequest) -> RedemptionResult:
        coupon_code = normalize_code(request.coupon_code)

        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            target = self.storage.find_coupon_by_code(coupon_code)
            if not target:
                raise ServiceError.not_found("Invalid coupon code")

            new_redeemer = self._check_redemption(target, request)
            try:
                target, redeemer = self.storage.apply_coupon_redemption(
                    coupon_code,
                    request.redeemer_id,
                    self.reward_points,
                    datetime.now(timezone.utc),
                    new_redeemer=new_redeemer,
                )
            except (WriteConflictError, DuplicateKeyError) as e:
                logger.info("coupon_redemption_retry", coupon_code=coupon_code,
                            redeemer_id=request.redeemer_id, attempt=attempt, error=str(e))
                continue

            logger.info(
                "coupon_redeemed",
                coupon_code=coupon_code,
                owner_id=target["owner_id"],
                redeemer_id=request.redeemer_id,
                new_user=new_redeemer is not None,
            )
            if new_redeemer is not None:
                return RedemptionResult(
                    coupon_code=coupon_code,
                    owner_points=target["points"],
                    redeemer_points=redeemer["points"],
                    new_user=True,
                    new_coupon_code=redeemer["code"],
                    message="New coupon created and points awarded",
                )
            return RedemptionResult(
                coupon_code=coupon_code,
                owner_points=target["points"],
                redeemer_points=redeemer["points"],
                message="Coupon redeemed successfully",
            )

        raise ServiceError(ErrorKind.CONFLICT, "Coupon redemption collided with concurrent updates, please retry")

    def list_coupons(self, coupon_filter: Optional[CouponFilter] = None, page: int = 1, limit: int = 20) -> CouponPage:
        if page < 1 or limit < 1:
            raise ServiceError.invalid_input("page and limit must be at least 1")

        items, total = self.storage.find_coupons(coupon_filter or CouponFilter(), (page - 1) * limit, limit)
        return CouponPage(
            items=[Coupon(**c) for c in items],
            total=total,
            page=page,
            pages=math.ceil(total / limit),
            limit=limit,
        )

    def get_stats(self) -> CouponStats:
        stats = self.storage.coupon_stats()
        most_redeemed = stats.pop("most_redeemed")
        return CouponStats(**stats, most_redeemed=Coupon(**most_redeemed) if most_redeemed else None)

    def delete_coupon(self, coupon_id: UUID) -> None:
        if not self.storage.delete_coupon(str(coupon_id)):
            raise ServiceError.not_found("Coupon not found")
        logger.info("coupon_deleted", coupon_id=str(coupon_id))

    def _check_redemption(self, target: dict, request: RedeemCouponRequest) -> Optional[dict]:
        """Apply the redemption rules in order.

        Returns the record to provision when the redeemer has no coupon yet,
        None when the redeemer's existing coupon is used.
        """
        if target["owner_id"] == request.redeemer_id:
            raise ServiceError.denied(DenialReason.SELF_REDEMPTION)

        redeemer = self.storage.find_coupon_by_owner(request.redeemer_id)
        if redeemer and redeemer["has_redeemed_elsewhere"]:
            raise ServiceError.denied(DenialReason.ALREADY_REDEEMED)

        new_redeemer = None
        if not redeemer:
            info = request.new_user
            if info is None:
                raise ServiceError.denied(DenialReason.MISSING_NEW_USER_INFO, ErrorKind.INVALID_INPUT)
            if not meets_follower_threshold(info.follower_count):
                raise ServiceError.denied(DenialReason.BELOW_FOLLOWER_THRESHOLD, ErrorKind.INVALID_INPUT)
            # new redeemers join with the referrer's role
            new_redeemer = self._new_coupon(
                request.redeemer_id, info.display_name, info.follower_count, Role(target["role"])
            )
            redeemer = new_redeemer

        if not roles_match(target["role"], redeemer["role"]):
            raise ServiceError.denied(DenialReason.ROLE_MISMATCH)
        return new_redeemer

    def _new_coupon(self, owner_id: str, display_name: str, follower_count: int, role: Role) -> dict:
        now = datetime.now(timezone.utc)
        return {
            "id": str(uuid4()),
            "code": generate_coupon_code(owner_id),
            "owner_id": owner_id,
            "display_name": display_name,
            "follower_count": follower_count,
            "role": role.value,
            "points": 0,
            "redemption_count": 0,
            "last_redeemed_at": None,
            "has_redeemed_elsewhere": False,
            "redeemed_coupon_code": None,
            "created_at": now,
            "updated_at": now,
        }
