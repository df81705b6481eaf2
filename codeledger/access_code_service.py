import math
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import uuid4

from .codes import generate_access_code, normalize_code
from .errors import (
    DENIAL_MESSAGES,
    DenialReason,
    DuplicateKeyError,
    ErrorKind,
    ServiceError,
    WriteConflictError,
)
from .logging_config import get_logger
from .models import (
    AccessCode,
    AccessCodeDetails,
    AccessCodeFilter,
    AccessCodePage,
    AccessCodeRedemption,
    AccessCodeStats,
    AccessCodeUsage,
    AccessCodeUsageStats,
    AccessCodeValidation,
    CreateAccessCodeRequest,
    RedeemAccessCodeRequest,
    ToggleResponse,
    UserAccessSummary,
)
from .policy import access_code_denial, is_currently_valid, is_expired, reactivation_blocker
from .storage import InMemoryStorage

logger = get_logger(__name__)

MAX_WRITE_ATTEMPTS = 3
DEFAULT_DESCRIPTION = "Beta access code"


class AccessCodeService:
    def __init__(self, storage=None):
        self.storage = storage if storage is not None else InMemoryStorage()

    def create_access_code(self, request: CreateAccessCodeRequest, created_by: str = "admin") -> AccessCode:
        if request.max_uses < 1:
            raise ServiceError.invalid_input("max_uses must be at least 1")
        if request.expiry_days < 1:
            raise ServiceError.invalid_input("expiry_days must be at least 1")

        now = datetime.now(timezone.utc)
        while True:
            code = generate_access_code()
            if self.storage.find_access_code(code):
                continue
            data = {
                "id": str(uuid4()),
                "code": code,
                "description": request.description or DEFAULT_DESCRIPTION,
                "active": True,
                "max_uses": request.max_uses,
                "used_count": 0,
                "expires_at": now + timedelta(days=request.expiry_days),
                "created_by": created_by,
                "used_by": [],
                "created_at": now,
                "updated_at": now,
            }
            try:
                self.storage.insert_access_code(data)
            except DuplicateKeyError:
                continue  # lost the race for this code
            logger.info("access_code_created", code=code, max_uses=request.max_uses,
                        expires_at=data["expires_at"].isoformat(), created_by=created_by)
            return AccessCode(**data)

    def validate_access_code(self, code: str) -> AccessCodeValidation:
        """Check whether a code could be redeemed right now, without using it."""
        record = self._get_record(code)
        reason = access_code_denial(record, datetime.now(timezone.utc))
        if reason:
            return AccessCodeValidation(
                code=record["code"], valid=False, reason=reason, message=DENIAL_MESSAGES[reason]
            )
        return AccessCodeValidation(
            code=record["code"],
            valid=True,
            message="Access code is valid",
            description=record["description"],
            expires_at=record["expires_at"],
            used_count=record["used_count"],
            remaining_uses=record["max_uses"] - record["used_count"],
        )

    def redeem_access_code(self, request: RedeemAccessCodeRequest) -> AccessCodeRedemption:
        code = normalize_code(request.code)

        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            record = self._get_record(code)
            now = datetime.now(timezone.utc)

            reason = access_code_denial(record, now)
            if reason is None and any(use["username"] == request.username for use in record["used_by"]):
                reason = DenialReason.ALREADY_USED
            if reason:
                logger.info("access_code_denied", code=code, username=request.username, reason=reason.value)
                raise ServiceError.denied(reason)

            try:
                record = self.storage.record_access_code_use(code, request.username, now)
            except WriteConflictError:
                logger.info("access_code_redemption_retry", code=code, username=request.username, attempt=attempt)
                continue

            logger.info("access_code_redeemed", code=code, username=request.username,
                        used_count=record["used_count"], active=record["active"])
            return AccessCodeRedemption(
                code=code,
                username=request.username,
                description=record["description"],
                active=record["active"],
                used_count=record["used_count"],
                message="Access code redeemed successfully",
            )

        raise ServiceError(ErrorKind.CONFLICT, "Access code redemption collided with concurrent updates, please retry")

    def deactivate_access_code(self, code: str) -> ToggleResponse:
        record = self._get_record(code)
        try:
            record = self.storage.set_access_code_active(record["code"], False, datetime.now(timezone.utc))
        except WriteConflictError as e:
            raise ServiceError.not_found("Access code not found") from e

        logger.info("access_code_deactivated", code=record["code"])
        return ToggleResponse(code=record["code"], active=record["active"],
                              message="Access code deactivated successfully")

    def reactivate_access_code(self, code: str) -> ToggleResponse:
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            record = self._get_record(code)
            now = datetime.now(timezone.utc)
            blocker = reactivation_blocker(record, now)
            if blocker:
                raise ServiceError(ErrorKind.INVALID_STATE, blocker)
            try:
                record = self.storage.set_access_code_active(record["code"], True, now)
            except WriteConflictError:
                continue

            logger.info("access_code_reactivated", code=record["code"])
            return ToggleResponse(code=record["code"], active=record["active"],
                                  message="Access code reactivated successfully")

        raise ServiceError(ErrorKind.CONFLICT, "Access code changed while reactivating, please retry")

    def get_usage_by_user(self, username: str) -> UserAccessSummary:
        now = datetime.now(timezone.utc)
        records = self.storage.find_access_codes_used_by(username)
        usages = [
            AccessCodeUsage(
                code=r["code"],
                description=r["description"],
                expires_at=r["expires_at"],
                created_at=r["created_at"],
                is_valid=is_currently_valid(r, now),
            )
            for r in records
        ]
        valid = [u for u in usages if u.is_valid]
        return UserAccessSummary(
            username=username,
            has_used_access_code=bool(usages),
            has_valid_access=bool(valid),
            used_codes=usages,
            valid_access_code=valid[0].code if valid else None,
        )

    def list_access_codes(
        self, code_filter: Optional[AccessCodeFilter] = None, page: int = 1, limit: int = 20
    ) -> AccessCodePage:
        if page < 1 or limit < 1:
            raise ServiceError.invalid_input("page and limit must be at least 1")

        items, total = self.storage.find_access_codes(
            code_filter or AccessCodeFilter(), datetime.now(timezone.utc), (page - 1) * limit, limit
        )
        return AccessCodePage(
            items=[AccessCode(**r) for r in items],
            total=total,
            page=page,
            pages=math.ceil(total / limit),
            limit=limit,
        )

    def get_access_code_details(self, code: str) -> AccessCodeDetails:
        record = self._get_record(code)
        now = datetime.now(timezone.utc)
        expired = is_expired(record["expires_at"], now)
        remaining = record["max_uses"] - record["used_count"]
        days_left = 0 if expired else math.ceil((record["expires_at"] - now).total_seconds() / 86400)

        return AccessCodeDetails(
            access_code=AccessCode(**record),
            stats=AccessCodeUsageStats(
                usage_percentage=round(record["used_count"] / record["max_uses"] * 100, 2),
                is_expired=expired,
                is_usable=record["active"] and not expired and remaining > 0,
                remaining_uses=remaining,
                days_until_expiry=days_left,
            ),
        )

    def get_stats(self) -> AccessCodeStats:
        stats = self.storage.access_code_stats(datetime.now(timezone.utc))
        most_used = stats.pop("most_used")
        return AccessCodeStats(**stats, most_used=AccessCode(**most_used) if most_used else None)

    def delete_access_code(self, code: str) -> None:
        if not self.storage.delete_access_code(normalize_code(code)):
            raise ServiceError.not_found("Access code not found")
        logger.info("access_code_deleted", code=normalize_code(code))

    def _get_record(self, code: str) -> dict:
        record = self.storage.find_access_code(normalize_code(code))
        if not record:
            raise ServiceError.not_found("Invalid access code")
        return record
