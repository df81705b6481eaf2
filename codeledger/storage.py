import copy
import threading
from datetime import datetime
from typing import Optional

from .errors import DuplicateKeyError, WriteConflictError
from .models import AccessCodeFilter, CouponFilter


class InMemoryStorage:
    """Dict-backed store honouring the same contract as the Mongo store.

    Unique indexes are kept as side dicts, and every conditional write runs
    under one lock so it is atomic with respect to other writers. Records
    are copied on the way in and out; callers never hold live references.
    """

    def __init__(self):
        self.coupons: dict[str, dict] = {}
        self.access_codes: dict[str, dict] = {}
        self._coupon_codes: dict[str, str] = {}
        self._coupon_owners: dict[str, str] = {}
        self._lock = threading.RLock()

    # coupons

    def insert_coupon(self, data: dict) -> dict:
        with self._lock:
            if data["owner_id"] in self._coupon_owners:
                raise DuplicateKeyError("owner_id", data["owner_id"])
            if data["code"] in self._coupon_codes:
                raise DuplicateKeyError("code", data["code"])
            if data["id"] in self.coupons:
                raise DuplicateKeyError("id", data["id"])
            self._put_coupon(data)
            return copy.deepcopy(data)

    def find_coupon_by_code(self, code: str) -> Optional[dict]:
        with self._lock:
            coupon_id = self._coupon_codes.get(code)
            return copy.deepcopy(self.coupons[coupon_id]) if coupon_id else None

    def find_coupon_by_owner(self, owner_id: str) -> Optional[dict]:
        with self._lock:
            coupon_id = self._coupon_owners.get(owner_id)
            return copy.deepcopy(self.coupons[coupon_id]) if coupon_id else None

    def apply_coupon_redemption(
        self,
        target_code: str,
        redeemer_id: str,
        reward: int,
        now: datetime,
        new_redeemer: Optional[dict] = None,
    ) -> tuple[dict, dict]:
        with self._lock:
            target_id = self._coupon_codes.get(target_code)
            if target_id is None:
                raise WriteConflictError(f"Coupon {target_code} disappeared")
            target = self.coupons[target_id]
            if target["owner_id"] == redeemer_id:
                raise WriteConflictError("Redeemer owns the target coupon")

            if new_redeemer is not None:
                if redeemer_id in self._coupon_owners:
                    raise WriteConflictError(f"Coupon for {redeemer_id} was created concurrently")
                if new_redeemer["code"] in self._coupon_codes:
                    raise DuplicateKeyError("code", new_redeemer["code"])
                redeemer = copy.deepcopy(new_redeemer)
            else:
                redeemer_coupon_id = self._coupon_owners.get(redeemer_id)
                if redeemer_coupon_id is None:
                    raise WriteConflictError(f"Coupon for {redeemer_id} disappeared")
                redeemer = copy.deepcopy(self.coupons[redeemer_coupon_id])
                if redeemer["has_redeemed_elsewhere"] or redeemer["role"] != target["role"]:
                    raise WriteConflictError(f"Coupon for {redeemer_id} no longer eligible")

            redeemer["points"] += reward
            redeemer["has_redeemed_elsewhere"] = True
            redeemer["redeemed_coupon_code"] = target_code
            redeemer["updated_at"] = now

            target["points"] += reward
            target["redemption_count"] += 1
            target["last_redeemed_at"] = now
            target["updated_at"] = now

            self._put_coupon(redeemer)
            return copy.deepcopy(target), copy.deepcopy(redeemer)

    def find_coupons(self, coupon_filter: CouponFilter, skip: int, limit: int) -> tuple[list[dict], int]:
        with self._lock:
            matches = [c for c in self.coupons.values() if _coupon_matches(c, coupon_filter)]
            matches.sort(key=lambda c: c["created_at"], reverse=True)
            return copy.deepcopy(matches[skip:skip + limit]), len(matches)

    def coupon_stats(self) -> dict:
        with self._lock:
            coupons = list(self.coupons.values())
            most_redeemed = max(
                coupons, key=lambda c: (c["redemption_count"], c["points"]), default=None
            )
            return {
                "total_coupons": len(coupons),
                "creators": sum(1 for c in coupons if c["role"] == "creator"),
                "users": sum(1 for c in coupons if c["role"] == "user"),
                "total_redemptions": sum(c["redemption_count"] for c in coupons),
                "most_redeemed": copy.deepcopy(most_redeemed),
            }

    def delete_coupon(self, coupon_id: str) -> bool:
        with self._lock:
            coupon = self.coupons.pop(coupon_id, None)
            if coupon is None:
                return False
            self._coupon_codes.pop(coupon["code"], None)
            self._coupon_owners.pop(coupon["owner_id"], None)
            return True

    def _put_coupon(self, data: dict) -> None:
        self.coupons[data["id"]] = copy.deepcopy(data)
        self._coupon_codes[data["code"]] = data["id"]
        self._coupon_owners[data["owner_id"]] = data["id"]

    # access codes

    def insert_access_code(self, data: dict) -> dict:
        with self._lock:
            if data["code"] in self.access_codes:
                raise DuplicateKeyError("code", data["code"])
            self.access_codes[data["code"]] = copy.deepcopy(data)
            return copy.deepcopy(data)

    def find_access_code(self, code: str) -> Optional[dict]:
        with self._lock:
            record = self.access_codes.get(code)
            return copy.deepcopy(record) if record else None

    def record_access_code_use(self, code: str, username: str, now: datetime) -> dict:
        with self._lock:
            record = self.access_codes.get(code)
            if (
                record is None
                or not record["active"]
                or record["expires_at"] <= now
                or record["used_count"] >= record["max_uses"]
                or any(use["username"] == username for use in record["used_by"])
            ):
                raise WriteConflictError(f"Access code {code} can no longer be used by {username}")

            record["used_by"].append({"username": username, "redeemed_at": now})
            record["used_count"] += 1
            if record["used_count"] >= record["max_uses"]:
                record["active"] = False
            record["updated_at"] = now
            return copy.deepcopy(record)

    def set_access_code_active(self, code: str, active: bool, now: datetime) -> dict:
        with self._lock:
            record = self.access_codes.get(code)
            if record is None:
                raise WriteConflictError(f"Access code {code} disappeared")
            if active and (record["used_count"] >= record["max_uses"] or record["expires_at"] <= now):
                raise WriteConflictError(f"Access code {code} can no longer be reactivated")
            record["active"] = active
            record["updated_at"] = now
            return copy.deepcopy(record)

    def find_access_codes(
        self, code_filter: AccessCodeFilter, now: datetime, skip: int, limit: int
    ) -> tuple[list[dict], int]:
        with self._lock:
            matches = [r for r in self.access_codes.values() if _access_code_matches(r, code_filter, now)]
            matches.sort(key=lambda r: r["created_at"], reverse=True)
            return copy.deepcopy(matches[skip:skip + limit]), len(matches)

    def find_access_codes_used_by(self, username: str) -> list[dict]:
        with self._lock:
            return [
                copy.deepcopy(r) for r in self.access_codes.values()
                if any(use["username"] == username for use in r["used_by"])
            ]

    def access_code_stats(self, now: datetime) -> dict:
        with self._lock:
            records = list(self.access_codes.values())
            most_used = max(records, key=lambda r: r["used_count"], default=None)
            return {
                "total_access_codes": len(records),
                "active_access_codes": sum(1 for r in records if r["active"] and r["expires_at"] > now),
                "expired_access_codes": sum(1 for r in records if r["expires_at"] <= now),
                "fully_used_access_codes": sum(1 for r in records if r["used_count"] >= r["max_uses"]),
                "total_usages": sum(r["used_count"] for r in records),
                "most_used": copy.deepcopy(most_used),
            }

    def delete_access_code(self, code: str) -> bool:
        with self._lock:
            return self.access_codes.pop(code, None) is not None


def _coupon_matches(coupon: dict, coupon_filter: CouponFilter) -> bool:
    if coupon_filter.role is not None and coupon["role"] != coupon_filter.role.value:
        return False
    if coupon_filter.min_followers is not None and coupon["follower_count"] < coupon_filter.min_followers:
        return False
    if coupon_filter.display_name and coupon_filter.display_name.lower() not in coupon["display_name"].lower():
        return False
    return True


def _access_code_matches(record: dict, code_filter: AccessCodeFilter, now: datetime) -> bool:
    if code_filter.active is not None and record["active"] != code_filter.active:
        return False
    if code_filter.expired is True and not record["expires_at"] <= now:
        return False
    if code_filter.expired is False and not record["expires_at"] > now:
        return False
    if code_filter.code and code_filter.code.lower() not in record["code"].lower():
        return False
    return True
