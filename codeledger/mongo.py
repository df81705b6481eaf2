"""
MongoDB store.

Mirrors ``InMemoryStorage``: unique indexes are declared in
``ensure_indexes`` and every guarded write is a single
``find_one_and_update`` whose filter carries the guard. Coupon redemption
touches two documents and runs inside a multi-document transaction unless
transactions are switched off (standalone servers), in which case the two
writes are applied back to back without rollback.
"""

import re
from datetime import datetime
from typing import Optional

from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo import errors as mongo_errors

from .errors import DuplicateKeyError, WriteConflictError
from .logging_config import get_logger
from .models import AccessCodeFilter, CouponFilter

logger = get_logger(__name__)

_NO_ID = {"_id": 0}


def _duplicate_field(exc: mongo_errors.DuplicateKeyError) -> str:
    key_pattern = (exc.details or {}).get("keyPattern") or {}
    return next(iter(key_pattern), "code")


class MongoStorage:
    def __init__(self, client: MongoClient, database_name: str, use_transactions: bool = True):
        self.client = client
        self.db = client[database_name]
        self.coupons = self.db["coupons"]
        self.access_codes = self.db["access_codes"]
        self.use_transactions = use_transactions

    @classmethod
    def from_settings(cls, settings) -> "MongoStorage":
        client = MongoClient(
            settings.mongodb_url,
            tz_aware=True,
            serverSelectionTimeoutMS=settings.mongo_timeout_ms,
            socketTimeoutMS=settings.mongo_timeout_ms,
        )
        storage = cls(client, settings.database_name, settings.mongo_transactions)
        storage.ensure_indexes()
        return storage

    def ensure_indexes(self) -> None:
        self.coupons.create_index([("id", ASCENDING)], unique=True)
        self.coupons.create_index([("code", ASCENDING)], unique=True)
        self.coupons.create_index([("owner_id", ASCENDING)], unique=True)
        self.coupons.create_index([("role", ASCENDING)])
        self.access_codes.create_index([("id", ASCENDING)], unique=True)
        self.access_codes.create_index([("code", ASCENDING)], unique=True)
        self.access_codes.create_index([("used_by.username", ASCENDING)])
        self.access_codes.create_index([("active", ASCENDING)])
        self.access_codes.create_index([("expires_at", ASCENDING)])

    # coupons

    def insert_coupon(self, data: dict) -> dict:
        try:
            self.coupons.insert_one(dict(data))
        except mongo_errors.DuplicateKeyError as exc:
            field = _duplicate_field(exc)
            raise DuplicateKeyError(field, data.get(field)) from exc
        return dict(data)

    def find_coupon_by_code(self, code: str) -> Optional[dict]:
        return self.coupons.find_one({"code": code}, _NO_ID)

    def find_coupon_by_owner(self, owner_id: str) -> Optional[dict]:
        return self.coupons.find_one({"owner_id": owner_id}, _NO_ID)

    def apply_coupon_redemption(
        self,
        target_code: str,
        redeemer_id: str,
        reward: int,
        now: datetime,
        new_redeemer: Optional[dict] = None,
    ) -> tuple[dict, dict]:
        def write(session):
            target = self.coupons.find_one({"code": target_code}, _NO_ID, session=session)
            if target is None or target["owner_id"] == redeemer_id:
                raise WriteConflictError(f"Coupon {target_code} no longer redeemable by {redeemer_id}")

            redeemed = {
                "has_redeemed_elsewhere": True,
                "redeemed_coupon_code": target_code,
                "updated_at": now,
            }
            if new_redeemer is not None:
                doc = dict(new_redeemer, points=new_redeemer["points"] + reward, **redeemed)
                try:
                    self.coupons.insert_one(dict(doc), session=session)
                except mongo_errors.DuplicateKeyError as exc:
                    field = _duplicate_field(exc)
                    if field == "owner_id":
                        raise WriteConflictError(f"Coupon for {redeemer_id} was created concurrently") from exc
                    raise DuplicateKeyError(field, doc.get(field)) from exc
                redeemer = doc
            else:
                redeemer = self.coupons.find_one_and_update(
                    {"owner_id": redeemer_id, "has_redeemed_elsewhere": False, "role": target["role"]},
                    {"$inc": {"points": reward}, "$set": redeemed},
                    projection=_NO_ID,
                    return_document=ReturnDocument.AFTER,
                    session=session,
                )
                if redeemer is None:
                    raise WriteConflictError(f"Coupon for {redeemer_id} no longer eligible")

            target = self.coupons.find_one_and_update(
                {"code": target_code},
                {
                    "$inc": {"points": reward, "redemption_count": 1},
                    "$set": {"last_redeemed_at": now, "updated_at": now},
                },
                projection=_NO_ID,
                return_document=ReturnDocument.AFTER,
                session=session,
            )
            if target is None:
                raise WriteConflictError(f"Coupon {target_code} disappeared")
            return target, redeemer

        if not self.use_transactions:
            logger.warning("coupon_redemption_without_transaction", coupon_code=target_code)
            return write(None)

        with self.client.start_session() as session:
            return session.with_transaction(write)

    def find_coupons(self, coupon_filter: CouponFilter, skip: int, limit: int) -> tuple[list[dict], int]:
        query: dict = {}
        if coupon_filter.role is not None:
            query["role"] = coupon_filter.role.value
        if coupon_filter.min_followers is not None:
            query["follower_count"] = {"$gte": coupon_filter.min_followers}
        if coupon_filter.display_name:
            query["display_name"] = {"$regex": re.escape(coupon_filter.display_name), "$options": "i"}

        cursor = self.coupons.find(query, _NO_ID).sort("created_at", DESCENDING).skip(skip).limit(limit)
        return list(cursor), self.coupons.count_documents(query)

    def coupon_stats(self) -> dict:
        totals = list(self.coupons.aggregate([
            {"$group": {"_id": None, "total": {"$sum": "$redemption_count"}}},
        ]))
        most_redeemed = self.coupons.find_one(
            {}, _NO_ID, sort=[("redemption_count", DESCENDING), ("points", DESCENDING)]
        )
        return {
            "total_coupons": self.coupons.count_documents({}),
            "creators": self.coupons.count_documents({"role": "creator"}),
            "users": self.coupons.count_documents({"role": "user"}),
            "total_redemptions": totals[0]["total"] if totals else 0,
            "most_redeemed": most_redeemed,
        }

    def delete_coupon(self, coupon_id: str) -> bool:
        return self.coupons.delete_one({"id": coupon_id}).deleted_count > 0

    # access codes

    def insert_access_code(self, data: dict) -> dict:
        try:
            self.access_codes.insert_one(dict(data))
        except mongo_errors.DuplicateKeyError as exc:
            field = _duplicate_field(exc)
            raise DuplicateKeyError(field, data.get(field)) from exc
        return dict(data)

    def find_access_code(self, code: str) -> Optional[dict]:
        return self.access_codes.find_one({"code": code}, _NO_ID)

    def record_access_code_use(self, code: str, username: str, now: datetime) -> dict:
        use = {"$literal": {"username": username, "redeemed_at": now}}
        record = self.access_codes.find_one_and_update(
            {
                "code": code,
                "active": True,
                "expires_at": {"$gt": now},
                "used_by.username": {"$ne": username},
                "$expr": {"$lt": ["$used_count", "$max_uses"]},
            },
            [
                {"$set": {
                    "used_count": {"$add": ["$used_count", 1]},
                    "used_by": {"$concatArrays": ["$used_by", [use]]},
                    "updated_at": now,
                }},
                {"$set": {"active": {"$lt": ["$used_count", "$max_uses"]}}},
            ],
            projection=_NO_ID,
            return_document=ReturnDocument.AFTER,
        )
        if record is None:
            raise WriteConflictError(f"Access code {code} can no longer be used by {username}")
        return record

    def set_access_code_active(self, code: str, active: bool, now: datetime) -> dict:
        query: dict = {"code": code}
        if active:
            query["expires_at"] = {"$gt": now}
            query["$expr"] = {"$lt": ["$used_count", "$max_uses"]}
        record = self.access_codes.find_one_and_update(
            query,
            {"$set": {"active": active, "updated_at": now}},
            projection=_NO_ID,
            return_document=ReturnDocument.AFTER,
        )
        if record is None:
            raise WriteConflictError(f"Access code {code} could not be set active={active}")
        return record

    def find_access_codes(
        self, code_filter: AccessCodeFilter, now: datetime, skip: int, limit: int
    ) -> tuple[list[dict], int]:
        query: dict = {}
        if code_filter.active is not None:
            query["active"] = code_filter.active
        if code_filter.expired is True:
            query["expires_at"] = {"$lte": now}
        elif code_filter.expired is False:
            query["expires_at"] = {"$gt": now}
        if code_filter.code:
            query["code"] = {"$regex": re.escape(code_filter.code), "$options": "i"}

        cursor = self.access_codes.find(query, _NO_ID).sort("created_at", DESCENDING).skip(skip).limit(limit)
        return list(cursor), self.access_codes.count_documents(query)

    def find_access_codes_used_by(self, username: str) -> list[dict]:
        return list(self.access_codes.find({"used_by.username": username}, _NO_ID))

    def access_code_stats(self, now: datetime) -> dict:
        totals = list(self.access_codes.aggregate([
            {"$group": {"_id": None, "total": {"$sum": "$used_count"}}},
        ]))
        return {
            "total_access_codes": self.access_codes.count_documents({}),
            "active_access_codes": self.access_codes.count_documents(
                {"active": True, "expires_at": {"$gt": now}}
            ),
            "expired_access_codes": self.access_codes.count_documents({"expires_at": {"$lte": now}}),
            "fully_used_access_codes": self.access_codes.count_documents(
                {"$expr": {"$gte": ["$used_count", "$max_uses"]}}
            ),
            "total_usages": totals[0]["total"] if totals else 0,
            "most_used": self.access_codes.find_one({}, _NO_ID, sort=[("used_count", DESCENDING)]),
        }

    def delete_access_code(self, code: str) -> bool:
        return self.access_codes.delete_one({"code": code}).deleted_count > 0
