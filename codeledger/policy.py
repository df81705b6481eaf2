"""
Stateless predicates shared by the coupon and access-code ledgers.

Issuance and redemption both go through these checks so the two paths
cannot drift apart.
"""

from datetime import datetime
from typing import Optional

from .errors import DenialReason

MIN_FOLLOWERS = 1000
REDEMPTION_REWARD_POINTS = 10


def meets_follower_threshold(follower_count: int) -> bool:
    return follower_count >= MIN_FOLLOWERS


def roles_match(owner_role, redeemer_role) -> bool:
    return owner_role == redeemer_role


def is_expired(expires_at: datetime, now: datetime) -> bool:
    return expires_at <= now


def has_remaining_uses(used_count: int, max_uses: int) -> bool:
    return used_count < max_uses


def access_code_denial(record: dict, now: datetime) -> Optional[DenialReason]:
    """Return why an access code cannot be used right now, or None.

    Expiry is checked before the active flag, and the active flag before
    the usage quota.
    """
    if is_expired(record["expires_at"], now):
        return DenialReason.EXPIRED
    if not record["active"]:
        return DenialReason.INACTIVE
    if not has_remaining_uses(record["used_count"], record["max_uses"]):
        return DenialReason.QUOTA_EXHAUSTED
    return None


def is_currently_valid(record: dict, now: datetime) -> bool:
    # quota exhaustion already forces active=False
    return record["active"] and not is_expired(record["expires_at"], now)


def reactivation_blocker(record: dict, now: datetime) -> Optional[str]:
    if not has_remaining_uses(record["used_count"], record["max_uses"]):
        return "Cannot reactivate: maximum usage limit reached"
    if is_expired(record["expires_at"], now):
        return "Cannot reactivate: access code has expired"
    return None
