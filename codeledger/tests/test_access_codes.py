"""
Unit Tests for the Access Code Service

Tests cover:
1. Creation and input checks
2. Validation order (expired, inactive, quota)
3. Redemption, auto-deactivation and per-user uniqueness
4. Deactivation / reactivation guards
5. Usage by user
6. Admin listing, details and stats (incl. the expiry boundary)
7. Quota under concurrent redemption
"""

import re
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from codeledger.access_code_service import AccessCodeService
from codeledger.errors import DenialReason, ErrorKind, ServiceError
from codeledger.models import (
    AccessCodeFilter,
    CreateAccessCodeRequest,
    RedeemAccessCodeRequest,
)
from codeledger.storage import InMemoryStorage


def create(service, max_uses=5, expiry_days=7, description=None):
    return service.create_access_code(CreateAccessCodeRequest(
        description=description, max_uses=max_uses, expiry_days=expiry_days,
    ))


def redeem(service, code, username):
    return service.redeem_access_code(RedeemAccessCodeRequest(code=code, username=username))


def expire(storage, code):
    storage.access_codes[code]["expires_at"] = datetime.now(timezone.utc) - timedelta(days=1)


class TestCreateAccessCode:
    """Tests for access code creation."""

    def test_create_success(self):
        service = AccessCodeService()

        access_code = create(service, max_uses=3, expiry_days=2, description="Wave 1")

        assert re.match(r"^[A-Z0-9]{6}$", access_code.code)
        assert access_code.active is True
        assert access_code.used_count == 0
        assert access_code.used_by == []
        assert access_code.max_uses == 3
        assert access_code.description == "Wave 1"
        assert access_code.created_by == "admin"
        assert access_code.expires_at - access_code.created_at == timedelta(days=2)

    def test_default_description(self):
        service = AccessCodeService()
        assert create(service).description == "Beta access code"

    @pytest.mark.parametrize("max_uses,expiry_days", [(0, 1), (1, 0), (-3, 5)])
    def test_invalid_input(self, max_uses, expiry_days):
        storage = InMemoryStorage()
        service = AccessCodeService(storage)

        with pytest.raises(ServiceError) as exc_info:
            create(service, max_uses=max_uses, expiry_days=expiry_days)

        assert exc_info.value.kind == ErrorKind.INVALID_INPUT
        assert storage.access_codes == {}

    def test_generation_skips_existing_codes(self, monkeypatch):
        """A generated code already in the store is thrown away."""
        service = AccessCodeService()
        first = create(service)

        candidates = iter([first.code, first.code, "NEW123"])
        monkeypatch.setattr(
            "codeledger.access_code_service.generate_access_code", lambda: next(candidates)
        )

        assert create(service).code == "NEW123"


class TestValidateAccessCode:
    """Tests for validation without redemption."""

    def test_valid_code(self):
        service = AccessCodeService()
        access_code = create(service, max_uses=4)

        result = service.validate_access_code(access_code.code.lower())

        assert result.valid is True
        assert result.reason is None
        assert result.remaining_uses == 4
        assert result.used_count == 0

    def test_unknown_code(self):
        service = AccessCodeService()

        with pytest.raises(ServiceError) as exc_info:
            service.validate_access_code("ZZZZZZ")

        assert exc_info.value.kind == ErrorKind.NOT_FOUND

    def test_expired_reported_before_inactive(self):
        storage = InMemoryStorage()
        service = AccessCodeService(storage)
        access_code = create(service)
        service.deactivate_access_code(access_code.code)
        expire(storage, access_code.code)

        result = service.validate_access_code(access_code.code)

        assert result.valid is False
        assert result.reason == DenialReason.EXPIRED

    def test_inactive_reported_before_quota(self):
        storage = InMemoryStorage()
        service = AccessCodeService(storage)
        access_code = create(service, max_uses=1)
        redeem(service, access_code.code, "u1")

        result = service.validate_access_code(access_code.code)

        assert result.reason == DenialReason.INACTIVE

    def test_quota_exhausted(self):
        storage = InMemoryStorage()
        service = AccessCodeService(storage)
        access_code = create(service, max_uses=1)
        redeem(service, access_code.code, "u1")
        # force the flag back on to reach the quota check
        storage.access_codes[access_code.code]["active"] = True

        result = service.validate_access_code(access_code.code)

        assert result.reason == DenialReason.QUOTA_EXHAUSTED

    def test_validation_does_not_mutate(self):
        storage = InMemoryStorage()
        service = AccessCodeService(storage)
        access_code = create(service)
        before = dict(storage.access_codes[access_code.code])

        service.validate_access_code(access_code.code)

        assert storage.access_codes[access_code.code] == before


class TestRedeemAccessCode:
    """Tests for redemption."""

    def test_single_use_code(self):
        """Scenario: a one-use code deactivates on first use and refuses the next user."""
        service = AccessCodeService()
        access_code = create(service, max_uses=1, expiry_days=1)
        assert len(access_code.code) == 6

        result = redeem(service, access_code.code, "u1")
        assert result.active is False
        assert result.used_count == 1

        with pytest.raises(ServiceError) as exc_info:
            redeem(service, access_code.code, "u2")

        assert exc_info.value.kind == ErrorKind.FORBIDDEN
        assert exc_info.value.reason in (DenialReason.INACTIVE, DenialReason.QUOTA_EXHAUSTED)

    def test_usage_is_recorded_in_order(self):
        storage = InMemoryStorage()
        service = AccessCodeService(storage)
        access_code = create(service, max_uses=3)

        redeem(service, access_code.code, "alice")
        result = redeem(service, access_code.code, "bob")

        record = storage.access_codes[access_code.code]
        assert result.active is True
        assert record["used_count"] == 2
        assert [u["username"] for u in record["used_by"]] == ["alice", "bob"]

    def test_same_user_twice_forbidden(self):
        storage = InMemoryStorage()
        service = AccessCodeService(storage)
        access_code = create(service, max_uses=5)
        redeem(service, access_code.code, "alice")

        with pytest.raises(ServiceError) as exc_info:
            redeem(service, access_code.code, "alice")

        assert exc_info.value.reason == DenialReason.ALREADY_USED
        assert storage.access_codes[access_code.code]["used_count"] == 1

    def test_expired_code(self):
        storage = InMemoryStorage()
        service = AccessCodeService(storage)
        access_code = create(service)
        expire(storage, access_code.code)

        with pytest.raises(ServiceError) as exc_info:
            redeem(service, access_code.code, "alice")

        assert exc_info.value.kind == ErrorKind.FORBIDDEN
        assert exc_info.value.reason == DenialReason.EXPIRED

    def test_deactivated_code(self):
        service = AccessCodeService()
        access_code = create(service)
        service.deactivate_access_code(access_code.code)

        with pytest.raises(ServiceError) as exc_info:
            redeem(service, access_code.code, "alice")

        assert exc_info.value.reason == DenialReason.INACTIVE

    def test_unknown_code(self):
        service = AccessCodeService()

        with pytest.raises(ServiceError) as exc_info:
            redeem(service, "NOPE00", "alice")

        assert exc_info.value.kind == ErrorKind.NOT_FOUND

    def test_concurrent_redemptions_respect_quota(self):
        storage = InMemoryStorage()
        service = AccessCodeService(storage)
        access_code = create(service, max_uses=3)

        def attempt(username):
            try:
                redeem(service, access_code.code, username)
                return "ok"
            except ServiceError as e:
                assert e.kind in (ErrorKind.FORBIDDEN, ErrorKind.CONFLICT)
                return "denied"

        with ThreadPoolExecutor(max_workers=8) as pool:
            outcomes = list(pool.map(attempt, [f"user-{i}" for i in range(20)]))

        record = storage.access_codes[access_code.code]
        assert outcomes.count("ok") == 3
        assert record["used_count"] == 3
        assert len(record["used_by"]) == 3
        assert record["active"] is False


class TestToggleAccessCode:
    """Tests for deactivation and reactivation."""

    def test_deactivate_then_reactivate(self):
        service = AccessCodeService()
        access_code = create(service)

        assert service.deactivate_access_code(access_code.code).active is False
        assert service.reactivate_access_code(access_code.code).active is True
        assert service.validate_access_code(access_code.code).valid is True

    def test_reactivate_exhausted_code(self):
        """Scenario: a used-up one-use code cannot be switched back on."""
        service = AccessCodeService()
        access_code = create(service, max_uses=1, expiry_days=1)
        redeem(service, access_code.code, "u1")

        with pytest.raises(ServiceError) as exc_info:
            service.reactivate_access_code(access_code.code)

        assert exc_info.value.kind == ErrorKind.INVALID_STATE

    def test_reactivate_expired_code(self):
        storage = InMemoryStorage()
        service = AccessCodeService(storage)
        access_code = create(service)
        service.deactivate_access_code(access_code.code)
        expire(storage, access_code.code)

        with pytest.raises(ServiceError) as exc_info:
            service.reactivate_access_code(access_code.code)

        assert exc_info.value.kind == ErrorKind.INVALID_STATE
        assert storage.access_codes[access_code.code]["active"] is False

    def test_toggle_unknown_code(self):
        service = AccessCodeService()

        with pytest.raises(ServiceError) as exc_info:
            service.deactivate_access_code("NOPE00")
        assert exc_info.value.kind == ErrorKind.NOT_FOUND

        with pytest.raises(ServiceError) as exc_info:
            service.reactivate_access_code("NOPE00")
        assert exc_info.value.kind == ErrorKind.NOT_FOUND


class TestUsageByUser:
    """Tests for per-user usage lookups."""

    def test_user_without_codes(self):
        summary = AccessCodeService().get_usage_by_user("ghost")

        assert summary.has_used_access_code is False
        assert summary.has_valid_access is False
        assert summary.used_codes == []
        assert summary.valid_access_code is None

    def test_validity_ignores_quota(self):
        """A code filled up by the user is inactive, so it no longer grants access."""
        storage = InMemoryStorage()
        service = AccessCodeService(storage)
        open_code = create(service, max_uses=10)
        single = create(service, max_uses=1)
        redeem(service, open_code.code, "alice")
        redeem(service, single.code, "alice")

        summary = service.get_usage_by_user("alice")

        validity = {u.code: u.is_valid for u in summary.used_codes}
        assert validity == {open_code.code: True, single.code: False}
        assert summary.has_used_access_code is True
        assert summary.has_valid_access is True
        assert summary.valid_access_code == open_code.code

    def test_expired_usage_is_not_valid(self):
        storage = InMemoryStorage()
        service = AccessCodeService(storage)
        access_code = create(service)
        redeem(service, access_code.code, "alice")
        expire(storage, access_code.code)

        summary = service.get_usage_by_user("alice")

        assert summary.has_used_access_code is True
        assert summary.has_valid_access is False


class TestAccessCodeAdmin:
    """Tests for listing, details, stats and deletion."""

    def test_list_with_filters(self):
        storage = InMemoryStorage()
        service = AccessCodeService(storage)
        codes = [create(service) for _ in range(4)]
        service.deactivate_access_code(codes[0].code)
        expire(storage, codes[1].code)

        everything = service.list_access_codes(page=1, limit=3)
        assert everything.total == 4
        assert everything.pages == 2
        assert len(everything.items) == 3

        inactive = service.list_access_codes(AccessCodeFilter(active=False))
        assert [c.code for c in inactive.items] == [codes[0].code]

        expired = service.list_access_codes(AccessCodeFilter(expired=True))
        assert [c.code for c in expired.items] == [codes[1].code]

        live = service.list_access_codes(AccessCodeFilter(expired=False))
        assert live.total == 3

        by_code = service.list_access_codes(AccessCodeFilter(code=codes[2].code[:5].lower()))
        assert codes[2].code in [c.code for c in by_code.items]

    def test_details(self):
        service = AccessCodeService()
        access_code = create(service, max_uses=4, expiry_days=3)
        redeem(service, access_code.code, "alice")

        details = service.get_access_code_details(access_code.code)

        assert details.access_code.used_count == 1
        assert details.stats.usage_percentage == 25.0
        assert details.stats.remaining_uses == 3
        assert details.stats.is_expired is False
        assert details.stats.is_usable is True
        assert details.stats.days_until_expiry == 3

    def test_details_of_expired_code(self):
        storage = InMemoryStorage()
        service = AccessCodeService(storage)
        access_code = create(service)
        expire(storage, access_code.code)

        stats = service.get_access_code_details(access_code.code).stats

        assert stats.is_expired is True
        assert stats.is_usable is False
        assert stats.days_until_expiry == 0

    def test_stats(self):
        storage = InMemoryStorage()
        service = AccessCodeService(storage)
        busy = create(service, max_uses=2)
        other = create(service, max_uses=5)
        stale = create(service)
        redeem(service, busy.code, "a")
        redeem(service, busy.code, "b")
        redeem(service, other.code, "a")
        expire(storage, stale.code)

        stats = service.get_stats()

        assert stats.total_access_codes == 3
        assert stats.active_access_codes == 1
        assert stats.expired_access_codes == 1
        assert stats.fully_used_access_codes == 1
        assert stats.total_usages == 3
        assert stats.most_used.code == busy.code

    def test_delete(self):
        service = AccessCodeService()
        access_code = create(service)

        service.delete_access_code(access_code.code)

        with pytest.raises(ServiceError) as exc_info:
            service.delete_access_code(access_code.code)
        assert exc_info.value.kind == ErrorKind.NOT_FOUND

    def test_expired_filter_includes_exact_expiry_instant(self):
        storage = InMemoryStorage()
        service = AccessCodeService(storage)
        access_code = create(service)
        create(service)
        now = datetime.now(timezone.utc)
        storage.access_codes[access_code.code]["expires_at"] = now

        expired, total = storage.find_access_codes(AccessCodeFilter(expired=True), now, 0, 10)
        assert [r["code"] for r in expired] == [access_code.code]
        assert total == 1

        live, total = storage.find_access_codes(AccessCodeFilter(expired=False), now, 0, 10)
        assert access_code.code not in [r["code"] for r in live]
        assert total == 1

        assert storage.access_code_stats(now)["expired_access_codes"] == 1

    def test_listing_during_redemptions_returns_consistent_records(self):
        storage = InMemoryStorage()
        service = AccessCodeService(storage)
        access_code = create(service, max_uses=200)
        now = datetime.now(timezone.utc)

        def use(i):
            storage.record_access_code_use(access_code.code, f"user-{i}", now)

        def snapshot(_):
            items, _total = storage.find_access_codes(AccessCodeFilter(), now, 0, 10)
            return [(r["used_count"], len(r["used_by"])) for r in items]

        with ThreadPoolExecutor(max_workers=8) as pool:
            uses = [pool.submit(use, i) for i in range(200)]
            snapshots = list(pool.map(snapshot, range(200)))
            for future in uses:
                future.result()

        for items in snapshots:
            for used_count, used_by in items:
                assert used_count == used_by
        assert storage.find_access_code(access_code.code)["used_count"] == 200


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
