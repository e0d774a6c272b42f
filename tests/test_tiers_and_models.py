"""Tests for the tier catalog and the derived-status helpers."""

from datetime import datetime, timedelta, timezone

import pytest

from subscriptions.errors import ValidationError
from subscriptions.models import (
    PendingRegistration,
    SubscriptionStatus,
    TransactionState,
    add_one_month,
    derive_status,
)
from subscriptions.tiers import (
    FREE_TIER,
    Tier,
    get_tier_info,
    is_premium,
    parse_tier,
    price_for,
    validate_amount,
)

NOW = datetime(2026, 3, 10, 9, 30, tzinfo=timezone.utc)


class TestTierCatalog:

    def test_tiers_are_ordered_by_rank(self):
        """Test that rank increases from free to enterprise."""
        ranks = [t.rank for t in (Tier.COMMUNITY_ADVOCATE, Tier.HEALTH_CHAMPION,
                                  Tier.GLOBAL_ADVOCATE, Tier.ENTERPRISE)]
        assert ranks == sorted(ranks)
        assert len(set(ranks)) == 4

    def test_prices_in_kes(self):
        assert price_for(Tier.HEALTH_CHAMPION) == 150
        assert price_for(Tier.GLOBAL_ADVOCATE) == 400
        assert get_tier_info(FREE_TIER).price == 0

    def test_enterprise_cannot_be_bought(self):
        with pytest.raises(ValidationError):
            price_for(Tier.ENTERPRISE)

    def test_parse_tier_accepts_names_and_members(self):
        assert parse_tier("global_advocate") == Tier.GLOBAL_ADVOCATE
        assert parse_tier(Tier.HEALTH_CHAMPION) == Tier.HEALTH_CHAMPION

    def test_parse_tier_rejects_unknown(self):
        with pytest.raises(ValidationError):
            parse_tier("platinum")

    def test_is_premium(self):
        assert not is_premium(FREE_TIER)
        assert not is_premium(None)
        assert is_premium(Tier.ENTERPRISE)

    def test_validate_amount_tolerance(self):
        assert validate_amount(Tier.GLOBAL_ADVOCATE, 400)
        assert validate_amount(Tier.GLOBAL_ADVOCATE, 403.5)
        assert not validate_amount(Tier.GLOBAL_ADVOCATE, 150)

    def test_features_listed(self):
        assert "Data export" in get_tier_info(Tier.HEALTH_CHAMPION).features


class TestDeriveStatus:

    def test_free_tier_is_free_regardless_of_period(self):
        assert derive_status(FREE_TIER, None, NOW) == SubscriptionStatus.FREE
        assert derive_status(FREE_TIER, NOW - timedelta(days=1), NOW) == SubscriptionStatus.FREE

    def test_premium_active_until_period_end(self):
        end = NOW + timedelta(seconds=1)
        assert derive_status(Tier.HEALTH_CHAMPION, end, NOW) == SubscriptionStatus.ACTIVE
        assert derive_status(Tier.HEALTH_CHAMPION, end, end) == SubscriptionStatus.EXPIRED

    def test_premium_without_period_is_expired(self):
        assert derive_status(Tier.GLOBAL_ADVOCATE, None, NOW) == SubscriptionStatus.EXPIRED


class TestAddOneMonth:

    def test_same_day_next_month(self):
        assert add_one_month(NOW) == NOW.replace(month=4)

    def test_clamps_to_month_end(self):
        jan31 = datetime(2026, 1, 31, tzinfo=timezone.utc)
        assert add_one_month(jan31) == datetime(2026, 2, 28, tzinfo=timezone.utc)

    def test_rolls_over_year(self):
        dec = datetime(2026, 12, 5, tzinfo=timezone.utc)
        assert add_one_month(dec) == datetime(2027, 1, 5, tzinfo=timezone.utc)


class TestRegistrationTtl:

    def test_expiry_boundary(self):
        """Test that a 10-minute registration expires exactly at T+10m."""
        reg = PendingRegistration.with_ttl(
            600, now=NOW, email="a@b.co", phone="0712345678",
            target_tier=Tier.GLOBAL_ADVOCATE, tracking_id="tx2",
        )
        assert reg.expires_at == NOW + timedelta(minutes=10)
        assert not reg.is_expired(NOW + timedelta(minutes=9, seconds=59))
        assert reg.is_expired(NOW + timedelta(minutes=10))
        assert reg.is_expired(NOW + timedelta(minutes=11))


def test_only_initiated_is_non_terminal():
    assert not TransactionState.INITIATED.is_terminal
    assert all(s.is_terminal for s in (TransactionState.SUCCESS,
                                       TransactionState.FAILED,
                                       TransactionState.TIMED_OUT))
