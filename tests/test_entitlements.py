"""Tests for the read-only entitlement facade."""

from datetime import timedelta

import pytest

from subscriptions.entitlements import EntitlementChecker
from subscriptions.errors import UnknownUser
from subscriptions.models import SubscriptionStatus
from subscriptions.tiers import FREE_TIER, Tier


@pytest.fixture
def checker(ledger, clock):
    return EntitlementChecker(ledger, clock=clock)


class TestEntitlementChecker:

    @pytest.mark.asyncio
    async def test_free_user(self, checker, ledger):
        await ledger.create_account("user-1")
        assert await checker.get_status("user-1") == SubscriptionStatus.FREE
        assert not await checker.has_active_subscription("user-1")
        assert await checker.meets_tier("user-1", FREE_TIER)
        assert not await checker.meets_tier("user-1", Tier.HEALTH_CHAMPION)

    @pytest.mark.asyncio
    async def test_active_premium(self, checker, ledger, clock):
        await ledger.create_account("user-1")
        await ledger.apply_tier_change("user-1", Tier.GLOBAL_ADVOCATE, tracking_id="tx1", now=clock.now)

        assert await checker.has_active_subscription("user-1")
        details = await checker.get_subscription_details("user-1")
        assert details.tier == Tier.GLOBAL_ADVOCATE
        assert details.external_subscription_id == "tx1"

    @pytest.mark.asyncio
    async def test_higher_tier_satisfies_lower_requirement(self, checker, ledger, clock):
        await ledger.create_account("user-1")
        await ledger.apply_tier_change("user-1", Tier.GLOBAL_ADVOCATE, tracking_id="tx1", now=clock.now)

        assert await checker.meets_tier("user-1", "health_champion")
        assert await checker.meets_tier("user-1", Tier.GLOBAL_ADVOCATE)
        assert not await checker.meets_tier("user-1", Tier.ENTERPRISE)

    @pytest.mark.asyncio
    async def test_expired_premium_reads_as_free(self, checker, ledger, clock):
        await ledger.create_account("user-1")
        await ledger.apply_tier_change("user-1", Tier.HEALTH_CHAMPION, tracking_id="tx1", now=clock.now)
        clock.advance(days=32)

        assert await checker.get_status("user-1") == SubscriptionStatus.EXPIRED
        assert not await checker.has_active_subscription("user-1")
        assert await checker.effective_tier("user-1") == FREE_TIER
        assert not await checker.meets_tier("user-1", Tier.HEALTH_CHAMPION)
        # Reads never write: the row still says champion
        assert (await ledger.get_record("user-1")).tier == Tier.HEALTH_CHAMPION

    @pytest.mark.asyncio
    async def test_unknown_user(self, checker):
        assert not await checker.has_active_subscription("ghost")
        assert await checker.effective_tier("ghost") == FREE_TIER
        with pytest.raises(UnknownUser):
            await checker.get_status("ghost")

    @pytest.mark.asyncio
    async def test_features_follow_effective_tier(self, checker, ledger, clock):
        await ledger.create_account("user-1")
        await ledger.apply_tier_change("user-1", Tier.HEALTH_CHAMPION, tracking_id="tx1", now=clock.now)
        assert "Data export" in await checker.features("user-1")

        clock.advance(days=60)
        assert "Data export" not in await checker.features("user-1")
