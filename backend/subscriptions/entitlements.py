"""Read-only entitlement checks consumed by the rest of the application."""

from datetime import datetime
from typing import Callable

from subscriptions.errors import UnknownUser
from subscriptions.ledger import SubscriptionLedger
from subscriptions.models import SubscriptionDetails, SubscriptionStatus, utcnow
from subscriptions.tiers import FREE_TIER, Tier, get_tier_info, parse_tier


class EntitlementChecker:
    """
    Thin facade over the ledger. Never writes; an expired premium row simply
    reads as not entitled until something explicitly changes it.
    """

    def __init__(self, ledger: SubscriptionLedger, clock: Callable[[], datetime] = utcnow):
        self.ledger = ledger
        self._clock = clock

    async def get_status(self, user_id: str) -> SubscriptionStatus:
        details = await self.ledger.get_status(user_id, now=self._clock())
        return details.status

    async def get_subscription_details(self, user_id: str) -> SubscriptionDetails:
        return await self.ledger.get_status(user_id, now=self._clock())

    async def has_active_subscription(self, user_id: str) -> bool:
        try:
            return await self.get_status(user_id) == SubscriptionStatus.ACTIVE
        except UnknownUser:
            return False

    async def effective_tier(self, user_id: str) -> Tier:
        """The tier the user can actually use right now (expired premium -> free)."""
        try:
            details = await self.get_subscription_details(user_id)
        except UnknownUser:
            return FREE_TIER
        if details.status == SubscriptionStatus.ACTIVE:
            return details.tier
        return FREE_TIER

    async def meets_tier(self, user_id: str, required) -> bool:
        required_tier = parse_tier(required)
        if required_tier == FREE_TIER:
            return True
        return (await self.effective_tier(user_id)).rank >= required_tier.rank

    async def features(self, user_id: str) -> list[str]:
        return list(get_tier_info(await self.effective_tier(user_id)).features)
