"""
Tier Catalog
============
Static table of subscription tiers: price, rank and feature set.

Prices are catalog data in KES (the push-payment currency); no conversion
happens here.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from subscriptions.errors import ValidationError


class Tier(str, Enum):
    """Subscription tiers. COMMUNITY_ADVOCATE is the free tier."""
    COMMUNITY_ADVOCATE = "community_advocate"
    HEALTH_CHAMPION = "health_champion"
    GLOBAL_ADVOCATE = "global_advocate"
    ENTERPRISE = "enterprise"

    @property
    def rank(self) -> int:
        return TIER_CATALOG[self].rank


class TierInfo(BaseModel):
    tier: Tier
    name: str
    rank: int
    price: int  # whole KES per month
    purchasable: bool = True  # False: assigned by admins only, never via push payment
    features: list[str] = Field(default_factory=list)


TIER_CATALOG: dict[Tier, TierInfo] = {
    Tier.COMMUNITY_ADVOCATE: TierInfo(
        tier=Tier.COMMUNITY_ADVOCATE,
        name="Community Advocate",
        rank=0,
        price=0,
        features=[
            "30-day symptom history",
            "Basic AI insights",
            "Education modules",
            "Community tracking",
        ],
    ),
    Tier.HEALTH_CHAMPION: TierInfo(
        tier=Tier.HEALTH_CHAMPION,
        name="Health Champion",
        rank=1,
        price=150,
        features=[
            "Unlimited symptom history",
            "Advanced AI insights",
            "Weekly personalized reports",
            "Data export",
            "Priority support",
            "Family account sharing",
        ],
    ),
    Tier.GLOBAL_ADVOCATE: TierInfo(
        tier=Tier.GLOBAL_ADVOCATE,
        name="Global Advocate",
        rank=2,
        price=400,
        features=[
            "All Health Champion features",
            "Expert consultations",
            "Research participation",
            "Advanced analytics",
            "Impact reports",
            "Family coordination tools",
        ],
    ),
    Tier.ENTERPRISE: TierInfo(
        tier=Tier.ENTERPRISE,
        name="Enterprise",
        rank=3,
        price=0,
        purchasable=False,
        features=["All Global Advocate features", "Organisation dashboards"],
    ),
}

FREE_TIER = Tier.COMMUNITY_ADVOCATE


def get_tier_info(tier: Tier) -> TierInfo:
    return TIER_CATALOG[tier]


def parse_tier(value) -> Tier:
    """Coerce a raw tier name, raising ValidationError on anything unknown."""
    if isinstance(value, Tier):
        return value
    try:
        return Tier(value)
    except ValueError:
        raise ValidationError(f"Unknown tier: {value!r}")


def price_for(tier: Tier) -> int:
    """Push amount for a tier. Raises for tiers that can't be bought."""
    info = TIER_CATALOG[tier]
    if not info.purchasable:
        raise ValidationError(f"Tier {tier.value} is not available for purchase")
    return info.price


def is_premium(tier: Optional[Tier]) -> bool:
    return tier is not None and tier != FREE_TIER


def validate_amount(tier: Tier, amount: float) -> bool:
    """Check a reported payment amount against the catalog price (1% tolerance)."""
    expected = TIER_CATALOG[tier].price
    return abs(amount - expected) <= expected * 0.01
