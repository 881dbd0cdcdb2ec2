"""
writerdesk/features/entitlements/tiers.py

Quota and feature policy per subscription tier.
"""

from dataclasses import dataclass
from typing import Dict, Optional

from writerdesk.models.entitlement import Tier, UNLIMITED


@dataclass(frozen=True)
class TierPolicy:
    tier: Tier
    name: str
    tokens_limit: int
    max_agents: int
    max_tasks: int
    purchasable: bool = False


TIER_POLICIES: Dict[str, TierPolicy] = {
    Tier.FREE.value: TierPolicy(Tier.FREE, "Free", tokens_limit=50_000, max_agents=1, max_tasks=10),
    Tier.STARTER.value: TierPolicy(Tier.STARTER, "Starter", tokens_limit=250_000, max_agents=3, max_tasks=50),
    Tier.PRO.value: TierPolicy(
        Tier.PRO, "Pro", tokens_limit=1_000_000, max_agents=UNLIMITED, max_tasks=UNLIMITED, purchasable=True
    ),
    Tier.UNLIMITED.value: TierPolicy(
        Tier.UNLIMITED, "Unlimited", tokens_limit=UNLIMITED, max_agents=UNLIMITED, max_tasks=UNLIMITED
    ),
}

PURCHASABLE_TIERS = tuple(key for key, policy in TIER_POLICIES.items() if policy.purchasable)

# Tiers a provider subscription can grant; free never carries a subscription ref
SUBSCRIPTION_TIERS = tuple(key for key in TIER_POLICIES if key != Tier.FREE.value)

FREE_TOKENS_LIMIT = TIER_POLICIES[Tier.FREE.value].tokens_limit


def get_policy(tier: str) -> TierPolicy:
    """Policy for a tier; unknown tiers fall back to free."""
    key = tier.value if isinstance(tier, Tier) else str(tier)
    return TIER_POLICIES.get(key, TIER_POLICIES[Tier.FREE.value])


def parse_tier(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    raw = value.value if isinstance(value, Tier) else str(value)
    normalized = raw.strip().lower()
    return normalized if normalized in TIER_POLICIES else None


def tokens_limit_for(tier: str) -> int:
    return get_policy(tier).tokens_limit


def parse_subscription_tier(value: Optional[str]) -> Optional[str]:
    """Like parse_tier, but only tiers a paid subscription can grant."""
    tier = parse_tier(value)
    return tier if tier in SUBSCRIPTION_TIERS else None
