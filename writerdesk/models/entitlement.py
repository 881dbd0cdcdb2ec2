"""
writerdesk/models/entitlement.py

Entitlement record: a user's subscription tier, billing status,
billing-period boundaries and usage counter.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


UNLIMITED = -1


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (SQLite round-trips) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Tier(str, Enum):
    FREE = "free"
    STARTER = "starter"
    PRO = "pro"
    UNLIMITED = "unlimited"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIAL = "trial"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INACTIVE = "inactive"


class BillingPeriod(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class EntitlementRecord(BaseModel):
    """
    One row per user. Never deleted: cancellation reverts to free/canceled.

    tokens_limit == -1 means unlimited. usage_period_start records the period
    the counter was accumulated in; when it no longer matches
    current_period_start the counter belongs to a finished period.
    """
    model_config = ConfigDict(frozen=True, use_enum_values=True)

    user_id: str
    tier: Tier = Tier.FREE
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    billing_customer_ref: Optional[str] = None
    billing_subscription_ref: Optional[str] = None
    billing_price_ref: Optional[str] = None
    trial_ends_at: Optional[datetime] = None
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool = False
    tokens_used_this_period: int = 0
    tokens_limit: int
    usage_period_start: datetime
    past_due_since: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_unlimited(self) -> bool:
        return self.tokens_limit == UNLIMITED

    def period_rolled_over(self, now: datetime) -> bool:
        """True when the stored counter belongs to a finished period."""
        if self.usage_period_start != self.current_period_start:
            return True
        # Free-tier periods are calendar windows we advance ourselves
        return self.billing_subscription_ref is None and self.current_period_end <= now

    def usage_at(self, now: datetime) -> int:
        """Effective tokens used in the period containing `now`."""
        if self.period_rolled_over(now):
            return 0
        return self.tokens_used_this_period
