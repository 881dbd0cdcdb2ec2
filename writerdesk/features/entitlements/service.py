"""
writerdesk/features/entitlements/service.py

Entitlement query service.

Handles:
- Gating decisions for agent/task creation and content generation
- Derived read helpers (tokens remaining, trial days remaining, trial expiry)
- Structured logs and decision counters
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional
import logging
import math

from writerdesk.core.errors import ValidationError
from writerdesk.core.metrics import entitlement_decisions_total, usage_metering_total
from writerdesk.features.entitlements.store import (
    UsageOutcome,
    default_entitlement_values,
    get_entitlement,
    increment_usage,
)
from writerdesk.features.entitlements.tiers import get_policy
from writerdesk.models.entitlement import (
    EntitlementRecord,
    SubscriptionStatus,
    UNLIMITED,
    ensure_utc,
    utc_now,
)


logger = logging.getLogger(__name__)

DEFAULT_PAST_DUE_GRACE_DAYS = 3


class Action(str, Enum):
    CREATE_AGENT = "create_agent"
    CREATE_TASK = "create_task"
    GENERATE_CONTENT = "generate_content"


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[str] = None


def parse_action(value) -> Action:
    try:
        return Action(value)
    except ValueError:
        allowed = ", ".join(a.value for a in Action)
        raise ValidationError(f"Unknown action '{value}'. Expected one of: {allowed}")


def _free_default(user_id: str, now: datetime) -> EntitlementRecord:
    """Free-tier view for users with no stored record (not persisted)."""
    return EntitlementRecord(**default_entitlement_values(user_id, now))


def tokens_remaining(record: Optional[EntitlementRecord], now: Optional[datetime] = None) -> int:
    """Tokens left this period; -1 when unlimited, 0 with no record."""
    if record is None:
        return 0
    if record.is_unlimited:
        return UNLIMITED
    now = ensure_utc(now) or utc_now()
    return max(0, record.tokens_limit - record.usage_at(now))


def is_trial_expired(record: Optional[EntitlementRecord], now: Optional[datetime] = None) -> bool:
    if record is None or record.trial_ends_at is None:
        return False
    now = ensure_utc(now) or utc_now()
    return record.status == SubscriptionStatus.TRIAL and now > record.trial_ends_at


def trial_days_remaining(record: Optional[EntitlementRecord], now: Optional[datetime] = None) -> int:
    """Whole days until the trial ends, rounded up and floored at 0."""
    if record is None or record.trial_ends_at is None or record.status != SubscriptionStatus.TRIAL:
        return 0
    now = ensure_utc(now) or utc_now()
    seconds = (record.trial_ends_at - now).total_seconds()
    return max(0, math.ceil(seconds / timedelta(days=1).total_seconds()))


def _billing_block(record: EntitlementRecord, now: datetime, grace_days: int) -> Optional[str]:
    if record.status == SubscriptionStatus.CANCELED:
        return "Your subscription was canceled. Please resubscribe to continue."
    if record.status == SubscriptionStatus.PAST_DUE:
        since = record.past_due_since or record.updated_at
        if now - since > timedelta(days=grace_days):
            return "Your last payment failed. Please update your billing details to continue."
    return None


def _count_block(record: EntitlementRecord, action: Action, current_count: Optional[int]) -> Optional[str]:
    if current_count is None or action == Action.GENERATE_CONTENT:
        return None
    policy = get_policy(record.tier)
    limit, noun = (
        (policy.max_agents, "agents") if action == Action.CREATE_AGENT else (policy.max_tasks, "tasks")
    )
    if limit == UNLIMITED or current_count < limit:
        return None
    return f"You've reached the limit of {limit} {noun} for your {policy.name} plan. Upgrade to create more."


def evaluate(
    record: EntitlementRecord,
    action: Action,
    *,
    estimated_cost: int = 0,
    current_count: Optional[int] = None,
    now: Optional[datetime] = None,
    grace_days: int = DEFAULT_PAST_DUE_GRACE_DAYS,
) -> Decision:
    """Pure decision over a record; see can_perform for the lookup wrapper."""
    if estimated_cost < 0:
        raise ValidationError("estimated_cost must not be negative")
    now = ensure_utc(now) or utc_now()

    reason = _billing_block(record, now, grace_days)
    if reason is None and is_trial_expired(record, now):
        reason = "Trial expired. Please upgrade to continue."
    if reason is None:
        reason = _count_block(record, action, current_count)
    if reason:
        return Decision(allowed=False, reason=reason)

    if record.is_unlimited:
        return Decision(allowed=True)

    used = record.usage_at(now)
    if used + estimated_cost <= record.tokens_limit:
        return Decision(allowed=True)

    remaining = max(0, record.tokens_limit - used)
    return Decision(
        allowed=False,
        reason=f"Not enough tokens: {remaining} remaining this period, {estimated_cost} required.",
    )


def can_perform(
    user_id: str,
    action,
    *,
    estimated_cost: int = 0,
    current_count: Optional[int] = None,
    now: Optional[datetime] = None,
    grace_days: int = DEFAULT_PAST_DUE_GRACE_DAYS,
) -> Decision:
    """
    May `user_id` perform `action` now?

    Users without a record are evaluated as free tier with the default quota.
    """
    if not user_id:
        raise ValidationError("user_id is required")
    action = parse_action(action)
    now = ensure_utc(now) or utc_now()
    record = get_entitlement(user_id) or _free_default(user_id, now)

    decision = evaluate(
        record,
        action,
        estimated_cost=estimated_cost,
        current_count=current_count,
        now=now,
        grace_days=grace_days,
    )
    entitlement_decisions_total.inc(labels={"action": action.value, "allowed": str(decision.allowed).lower()})
    if not decision.allowed:
        logger.info(
            "[entitlements] action denied",
            extra={"user_id": user_id, "action": action.value, "reason": decision.reason},
        )
    return decision


def record_usage(user_id: str, amount: int, *, now: Optional[datetime] = None) -> UsageOutcome:
    """Meter generated tokens; a denied outcome leaves the counter untouched."""
    outcome = increment_usage(user_id, amount, now=now)
    usage_metering_total.inc(labels={"outcome": "allowed" if outcome.allowed else "quota_exceeded"})
    return outcome
