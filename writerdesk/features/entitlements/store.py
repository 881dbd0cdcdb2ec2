"""
writerdesk/features/entitlements/store.py

Entitlement persistence.

Handles:
- Lazy record creation on first login
- Partial-field upserts (only the named columns are written)
- Atomic check-and-increment usage metering with period rollover
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Mapping, Optional
import logging

from sqlalchemy import select, insert, update, or_, case, func, literal, DateTime
from sqlalchemy.exc import IntegrityError

from writerdesk.core.database import get_db_session, entitlements
from writerdesk.core.errors import NotFoundError, ValidationError
from writerdesk.features.entitlements.tiers import FREE_TOKENS_LIMIT
from writerdesk.models.entitlement import (
    EntitlementRecord,
    SubscriptionStatus,
    Tier,
    UNLIMITED,
    ensure_utc,
    utc_now,
)


logger = logging.getLogger(__name__)

FREE_PERIOD = timedelta(days=30)

# Columns callers may write through upsert_entitlement
WRITABLE_FIELDS = frozenset({
    "tier",
    "status",
    "billing_customer_ref",
    "billing_subscription_ref",
    "billing_price_ref",
    "trial_ends_at",
    "current_period_start",
    "current_period_end",
    "cancel_at_period_end",
    "tokens_used_this_period",
    "tokens_limit",
    "usage_period_start",
})

_DATETIME_FIELDS = ("trial_ends_at", "current_period_start", "current_period_end", "usage_period_start")


@dataclass(frozen=True)
class UsageOutcome:
    """Result of a metering call; allowed=False is the QuotaExceeded case."""
    allowed: bool
    record: EntitlementRecord
    requested: int
    tokens_remaining: int
    reason: Optional[str] = None


def _row_to_record(row) -> EntitlementRecord:
    data = dict(row._mapping)
    for key in _DATETIME_FIELDS + ("past_due_since", "created_at", "updated_at"):
        data[key] = ensure_utc(data.get(key))
    return EntitlementRecord(**data)


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return ensure_utc(value)
    return value


def _clean_fields(fields: Mapping[str, Any]) -> Dict[str, Any]:
    unknown = set(fields) - WRITABLE_FIELDS
    if unknown:
        raise ValidationError(f"Unknown entitlement fields: {', '.join(sorted(unknown))}")
    return {key: _plain(value) for key, value in fields.items()}


def default_entitlement_values(user_id: str, now: datetime, signup_trial_days: int = 0) -> Dict[str, Any]:
    """Column values for a brand-new free-tier record."""
    values: Dict[str, Any] = {
        "user_id": user_id,
        "tier": Tier.FREE.value,
        "status": SubscriptionStatus.ACTIVE.value,
        "billing_customer_ref": None,
        "billing_subscription_ref": None,
        "billing_price_ref": None,
        "trial_ends_at": None,
        "current_period_start": now,
        "current_period_end": now + FREE_PERIOD,
        "cancel_at_period_end": False,
        "tokens_used_this_period": 0,
        "tokens_limit": FREE_TOKENS_LIMIT,
        "usage_period_start": now,
        "past_due_since": None,
        "created_at": now,
        "updated_at": now,
    }
    if signup_trial_days > 0:
        values["status"] = SubscriptionStatus.TRIAL.value
        values["trial_ends_at"] = now + timedelta(days=signup_trial_days)
    return values


def get_entitlement(user_id: str) -> Optional[EntitlementRecord]:
    """Return the user's record, or None when it does not exist."""
    with get_db_session() as session:
        row = session.execute(
            select(entitlements).where(entitlements.c.user_id == user_id)
        ).first()
    return _row_to_record(row) if row else None


def require_entitlement(user_id: str) -> EntitlementRecord:
    record = get_entitlement(user_id)
    if record is None:
        raise NotFoundError(f"No entitlement found for user {user_id}")
    return record


def ensure_entitlement(
    user_id: str,
    *,
    now: Optional[datetime] = None,
    signup_trial_days: int = 0,
) -> EntitlementRecord:
    """Create the free-tier record on first login; return the existing one otherwise."""
    if not user_id:
        raise ValidationError("user_id is required")

    existing = get_entitlement(user_id)
    if existing:
        return existing

    now = ensure_utc(now) or utc_now()
    try:
        with get_db_session() as session:
            session.execute(
                insert(entitlements).values(**default_entitlement_values(user_id, now, signup_trial_days))
            )
        logger.info("[entitlements] created default record", extra={"user_id": user_id})
    except IntegrityError:
        # Concurrent first login already created it
        pass
    return require_entitlement(user_id)


def _status_side_effects(values: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    """past_due_since follows status in the same UPDATE statement."""
    if "status" not in values:
        return {}
    if values["status"] == SubscriptionStatus.PAST_DUE.value:
        since = func.coalesce(entitlements.c.past_due_since, literal(now, DateTime(timezone=True)))
        return {
            "past_due_since": case(
                (entitlements.c.status == SubscriptionStatus.PAST_DUE.value, since),
                else_=literal(now, DateTime(timezone=True)),
            )
        }
    return {"past_due_since": None}


def upsert_entitlement(
    user_id: str,
    fields: Mapping[str, Any],
    *,
    now: Optional[datetime] = None,
) -> EntitlementRecord:
    """
    Merge `fields` into the user's record, creating it with free defaults if absent.

    Only the named columns are written, so concurrent writers that own
    different fields do not overwrite each other. Always bumps updated_at.
    """
    if not user_id:
        raise ValidationError("user_id is required")

    now = ensure_utc(now) or utc_now()
    values = _clean_fields(fields)
    update_values = {**values, **_status_side_effects(values, now), "updated_at": now}

    with get_db_session() as session:
        result = session.execute(
            update(entitlements)
            .where(entitlements.c.user_id == user_id)
            .values(**update_values)
        )
        updated = result.rowcount > 0

    if not updated:
        insert_values = {**default_entitlement_values(user_id, now), **values}
        if insert_values["status"] == SubscriptionStatus.PAST_DUE.value:
            insert_values["past_due_since"] = now
        try:
            with get_db_session() as session:
                session.execute(insert(entitlements).values(**insert_values))
        except IntegrityError:
            # Lost the insert race; apply as a merge onto the winner's row
            with get_db_session() as session:
                session.execute(
                    update(entitlements)
                    .where(entitlements.c.user_id == user_id)
                    .values(**update_values)
                )

    return require_entitlement(user_id)


def increment_usage(
    user_id: str,
    amount: int,
    *,
    now: Optional[datetime] = None,
) -> UsageOutcome:
    """
    Atomically meter `amount` tokens against the user's quota.

    Period rollover and the quota check are conditional UPDATEs inside one
    transaction, so two concurrent calls that together exceed the quota
    cannot both succeed. The counter is never incremented past the limit.
    """
    if not user_id:
        raise ValidationError("user_id is required")
    if amount is None or amount <= 0:
        raise ValidationError("amount must be a positive integer")

    now = ensure_utc(now) or utc_now()
    c = entitlements.c

    with get_db_session() as session:
        # Free-tier calendar period ended: start a new one
        session.execute(
            update(entitlements)
            .where(c.user_id == user_id)
            .where(c.billing_subscription_ref.is_(None))
            .where(c.current_period_end <= now)
            .values(
                current_period_start=now,
                current_period_end=now + FREE_PERIOD,
                usage_period_start=now,
                tokens_used_this_period=0,
                updated_at=now,
            )
        )
        # Provider moved the billing period: counter belongs to the old one
        session.execute(
            update(entitlements)
            .where(c.user_id == user_id)
            .where(c.usage_period_start != c.current_period_start)
            .values(
                usage_period_start=c.current_period_start,
                tokens_used_this_period=0,
                updated_at=now,
            )
        )
        result = session.execute(
            update(entitlements)
            .where(c.user_id == user_id)
            .where(
                or_(
                    c.tokens_limit == UNLIMITED,
                    c.tokens_used_this_period + amount <= c.tokens_limit,
                )
            )
            .values(
                tokens_used_this_period=c.tokens_used_this_period + amount,
                updated_at=now,
            )
        )
        allowed = result.rowcount == 1
        row = session.execute(select(entitlements).where(c.user_id == user_id)).first()

    if row is None:
        raise NotFoundError(f"No entitlement found for user {user_id}")

    record = _row_to_record(row)
    if record.is_unlimited:
        remaining = UNLIMITED
    else:
        remaining = max(0, record.tokens_limit - record.tokens_used_this_period)

    if allowed:
        return UsageOutcome(allowed=True, record=record, requested=amount, tokens_remaining=remaining)

    reason = (
        f"Token quota exceeded: {remaining} tokens remaining this period, "
        f"{amount} requested."
    )
    logger.warning(
        "[entitlements] usage rejected",
        extra={"user_id": user_id, "requested": amount, "remaining": remaining},
    )
    return UsageOutcome(
        allowed=False, record=record, requested=amount, tokens_remaining=remaining, reason=reason
    )
