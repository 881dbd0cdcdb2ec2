"""
writerdesk/features/billing/history.py

Billing audit history.

Handles:
- Tier/status transitions of entitlement records (subscription history)
- Invoice payments and failures (payment history)
- Aggregate subscription analytics over both
"""
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy import select, insert, func
from sqlalchemy.exc import IntegrityError

from writerdesk.core.database import get_db_session, entitlements, payment_history, subscription_history
from writerdesk.features.billing.events import InvoiceSnapshot
from writerdesk.models.entitlement import (
    BillingPeriod,
    EntitlementRecord,
    SubscriptionStatus,
    Tier,
    ensure_utc,
    utc_now,
)


logger = logging.getLogger(__name__)

PAYMENT_SUCCEEDED = "succeeded"
PAYMENT_FAILED = "failed"

# Statuses that still bill the customer
_BILLING_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIAL.value, SubscriptionStatus.PAST_DUE.value)


def _value(v: Any) -> Any:
    return v.value if hasattr(v, "value") else v


def _row_dict(row) -> Dict[str, Any]:
    data = dict(row._mapping)
    # SQLite returns naive datetimes
    return {k: ensure_utc(v) if isinstance(v, datetime) else v for k, v in data.items()}


def record_transition(
    user_id: str,
    before: Optional[EntitlementRecord],
    after: EntitlementRecord,
    *,
    source: str,
    source_event_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Append a history row when tier or status changed. Returns True if one was written."""
    from_tier = _value(before.tier) if before else None
    from_status = _value(before.status) if before else None
    to_tier = _value(after.tier)
    to_status = _value(after.status)
    if from_tier == to_tier and from_status == to_status:
        return False

    with get_db_session() as session:
        session.execute(
            insert(subscription_history).values(
                user_id=user_id,
                from_tier=from_tier,
                to_tier=to_tier,
                from_status=from_status,
                to_status=to_status,
                billing_subscription_ref=after.billing_subscription_ref,
                source=source,
                source_event_id=source_event_id,
                changed_at=ensure_utc(now) or utc_now(),
            )
        )
    logger.info(
        "[billing] subscription transition",
        extra={"user_id": user_id, "tier": to_tier, "status": to_status, "source": source},
    )
    return True


def get_subscription_history(user_id: str, limit: int = 20) -> List[Dict[str, Any]]:
    """Newest first."""
    query = (
        select(subscription_history)
        .where(subscription_history.c.user_id == user_id)
        .order_by(subscription_history.c.changed_at.desc(), subscription_history.c.id.desc())
        .limit(limit)
    )
    with get_db_session() as session:
        rows = session.execute(query).fetchall()
    return [_row_dict(row) for row in rows]


def record_payment(
    user_id: str,
    invoice: InvoiceSnapshot,
    status: str,
    *,
    tier: str,
    billing_period: Optional[str] = None,
    source_event_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    """
    Store one invoice outcome.

    Idempotent per (invoice, status): the provider sends both invoice.paid
    and invoice.payment_succeeded for the same invoice, and redeliveries
    replay them. Returns False when the row already exists.
    """
    if not invoice.invoice_id:
        return False
    amount = invoice.amount_paid if status == PAYMENT_SUCCEEDED else invoice.amount_due
    try:
        with get_db_session() as session:
            session.execute(
                insert(payment_history).values(
                    user_id=user_id,
                    stripe_invoice_id=invoice.invoice_id,
                    stripe_payment_intent_id=invoice.payment_intent_id,
                    stripe_subscription_id=invoice.subscription_id,
                    amount_cents=amount,
                    currency=invoice.currency,
                    status=status,
                    subscription_tier=_value(tier),
                    billing_period=billing_period,
                    period_start=invoice.period_start,
                    period_end=invoice.period_end,
                    description=invoice.description,
                    receipt_url=invoice.receipt_url,
                    source_event_id=source_event_id,
                    recorded_at=ensure_utc(now) or utc_now(),
                )
            )
    except IntegrityError:
        return False
    return True


def get_payment_history(user_id: str, limit: int = 10) -> List[Dict[str, Any]]:
    """Newest first."""
    query = (
        select(payment_history)
        .where(payment_history.c.user_id == user_id)
        .order_by(payment_history.c.recorded_at.desc(), payment_history.c.id.desc())
        .limit(limit)
    )
    with get_db_session() as session:
        rows = session.execute(query).fetchall()
    return [_row_dict(row) for row in rows]


@dataclass(frozen=True)
class SubscriptionAnalytics:
    total_users: int
    free_users: int
    pro_users: int
    trial_users: int
    active_subscriptions: int
    canceled_subscriptions: int
    mrr_cents: int
    total_revenue_this_month_cents: int

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


def _monthly_cents(amount: int, billing_period: Optional[str]) -> int:
    if billing_period == BillingPeriod.YEARLY.value:
        return amount // 12
    return amount


def get_subscription_analytics(now: Optional[datetime] = None) -> SubscriptionAnalytics:
    """
    Snapshot of the subscriber base.

    MRR sums the latest successful payment of every subscription that is
    still billing, with yearly payments spread over twelve months.
    Revenue this month sums successful payments since the first of the
    current UTC month.
    """
    now = ensure_utc(now) or utc_now()
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    e = entitlements.c
    p = payment_history.c

    with get_db_session() as session:
        counts = session.execute(
            select(e.tier, e.status, func.count().label("n")).group_by(e.tier, e.status)
        ).fetchall()
        billing_refs = {
            row.billing_subscription_ref
            for row in session.execute(
                select(e.billing_subscription_ref)
                .where(e.billing_subscription_ref.is_not(None))
                .where(e.status.in_(_BILLING_STATUSES))
            ).fetchall()
        }
        payments = session.execute(
            select(p.stripe_subscription_id, p.amount_cents, p.billing_period, p.recorded_at)
            .where(p.status == PAYMENT_SUCCEEDED)
            .order_by(p.recorded_at.asc(), p.id.asc())
        ).fetchall()
        revenue = session.execute(
            select(func.coalesce(func.sum(p.amount_cents), 0))
            .where(p.status == PAYMENT_SUCCEEDED)
            .where(p.recorded_at >= month_start)
        ).scalar()

    by_tier: Dict[str, int] = {}
    by_status: Dict[str, int] = {}
    for row in counts:
        by_tier[row.tier] = by_tier.get(row.tier, 0) + row.n
        by_status[row.status] = by_status.get(row.status, 0) + row.n

    # Ascending order: later payments overwrite earlier ones
    latest: Dict[str, int] = {}
    for row in payments:
        if row.stripe_subscription_id in billing_refs:
            latest[row.stripe_subscription_id] = _monthly_cents(row.amount_cents, row.billing_period)

    return SubscriptionAnalytics(
        total_users=sum(by_tier.values()),
        free_users=by_tier.get(Tier.FREE.value, 0),
        pro_users=by_tier.get(Tier.PRO.value, 0),
        trial_users=by_status.get(SubscriptionStatus.TRIAL.value, 0),
        active_subscriptions=len(billing_refs),
        canceled_subscriptions=by_status.get(SubscriptionStatus.CANCELED.value, 0),
        mrr_cents=sum(latest.values()),
        total_revenue_this_month_cents=int(revenue or 0),
    )
