"""
writerdesk/features/billing/reconciler.py

Entitlement reconciliation.

Applies decoded billing events (and provider snapshots pulled by sync)
to entitlement records. Every write goes through upsert_entitlement so
only the fields an event owns are touched. Tier/status transitions and
invoice outcomes are appended to the billing history.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
import logging

from writerdesk.core.config import Settings
from writerdesk.core.errors import ConfigurationError
from writerdesk.features.billing.alerts import TRIAL_WILL_END, enqueue_alert
from writerdesk.features.billing.events import (
    BillingEvent,
    CheckoutCompleted,
    InvoiceSnapshot,
    Malformed,
    PaymentFailed,
    PaymentSucceeded,
    SubscriptionDeleted,
    SubscriptionSnapshot,
    SubscriptionUpdated,
    TrialWillEnd,
    Unhandled,
    parse_subscription,
)
from writerdesk.features.billing.history import PAYMENT_FAILED, PAYMENT_SUCCEEDED, record_payment, record_transition
from writerdesk.features.billing.provider import BillingProvider
from writerdesk.features.entitlements.store import FREE_PERIOD, get_entitlement, upsert_entitlement
from writerdesk.features.entitlements.tiers import FREE_TOKENS_LIMIT, tokens_limit_for
from writerdesk.models.entitlement import BillingPeriod, EntitlementRecord, SubscriptionStatus, Tier, utc_now


logger = logging.getLogger(__name__)

APPLIED = "applied"
IGNORED = "ignored"
DROPPED = "dropped"

HISTORY_SOURCE_WEBHOOK = "webhook"
HISTORY_SOURCE_SYNC = "sync"

# Provider subscription status -> entitlement status
PROVIDER_STATUS_MAP = {
    "trialing": SubscriptionStatus.TRIAL,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "unpaid": SubscriptionStatus.CANCELED,
}

_PERIOD_LENGTH = {
    BillingPeriod.MONTHLY.value: timedelta(days=30),
    BillingPeriod.YEARLY.value: timedelta(days=365),
}


def map_status(provider_status: str) -> SubscriptionStatus:
    return PROVIDER_STATUS_MAP.get((provider_status or "").lower(), SubscriptionStatus.INACTIVE)


def resolve_tier(snapshot: SubscriptionSnapshot, settings: Settings) -> Optional[str]:
    """Tier from the configured price first (plan changes keep stale metadata), then metadata."""
    if snapshot.price_id:
        mapped = settings.price_map().get(snapshot.price_id)
        if mapped:
            return mapped[0]
    return snapshot.metadata_tier


def subscription_fields(snapshot: SubscriptionSnapshot, settings: Settings) -> Dict[str, Any]:
    """
    Entitlement fields owned by a subscription snapshot.

    Never includes billing refs or the usage counter; a period change is
    picked up by the metering path through usage_period_start. A trialing
    subscription without a trial end is treated as active.
    """
    status = map_status(snapshot.status)
    if status == SubscriptionStatus.TRIAL and snapshot.trial_end is None:
        status = SubscriptionStatus.ACTIVE
    fields: Dict[str, Any] = {
        "status": status,
        "trial_ends_at": snapshot.trial_end if status == SubscriptionStatus.TRIAL else None,
        "cancel_at_period_end": snapshot.cancel_at_period_end,
    }
    if snapshot.current_period_start:
        fields["current_period_start"] = snapshot.current_period_start
    if snapshot.current_period_end:
        fields["current_period_end"] = snapshot.current_period_end

    tier = resolve_tier(snapshot, settings)
    if tier:
        fields["tier"] = tier
        fields["tokens_limit"] = tokens_limit_for(tier)
        if snapshot.price_id:
            fields["billing_price_ref"] = snapshot.price_id
    return fields


def canceled_fields(now: datetime) -> Dict[str, Any]:
    """Revert to free/canceled with a fresh free-tier period starting at `now`."""
    return {
        "tier": Tier.FREE,
        "status": SubscriptionStatus.CANCELED,
        "billing_subscription_ref": None,
        "billing_price_ref": None,
        "trial_ends_at": None,
        "cancel_at_period_end": False,
        "tokens_used_this_period": 0,
        "tokens_limit": FREE_TOKENS_LIMIT,
        "current_period_start": now,
        "current_period_end": now + FREE_PERIOD,
        "usage_period_start": now,
    }


def billing_period_for(price_ref: Optional[str], settings: Settings) -> Optional[str]:
    mapped = settings.price_map().get(price_ref) if price_ref else None
    return mapped[1] if mapped else None


def upsert_with_history(
    user_id: str,
    fields: Dict[str, Any],
    *,
    source: str,
    source_event_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> EntitlementRecord:
    """upsert_entitlement, then append the tier/status transition if there was one."""
    before = get_entitlement(user_id)
    after = upsert_entitlement(user_id, fields, now=now)
    record_transition(user_id, before, after, source=source, source_event_id=source_event_id, now=after.updated_at)
    return after


class EntitlementReconciler:
    """Applies billing events to entitlements."""

    def __init__(self, settings: Settings, provider: Optional[BillingProvider]):
        self.settings = settings
        self.provider = provider

    def apply(self, event: BillingEvent) -> str:
        """
        Apply one decoded event.

        Returns the outcome: applied, ignored (unhandled type) or dropped
        (malformed, logged). Provider failures propagate so the delivery
        is retried.
        """
        if isinstance(event, CheckoutCompleted):
            self._checkout_completed(event)
        elif isinstance(event, SubscriptionUpdated):
            self._upsert(event, subscription_fields(event.subscription, self.settings))
        elif isinstance(event, SubscriptionDeleted):
            self._upsert(event, canceled_fields(event.created or utc_now()))
        elif isinstance(event, TrialWillEnd):
            self._trial_will_end(event)
        elif isinstance(event, PaymentFailed):
            record = self._upsert(event, {"status": SubscriptionStatus.PAST_DUE})
            if event.invoice is not None:
                self._record_payment(event, record, event.invoice, PAYMENT_FAILED)
        elif isinstance(event, PaymentSucceeded):
            self._record_payment(event, get_entitlement(event.user_id), event.invoice, PAYMENT_SUCCEEDED)
        elif isinstance(event, Malformed):
            logger.warning(
                "[billing] dropping malformed event",
                extra={"event_id": event.event_id, "event_type": event.event_type, "reason": event.reason},
            )
            return DROPPED
        elif isinstance(event, Unhandled):
            logger.info(
                "[billing] ignoring event type",
                extra={"event_id": event.event_id, "event_type": event.event_type},
            )
            return IGNORED
        else:
            raise TypeError(f"Unknown billing event variant: {type(event).__name__}")

        logger.info(
            "[billing] event applied",
            extra={"event_id": event.event_id, "event_type": event.event_type, "user_id": event.user_id},
        )
        return APPLIED

    def _upsert(self, event: BillingEvent, fields: Dict[str, Any]) -> EntitlementRecord:
        return upsert_with_history(
            event.user_id,
            fields,
            source=HISTORY_SOURCE_WEBHOOK,
            source_event_id=event.event_id,
        )

    def _record_payment(
        self,
        event: BillingEvent,
        record: Optional[EntitlementRecord],
        invoice: InvoiceSnapshot,
        status: str,
    ) -> None:
        recorded = record_payment(
            event.user_id,
            invoice,
            status,
            tier=record.tier if record else Tier.FREE.value,
            billing_period=billing_period_for(record.billing_price_ref if record else None, self.settings),
            source_event_id=event.event_id,
            now=event.created,
        )
        if not recorded:
            logger.info(
                "[billing] payment already recorded",
                extra={"event_id": event.event_id, "user_id": event.user_id, "status": status},
            )

    def _checkout_completed(self, event: CheckoutCompleted) -> None:
        if self.provider is None:
            raise ConfigurationError("Stripe is not configured. Set STRIPE_SECRET_KEY.")

        snapshot = parse_subscription(self.provider.retrieve_subscription(event.subscription_id))
        now = event.created or utc_now()
        period_start = snapshot.current_period_start or now
        period_end = snapshot.current_period_end or period_start + _PERIOD_LENGTH[event.billing_period]
        on_trial = snapshot.trial_end is not None and snapshot.trial_end > now

        self._upsert(
            event,
            {
                "tier": event.tier,
                "status": SubscriptionStatus.TRIAL if on_trial else SubscriptionStatus.ACTIVE,
                "billing_customer_ref": event.customer_id or snapshot.customer_id,
                "billing_subscription_ref": event.subscription_id,
                "billing_price_ref": snapshot.price_id,
                "trial_ends_at": snapshot.trial_end if on_trial else None,
                "current_period_start": period_start,
                "current_period_end": period_end,
                "cancel_at_period_end": snapshot.cancel_at_period_end,
                "tokens_used_this_period": 0,
                "tokens_limit": tokens_limit_for(event.tier),
                "usage_period_start": period_start,
            },
        )

    def _trial_will_end(self, event: TrialWillEnd) -> None:
        if event.trial_end:
            when = event.trial_end.strftime("%B %d, %Y")
            message = f"Your free trial ends on {when}. Add a payment method to keep your plan."
        else:
            message = "Your free trial is ending soon. Add a payment method to keep your plan."
        enqueue_alert(event.user_id, TRIAL_WILL_END, message, source_event_id=event.event_id)
