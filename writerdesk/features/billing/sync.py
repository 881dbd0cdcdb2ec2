"""
writerdesk/features/billing/sync.py

Manual subscription sync.

Pulls the user's subscriptions straight from the provider and overwrites
the entitlement with what it finds. Used when webhooks were missed.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy.exc import SQLAlchemyError

from writerdesk.core.config import Settings
from writerdesk.core.errors import AppError, ConfigurationError, ValidationError
from writerdesk.features.billing.events import parse_subscription
from writerdesk.features.billing.provider import BillingProvider
from writerdesk.features.billing.reconciler import (
    HISTORY_SOURCE_SYNC,
    canceled_fields,
    map_status,
    subscription_fields,
    upsert_with_history,
)
from writerdesk.features.entitlements.store import get_entitlement
from writerdesk.features.entitlements.tiers import FREE_TOKENS_LIMIT
from writerdesk.models.entitlement import EntitlementRecord, SubscriptionStatus, Tier, ensure_utc, utc_now


logger = logging.getLogger(__name__)

LIVE_STATUSES = ("active", "trialing", "past_due")


@dataclass(frozen=True)
class SyncResult:
    success: bool
    message: str
    tier: Optional[str] = None
    status: Optional[str] = None


def pick_subscription(subscriptions: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """First live subscription, else the most recently created one."""
    if not subscriptions:
        return None
    for sub in subscriptions:
        if sub.get("status") in LIVE_STATUSES:
            return sub
    return max(subscriptions, key=lambda sub: sub.get("created") or 0)


def _no_subscription_fields() -> Dict[str, Any]:
    return {
        "tier": Tier.FREE,
        "status": SubscriptionStatus.INACTIVE,
        "billing_subscription_ref": None,
        "billing_price_ref": None,
        "trial_ends_at": None,
        "cancel_at_period_end": False,
        "tokens_limit": FREE_TOKENS_LIMIT,
    }


class SubscriptionSync:
    def __init__(self, settings: Settings, provider: Optional[BillingProvider]):
        self.settings = settings
        self.provider = provider

    def _find_customer(self, user_id: str, contact_address: Optional[str]) -> Optional[str]:
        if contact_address:
            return self.provider.find_customer(email=contact_address)
        record = get_entitlement(user_id)
        if record and record.billing_customer_ref:
            return record.billing_customer_ref
        return self.provider.find_customer(user_id=user_id)

    def _write(self, user_id: str, fields: Dict[str, Any], now: datetime) -> EntitlementRecord:
        return upsert_with_history(user_id, fields, source=HISTORY_SOURCE_SYNC, now=now)

    def sync_from_provider(
        self,
        user_id: str,
        contact_address: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> SyncResult:
        """
        Reconcile one user against the provider. Never raises; failures
        come back as success=False with the reason in `message`.

        A live subscription whose tier cannot be resolved (price not
        configured, no tier metadata) only links the subscription when the
        user already holds a paid tier; a free user stays free and unlinked.
        """
        now = ensure_utc(now) or utc_now()
        message = "Subscription synced"
        try:
            if not user_id:
                raise ValidationError("user_id is required")
            if self.provider is None:
                raise ConfigurationError("Stripe is not configured. Set STRIPE_SECRET_KEY.")

            customer_id = self._find_customer(user_id, contact_address)
            if not customer_id:
                fields = {**_no_subscription_fields(), "billing_customer_ref": None}
                record = self._write(user_id, fields, now)
                return SyncResult(True, "No billing customer found; set to free tier", record.tier, record.status)

            subscription = pick_subscription(self.provider.list_subscriptions(customer_id))
            if subscription is None:
                fields = {**_no_subscription_fields(), "billing_customer_ref": customer_id}
                record = self._write(user_id, fields, now)
                return SyncResult(True, "No subscriptions found; set to free tier", record.tier, record.status)

            snapshot = parse_subscription(subscription)
            if map_status(snapshot.status) == SubscriptionStatus.CANCELED:
                fields = {**canceled_fields(now), "billing_customer_ref": customer_id}
                record = self._write(user_id, fields, now)
                return SyncResult(True, "Subscription canceled; reverted to free tier", record.tier, record.status)

            fields = {**subscription_fields(snapshot, self.settings), "billing_customer_ref": customer_id}
            existing = get_entitlement(user_id)
            if "tier" in fields or (existing is not None and existing.tier != Tier.FREE.value):
                fields["billing_subscription_ref"] = snapshot.subscription_id
            else:
                logger.warning(
                    "[billing] subscription price not mapped to a tier",
                    extra={"user_id": user_id, "price_id": snapshot.price_id},
                )
                message = "Subscription price is not mapped to a tier; left on free tier"
            record = self._write(user_id, fields, now)
        except (AppError, SQLAlchemyError) as e:
            logger.error("[billing] sync failed", extra={"user_id": user_id, "error": str(e)}, exc_info=True)
            return SyncResult(False, f"Sync failed: {e}")

        logger.info(
            "[billing] subscription synced",
            extra={"user_id": user_id, "tier": record.tier, "status": record.status},
        )
        return SyncResult(True, message, record.tier, record.status)
