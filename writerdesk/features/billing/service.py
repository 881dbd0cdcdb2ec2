"""
writerdesk/features/billing/service.py

Billing service orchestrator.

Coordinates:
- Provider construction from settings
- Webhook processing (verify, ledger, reconcile)
- Checkout, portal and sync entry points

All Stripe-specific code is in stripe_provider.py.
"""
import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Mapping, Optional

from sqlalchemy import func, or_, select, insert, update
from sqlalchemy.exc import IntegrityError

from writerdesk.core.config import Settings
from writerdesk.core.database import get_db_session, billing_events
from writerdesk.core.errors import ConfigurationError
from writerdesk.core.logging import log_event
from writerdesk.core.metrics import billing_webhook_events_total, billing_webhook_rejected_total
from writerdesk.features.billing.checkout import CheckoutService
from writerdesk.features.billing.events import decode_event
from writerdesk.features.billing.provider import BillingProvider, BillingWebhookError
from writerdesk.features.billing.reconciler import EntitlementReconciler
from writerdesk.features.billing.stripe_provider import StripeProvider
from writerdesk.features.billing.sync import SubscriptionSync
from writerdesk.models.entitlement import utc_now


DUPLICATE = "duplicate"

# An unfinished delivery older than this is assumed dead and may be reclaimed
IN_FLIGHT_TIMEOUT = timedelta(minutes=5)


@dataclass(frozen=True)
class WebhookResult:
    event_id: str
    event_type: str
    outcome: str
    user_id: Optional[str] = None


def billing_enabled(settings: Settings) -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(settings.STRIPE_SECRET_KEY)


def get_provider(settings: Settings) -> Optional[BillingProvider]:
    """Build the Stripe provider, or None when no secret key is configured."""
    if not billing_enabled(settings):
        return None
    return StripeProvider(
        settings.STRIPE_SECRET_KEY,
        settings.STRIPE_WEBHOOK_SECRET,
        timeout_seconds=settings.STRIPE_TIMEOUT_SECONDS,
        webhook_tolerance=settings.WEBHOOK_TOLERANCE_SECONDS,
    )


def _claim_event(
    event_id: str,
    event_type: str,
    user_id: Optional[str],
    payload_hash: str,
    now: Optional[datetime] = None,
) -> bool:
    """
    Record the delivery in the ledger.

    Returns False when the event was already processed successfully or
    another delivery is still working on it. A row left by a failed
    attempt, or by an attempt older than IN_FLIGHT_TIMEOUT, is reclaimed
    with its retry_count bumped so the redelivery runs again.
    """
    now = now or utc_now()
    c = billing_events.c
    with get_db_session() as session:
        reclaimed = session.execute(
            update(billing_events)
            .where(c.stripe_event_id == event_id)
            .where(c.processed.is_(False))
            .where(or_(c.error.is_not(None), func.coalesce(c.last_attempt_at, c.received_at) < now - IN_FLIGHT_TIMEOUT))
            .values(error=None, payload_hash=payload_hash, retry_count=c.retry_count + 1, last_attempt_at=now)
        )
        if reclaimed.rowcount > 0:
            return True
        if session.execute(select(c.id).where(c.stripe_event_id == event_id)).fetchone():
            return False

    try:
        with get_db_session() as session:
            session.execute(
                insert(billing_events).values(
                    stripe_event_id=event_id,
                    event_type=event_type,
                    user_id=user_id,
                    payload_hash=payload_hash,
                    processed=False,
                    retry_count=0,
                    received_at=now,
                    last_attempt_at=now,
                )
            )
    except IntegrityError:
        # Race condition: another delivery already inserted this event
        return False
    return True


def _finish_event(event_id: str, error: Optional[str] = None, now: Optional[datetime] = None) -> None:
    values = {"error": error} if error else {"processed": True, "processed_at": now or utc_now(), "error": None}
    with get_db_session() as session:
        session.execute(
            update(billing_events).where(billing_events.c.stripe_event_id == event_id).values(**values)
        )


class BillingServices:
    """Billing components wired to one settings object and one provider."""

    def __init__(self, settings: Settings, provider: Optional[BillingProvider] = None):
        self.settings = settings
        self.provider = provider
        self.reconciler = EntitlementReconciler(settings, provider)
        self.checkout = CheckoutService(settings, provider)
        self.sync = SubscriptionSync(settings, provider)

    @classmethod
    def from_settings(cls, settings: Settings) -> "BillingServices":
        return cls(settings, get_provider(settings))

    def process_webhook(self, headers: Mapping[str, str], body: bytes) -> WebhookResult:
        """
        Process a billing webhook delivery (idempotent).

        1. Verify signature over the raw body (fail closed)
        2. Skip if the event id was already processed
        3. Decode and apply
        4. Mark processed, or record the error and re-raise for redelivery

        Raises:
            ConfigurationError: Billing or the webhook secret is not configured
            BillingWebhookError: Signature or payload invalid
        """
        if self.provider is None:
            raise ConfigurationError("Stripe is not configured. Set STRIPE_SECRET_KEY.")
        if not self.settings.STRIPE_WEBHOOK_SECRET:
            raise ConfigurationError("STRIPE_WEBHOOK_SECRET is not configured")

        try:
            payload = self.provider.verify_webhook(headers, body)
        except BillingWebhookError as e:
            billing_webhook_rejected_total.inc(labels={"reason": "invalid_signature"})
            log_event("warning", "billing.webhook.rejected", error_code=e.code, extra={"reason": e.message})
            raise

        event = decode_event(payload)
        user_id = getattr(event, "user_id", None)
        payload_hash = hashlib.sha256(body).hexdigest()

        if not _claim_event(event.event_id, event.event_type, user_id, payload_hash):
            billing_webhook_events_total.inc(labels={"event_type": event.event_type, "outcome": DUPLICATE})
            log_event("info", "billing.webhook.duplicate", event_id=event.event_id, event_type=event.event_type)
            return WebhookResult(event.event_id, event.event_type, DUPLICATE, user_id)

        try:
            outcome = self.reconciler.apply(event)
        except Exception as e:
            error_code = getattr(e, "code", "internal_error")
            _finish_event(event.event_id, error=f"{error_code}: {e}")
            billing_webhook_events_total.inc(labels={"event_type": event.event_type, "outcome": "error"})
            log_event(
                "error",
                "billing.webhook.failed",
                user_id=user_id,
                event_id=event.event_id,
                event_type=event.event_type,
                error_code=error_code,
            )
            raise

        _finish_event(event.event_id)
        billing_webhook_events_total.inc(labels={"event_type": event.event_type, "outcome": outcome})
        log_event(
            "info",
            "billing.webhook.processed",
            user_id=user_id,
            event_id=event.event_id,
            event_type=event.event_type,
            extra={"outcome": outcome},
        )
        return WebhookResult(event.event_id, event.event_type, outcome, user_id)
