"""
writerdesk/features/billing/checkout.py

Checkout and billing-portal session creation.

Neither operation writes entitlements; the resulting state arrives
later through webhooks.
"""
from typing import Optional
import logging

from writerdesk.core.config import Settings
from writerdesk.core.errors import ConfigurationError, NotFoundError, ValidationError
from writerdesk.features.billing.provider import BillingProvider, CheckoutSession
from writerdesk.features.entitlements.store import get_entitlement
from writerdesk.features.entitlements.tiers import PURCHASABLE_TIERS, parse_tier
from writerdesk.models.entitlement import BillingPeriod


logger = logging.getLogger(__name__)

SUCCESS_PATH = "/dashboard?session_id={CHECKOUT_SESSION_ID}&success=true"
CANCEL_PATH = "/pricing?canceled=true"
PORTAL_RETURN_PATH = "/dashboard"


class CheckoutService:
    def __init__(self, settings: Settings, provider: Optional[BillingProvider]):
        self.settings = settings
        self.provider = provider

    def _require_provider(self) -> BillingProvider:
        if self.provider is None:
            raise ConfigurationError("Stripe is not configured. Set STRIPE_SECRET_KEY.")
        return self.provider

    def _app_url(self) -> str:
        if not self.settings.APP_URL:
            raise ConfigurationError("APP_URL is not configured")
        return self.settings.APP_URL.rstrip("/")

    def resolve_customer(self, user_id: str, email: Optional[str] = None) -> str:
        """Stored ref, then provider search, then create."""
        record = get_entitlement(user_id)
        if record and record.billing_customer_ref:
            return record.billing_customer_ref

        provider = self._require_provider()
        customer_id = provider.find_customer(email=email, user_id=None if email else user_id)
        if customer_id:
            return customer_id

        customer_id = provider.create_customer(user_id, email)
        logger.info("[billing] created customer", extra={"user_id": user_id})
        return customer_id

    def start_checkout(
        self,
        user_id: str,
        tier: str,
        billing_period: str,
        email: Optional[str] = None,
    ) -> CheckoutSession:
        """
        Create a hosted checkout session for `tier` billed per `billing_period`.

        Raises:
            ValidationError: Unknown or non-purchasable tier, bad period
            ConfigurationError: Missing APP_URL, price id or provider key
            UpstreamError: Provider call failed
        """
        if not user_id:
            raise ValidationError("user_id is required")
        normalized_tier = parse_tier(tier)
        if normalized_tier not in PURCHASABLE_TIERS:
            raise ValidationError(f"Tier '{tier}' cannot be purchased. Choose one of: {', '.join(PURCHASABLE_TIERS)}")
        period = (billing_period or "").strip().lower()
        if period not in {p.value for p in BillingPeriod}:
            raise ValidationError("billing_period must be 'monthly' or 'yearly'")

        app_url = self._app_url()
        price_id = self.settings.price_for(normalized_tier, period)
        if not price_id:
            raise ConfigurationError(
                f"No Stripe price configured for {normalized_tier} ({period}). "
                f"Set STRIPE_PRICE_{normalized_tier.upper()}_{period.upper()}."
            )
        provider = self._require_provider()

        customer_id = self.resolve_customer(user_id, email)
        session = provider.create_checkout_session(
            customer_id=customer_id,
            price_id=price_id,
            success_url=app_url + SUCCESS_PATH,
            cancel_url=app_url + CANCEL_PATH,
            trial_period_days=self.settings.CHECKOUT_TRIAL_DAYS,
            metadata={"user_id": user_id, "tier": normalized_tier, "billing_period": period},
        )
        logger.info(
            "[billing] checkout session created",
            extra={"user_id": user_id, "tier": normalized_tier, "billing_period": period},
        )
        return session

    def start_portal(self, user_id: str) -> str:
        """Billing portal URL for a user who has been through checkout."""
        if not user_id:
            raise ValidationError("user_id is required")
        record = get_entitlement(user_id)
        if record is None or not record.billing_customer_ref:
            raise NotFoundError("No active subscription")

        app_url = self._app_url()
        provider = self._require_provider()
        return provider.create_portal_session(record.billing_customer_ref, app_url + PORTAL_RETURN_PATH)
