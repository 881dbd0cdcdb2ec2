"""
writerdesk/features/billing/stripe_provider.py

Stripe billing provider implementation.

Implements the BillingProvider protocol on an explicitly constructed
StripeClient (no module-level api_key). Every call is bounded by the
HTTP client timeout and is not retried; failures surface as
BillingProviderError for the caller's retry policy.
"""
import json
from typing import Dict, Any, List, Optional, Mapping

import stripe

from writerdesk.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    CheckoutSession,
)


SIGNATURE_HEADER = "stripe-signature"


def _as_dict(obj: Any) -> Dict[str, Any]:
    """Convert a StripeObject (or plain mapping) to nested plain dicts."""
    if obj is None:
        return {}
    for attr in ("to_dict_recursive", "to_dict"):
        convert = getattr(obj, attr, None)
        if callable(convert):
            return convert()
    return dict(obj)


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(
        self,
        secret_key: Optional[str],
        webhook_secret: Optional[str] = None,
        *,
        timeout_seconds: float = 10.0,
        webhook_tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE,
        client: Optional[stripe.StripeClient] = None,
    ):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key
            webhook_secret: Stripe webhook signing secret
            timeout_seconds: Upper bound for each Stripe HTTP call
            webhook_tolerance: Max age (seconds) of a signed webhook timestamp
            client: Pre-built StripeClient (tests)
        """
        if not secret_key and client is None:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        self.webhook_secret = webhook_secret
        self.webhook_tolerance = webhook_tolerance
        self.client = client or stripe.StripeClient(
            secret_key,
            http_client=stripe.RequestsClient(timeout=timeout_seconds),
            max_network_retries=0,
        )

    def find_customer(self, *, email: Optional[str] = None, user_id: Optional[str] = None) -> Optional[str]:
        """Search before create so one user never gets two customers."""
        try:
            if email:
                customers = self.client.customers.list(params={"email": email, "limit": 1})
            elif user_id:
                customers = self.client.customers.search(
                    params={"query": f"metadata['user_id']:'{user_id}'", "limit": 1}
                )
            else:
                return None
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer lookup failed: {e}")
        if customers.data:
            return customers.data[0].id
        return None

    def create_customer(self, user_id: str, email: Optional[str] = None) -> str:
        params: Dict[str, Any] = {"metadata": {"user_id": user_id}}
        if email:
            params["email"] = email
        try:
            customer = self.client.customers.create(params=params)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer creation failed: {e}")
        return customer.id

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        try:
            subscription = self.client.subscriptions.retrieve(subscription_id)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription retrieval failed: {e}")
        return _as_dict(subscription)

    def list_subscriptions(self, customer_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        try:
            result = self.client.subscriptions.list(
                params={"customer": customer_id, "status": "all", "limit": limit}
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription listing failed: {e}")
        return [_as_dict(sub) for sub in result.data]

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        trial_period_days: int,
        metadata: Mapping[str, str],
    ) -> CheckoutSession:
        subscription_data: Dict[str, Any] = {"metadata": dict(metadata)}
        if trial_period_days > 0:
            subscription_data["trial_period_days"] = trial_period_days
        try:
            session = self.client.checkout.sessions.create(
                params={
                    "customer": customer_id,
                    "payment_method_types": ["card"],
                    "line_items": [{"price": price_id, "quantity": 1}],
                    "mode": "subscription",
                    "subscription_data": subscription_data,
                    "success_url": success_url,
                    "cancel_url": cancel_url,
                    "metadata": dict(metadata),
                }
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session creation failed: {e}")
        return CheckoutSession(session_id=session.id, url=session.url)

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        try:
            session = self.client.billing_portal.sessions.create(
                params={"customer": customer_id, "return_url": return_url}
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe portal session creation failed: {e}")
        return session.url

    def verify_webhook(self, headers: Mapping[str, str], body: bytes) -> Dict[str, Any]:
        """Verify Stripe webhook signature, then parse the verified body."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = None
        for key, value in headers.items():
            if key.lower() == SIGNATURE_HEADER:
                sig_header = value
                break
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            payload = body.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                payload, sig_header, self.webhook_secret, self.webhook_tolerance
            )
            event = json.loads(payload)
        except UnicodeDecodeError as e:
            raise BillingWebhookError(f"Invalid payload encoding: {e}")
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")

        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise BillingWebhookError("Invalid payload: missing event id or type")
        return event
