"""
writerdesk/features/billing/provider.py

Billing provider protocol.

Defines the interface for billing providers (Stripe, etc.).
This allows swapping providers without changing business logic,
and lets tests substitute an in-memory fake.
"""
from typing import Protocol, Dict, Any, List, Optional, Mapping
from dataclasses import dataclass

from writerdesk.core.errors import AuthenticationError, UpstreamError


@dataclass(frozen=True)
class CheckoutSession:
    """Provider-hosted checkout session."""
    session_id: str
    url: str


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Customer lookup and creation
    - Subscription retrieval and listing
    - Checkout and portal session creation
    - Webhook signature verification

    Objects returned for subscriptions are plain dicts shaped like the
    provider's API payloads; decoding happens in billing.events.
    """

    def find_customer(self, *, email: Optional[str] = None, user_id: Optional[str] = None) -> Optional[str]:
        """
        Find an existing customer by email, or by user_id metadata when no email is given.

        Returns:
            Provider customer ID, or None when no customer matches

        Raises:
            BillingProviderError: If the lookup fails
        """
        ...

    def create_customer(self, user_id: str, email: Optional[str] = None) -> str:
        """
        Create a customer tagged with the internal user id.

        Raises:
            BillingProviderError: If creation fails
        """
        ...

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """
        Fetch a subscription object.

        Raises:
            BillingProviderError: If retrieval fails
        """
        ...

    def list_subscriptions(self, customer_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        """
        List a customer's subscriptions in any status, newest first.

        Raises:
            BillingProviderError: If listing fails
        """
        ...

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        trial_period_days: int,
        metadata: Mapping[str, str],
    ) -> CheckoutSession:
        """
        Create a subscription-mode checkout session.

        `metadata` is attached to both the session and the resulting
        subscription; it is how webhook events are matched back to a user.

        Raises:
            BillingProviderError: If session creation fails
        """
        ...

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """
        Create a billing portal session for customer self-service.

        Returns:
            Portal session URL

        Raises:
            BillingProviderError: If portal session creation fails
        """
        ...

    def verify_webhook(self, headers: Mapping[str, str], body: bytes) -> Dict[str, Any]:
        """
        Verify the signature over the raw body and return the parsed event.

        Raises:
            BillingWebhookError: If the signature or payload is invalid
        """
        ...


class BillingProviderError(UpstreamError):
    """A billing provider call failed or timed out."""


class BillingWebhookError(AuthenticationError):
    """Webhook signature verification or payload parsing failed."""
