"""
Billing API routes.

Minimal surface:
- POST /api/billing/webhook: Handle Stripe webhooks
- POST /api/billing/checkout: Create checkout session
- POST /api/billing/portal: Create portal session
- GET /api/billing/analytics: Subscriber and revenue totals

Errors are raised as AppError subclasses and rendered by the app-level
handlers (400 validation/signature, 404, 500 configuration, 502 upstream).
"""
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from writerdesk.features.billing.history import get_subscription_analytics
from writerdesk.features.billing.service import BillingServices


router = APIRouter(prefix="/billing", tags=["billing"])


def get_billing(request: Request) -> BillingServices:
    """Billing container built at startup."""
    return request.app.state.billing


class CheckoutRequest(BaseModel):
    """Request to create checkout session."""
    user_id: str
    tier: str
    billing_period: str
    email: Optional[str] = None


class CheckoutResponse(BaseModel):
    session_id: str
    url: str


class PortalRequest(BaseModel):
    """Request to create portal session."""
    user_id: str


class PortalResponse(BaseModel):
    """Response with portal URL."""
    url: str


class WebhookResponse(BaseModel):
    received: bool
    event_id: str
    outcome: str


@router.post("/webhook", response_model=WebhookResponse)
async def handle_webhook(request: Request, billing: BillingServices = Depends(get_billing)):
    """
    Handle Stripe webhook events.

    Verifies the signature over the raw body, processes the event
    idempotently and updates entitlements.

    Signature verification uses STRIPE_WEBHOOK_SECRET.
    Event deduplication uses stripe_event_id (stored in billing_events table).
    """
    # Raw body is required for signature verification
    body = await request.body()
    headers = dict(request.headers)

    result = await run_in_threadpool(billing.process_webhook, headers, body)
    return {"received": True, "event_id": result.event_id, "outcome": result.outcome}


@router.post("/checkout", response_model=CheckoutResponse)
def create_checkout(payload: CheckoutRequest, billing: BillingServices = Depends(get_billing)):
    """
    Create Stripe checkout session.

    Only the pro tier is purchasable; billing_period is monthly or yearly.
    Entitlements are not touched here; they follow from the webhook.
    """
    session = billing.checkout.start_checkout(
        user_id=payload.user_id,
        tier=payload.tier,
        billing_period=payload.billing_period,
        email=payload.email,
    )
    return {"session_id": session.session_id, "url": session.url}


@router.post("/portal", response_model=PortalResponse)
def create_portal(payload: PortalRequest, billing: BillingServices = Depends(get_billing)):
    """Create Stripe billing portal session (404 until the user has checked out)."""
    url = billing.checkout.start_portal(payload.user_id)
    return {"url": url}


@router.get("/analytics")
def subscription_analytics():
    """Subscriber counts, MRR and this month's revenue."""
    return get_subscription_analytics().to_dict()
