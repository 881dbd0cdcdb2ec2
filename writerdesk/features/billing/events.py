"""
writerdesk/features/billing/events.py

Billing webhook event decoding.

Turns a verified provider event payload into one of a closed set of
variants. Decoding never touches the database or the provider and never
raises on payload shape: objects that are not the expected JSON shape,
or that cannot be attributed to a user, decode to Malformed.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from writerdesk.features.entitlements.tiers import parse_subscription_tier
from writerdesk.models.entitlement import BillingPeriod


CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
TRIAL_WILL_END = "customer.subscription.trial_will_end"
PAYMENT_FAILED = "invoice.payment_failed"
INVOICE_PAID = "invoice.paid"
PAYMENT_SUCCEEDED = "invoice.payment_succeeded"

SUBSCRIPTION_EVENTS = (SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED, SUBSCRIPTION_DELETED, TRIAL_WILL_END)
INVOICE_EVENTS = (PAYMENT_FAILED, INVOICE_PAID, PAYMENT_SUCCEEDED)
HANDLED_EVENTS = (CHECKOUT_COMPLETED,) + SUBSCRIPTION_EVENTS + INVOICE_EVENTS


def from_timestamp(value: Any) -> Optional[datetime]:
    """Provider epoch seconds to aware UTC datetime."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _str_or_none(value: Any) -> Optional[str]:
    """An id, or the id of an expanded object."""
    if isinstance(value, Mapping):
        value = value.get("id")
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        return None
    text = str(value).strip()
    return text or None


def _int_or_zero(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _metadata(obj: Mapping[str, Any]) -> Dict[str, str]:
    meta = _mapping(obj.get("metadata"))
    return {str(k): str(v) for k, v in meta.items() if v is not None}


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """The subscription fields entitlement reconciliation reads."""
    subscription_id: Optional[str]
    customer_id: Optional[str]
    status: str
    price_id: Optional[str] = None
    trial_end: Optional[datetime] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    created: Optional[datetime] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def user_id(self) -> Optional[str]:
        return self.metadata.get("user_id") or None

    @property
    def metadata_tier(self) -> Optional[str]:
        return parse_subscription_tier(self.metadata.get("tier"))


def parse_subscription(obj: Mapping[str, Any]) -> SubscriptionSnapshot:
    """
    Read a subscription object.

    Newer API versions moved the period bounds from the subscription onto
    its items, so fall back to the first item when they are absent.
    """
    obj = _mapping(obj)
    items = _list(_mapping(obj.get("items")).get("data"))
    first_item = _mapping(items[0]) if items else {}

    period_start = obj.get("current_period_start") or first_item.get("current_period_start")
    period_end = obj.get("current_period_end") or first_item.get("current_period_end")
    status = obj.get("status")

    return SubscriptionSnapshot(
        subscription_id=_str_or_none(obj.get("id")),
        customer_id=_str_or_none(obj.get("customer")),
        status=status if isinstance(status, str) else "",
        price_id=_str_or_none(first_item.get("price")),
        trial_end=from_timestamp(obj.get("trial_end")),
        current_period_start=from_timestamp(period_start),
        current_period_end=from_timestamp(period_end),
        cancel_at_period_end=obj.get("cancel_at_period_end") is True,
        created=from_timestamp(obj.get("created")),
        metadata=_metadata(obj),
    )


@dataclass(frozen=True)
class InvoiceSnapshot:
    """The invoice fields payment recording reads."""
    invoice_id: Optional[str]
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    amount_paid: int = 0
    amount_due: int = 0
    currency: str = "usd"
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    description: Optional[str] = None
    receipt_url: Optional[str] = None


def _invoice_subscription_details(invoice: Mapping[str, Any]) -> Mapping[str, Any]:
    details = _mapping(invoice.get("subscription_details"))
    if not details:
        details = _mapping(_mapping(invoice.get("parent")).get("subscription_details"))
    return details


def parse_invoice(obj: Mapping[str, Any]) -> InvoiceSnapshot:
    """
    Read an invoice object.

    The billed period comes from the first line item when present; the
    invoice-level period only covers the invoice's own draft window.
    """
    obj = _mapping(obj)
    details = _invoice_subscription_details(obj)
    lines = _list(_mapping(obj.get("lines")).get("data"))
    line_period = _mapping(_mapping(lines[0]).get("period")) if lines else {}
    currency = obj.get("currency")
    description = obj.get("description")
    receipt_url = obj.get("hosted_invoice_url")

    return InvoiceSnapshot(
        invoice_id=_str_or_none(obj.get("id")),
        subscription_id=_str_or_none(obj.get("subscription")) or _str_or_none(details.get("subscription")),
        customer_id=_str_or_none(obj.get("customer")),
        payment_intent_id=_str_or_none(obj.get("payment_intent")),
        amount_paid=_int_or_zero(obj.get("amount_paid")),
        amount_due=_int_or_zero(obj.get("amount_due")),
        currency=currency.lower() if isinstance(currency, str) and currency else "usd",
        period_start=from_timestamp(line_period.get("start") or obj.get("period_start")),
        period_end=from_timestamp(line_period.get("end") or obj.get("period_end")),
        description=description if isinstance(description, str) else None,
        receipt_url=receipt_url if isinstance(receipt_url, str) else None,
    )


@dataclass(frozen=True)
class BillingEvent:
    event_id: str
    event_type: str
    created: Optional[datetime]


@dataclass(frozen=True)
class CheckoutCompleted(BillingEvent):
    user_id: str
    tier: str
    billing_period: str
    customer_id: Optional[str]
    subscription_id: str


@dataclass(frozen=True)
class SubscriptionUpdated(BillingEvent):
    user_id: str
    subscription: SubscriptionSnapshot


@dataclass(frozen=True)
class SubscriptionDeleted(BillingEvent):
    user_id: str
    subscription_id: Optional[str]


@dataclass(frozen=True)
class TrialWillEnd(BillingEvent):
    user_id: str
    trial_end: Optional[datetime]


@dataclass(frozen=True)
class PaymentFailed(BillingEvent):
    user_id: str
    invoice_id: Optional[str]
    invoice: Optional[InvoiceSnapshot] = None


@dataclass(frozen=True)
class PaymentSucceeded(BillingEvent):
    user_id: str
    invoice: InvoiceSnapshot


@dataclass(frozen=True)
class Unhandled(BillingEvent):
    pass


@dataclass(frozen=True)
class Malformed(BillingEvent):
    reason: str


def _invoice_user_id(invoice: Mapping[str, Any]) -> Optional[str]:
    for source in (_invoice_subscription_details(invoice), invoice):
        user_id = _metadata(source).get("user_id")
        if user_id:
            return user_id
    return None


def _decode_checkout(base: Dict[str, Any], session: Mapping[str, Any]) -> BillingEvent:
    meta = _metadata(session)
    user_id = meta.get("user_id")
    tier = parse_subscription_tier(meta.get("tier"))
    period = (meta.get("billing_period") or "").strip().lower()

    missing = []
    if not user_id:
        missing.append("user_id")
    if not tier:
        missing.append("tier")
    if period not in {p.value for p in BillingPeriod}:
        missing.append("billing_period")
    if missing:
        return Malformed(**base, reason=f"checkout metadata missing or invalid: {', '.join(missing)}")

    subscription_id = _str_or_none(session.get("subscription"))
    if not subscription_id:
        return Malformed(**base, reason="checkout session has no subscription")

    return CheckoutCompleted(
        **base,
        user_id=user_id,
        tier=tier,
        billing_period=period,
        customer_id=_str_or_none(session.get("customer")),
        subscription_id=subscription_id,
    )


def _decode_invoice(base: Dict[str, Any], obj: Mapping[str, Any]) -> BillingEvent:
    user_id = _invoice_user_id(obj)
    if not user_id:
        return Malformed(**base, reason="invoice has no user_id metadata")
    invoice = parse_invoice(obj)
    if base["event_type"] == PAYMENT_FAILED:
        return PaymentFailed(**base, user_id=user_id, invoice_id=invoice.invoice_id, invoice=invoice)
    return PaymentSucceeded(**base, user_id=user_id, invoice=invoice)


def decode_event(payload: Mapping[str, Any]) -> BillingEvent:
    """Classify a verified event payload."""
    payload = _mapping(payload)
    event_type = payload.get("type")
    base = {
        "event_id": _str_or_none(payload.get("id")) or "",
        "event_type": event_type if isinstance(event_type, str) else "",
        "created": from_timestamp(payload.get("created")),
    }
    event_type = base["event_type"]
    if event_type not in HANDLED_EVENTS:
        return Unhandled(**base)

    obj = _mapping(payload.get("data")).get("object")
    if not isinstance(obj, Mapping):
        return Malformed(**base, reason="event data.object is missing or not an object")

    if event_type == CHECKOUT_COMPLETED:
        return _decode_checkout(base, obj)

    if event_type in INVOICE_EVENTS:
        return _decode_invoice(base, obj)

    snapshot = parse_subscription(obj)
    if not snapshot.user_id:
        return Malformed(**base, reason="subscription has no user_id metadata")
    if event_type == SUBSCRIPTION_DELETED:
        return SubscriptionDeleted(**base, user_id=snapshot.user_id, subscription_id=snapshot.subscription_id)
    if event_type == TRIAL_WILL_END:
        return TrialWillEnd(**base, user_id=snapshot.user_id, trial_end=snapshot.trial_end)
    return SubscriptionUpdated(**base, user_id=snapshot.user_id, subscription=snapshot)
