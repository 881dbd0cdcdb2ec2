"""Decoding verified Stripe event payloads into billing event variants."""
from datetime import datetime, timezone

from writerdesk.features.billing.events import (
    CheckoutCompleted,
    Malformed,
    PaymentFailed,
    PaymentSucceeded,
    SubscriptionDeleted,
    SubscriptionUpdated,
    TrialWillEnd,
    Unhandled,
    decode_event,
    parse_invoice,
    parse_subscription,
)
from writerdesk.tests.mocks import make_event, make_subscription, ts


START = datetime(2026, 1, 1, tzinfo=timezone.utc)
END = datetime(2026, 1, 31, tzinfo=timezone.utc)


def _checkout_session(**metadata):
    return {
        "id": "cs_1",
        "object": "checkout.session",
        "customer": "cus_1",
        "subscription": "sub_1",
        "metadata": metadata,
    }


def test_checkout_completed_decodes_metadata():
    event = decode_event(make_event(
        "evt_1",
        "checkout.session.completed",
        _checkout_session(user_id="user_alice", tier="pro", billing_period="yearly"),
    ))

    assert isinstance(event, CheckoutCompleted)
    assert event.user_id == "user_alice"
    assert event.tier == "pro"
    assert event.billing_period == "yearly"
    assert event.customer_id == "cus_1"
    assert event.subscription_id == "sub_1"


def test_checkout_missing_metadata_is_malformed():
    event = decode_event(make_event(
        "evt_2", "checkout.session.completed", _checkout_session(user_id="user_alice", tier="pro")
    ))

    assert isinstance(event, Malformed)
    assert "billing_period" in event.reason


def test_checkout_unknown_tier_is_malformed():
    event = decode_event(make_event(
        "evt_3",
        "checkout.session.completed",
        _checkout_session(user_id="user_alice", tier="platinum", billing_period="monthly"),
    ))

    assert isinstance(event, Malformed)
    assert "tier" in event.reason


def test_subscription_created_and_updated_share_a_variant():
    sub = make_subscription("sub_1", status="trialing", period_start=START, period_end=END)
    for event_type in ("customer.subscription.created", "customer.subscription.updated"):
        event = decode_event(make_event("evt_x", event_type, sub))
        assert isinstance(event, SubscriptionUpdated)
        assert event.user_id == "user_alice"
        assert event.subscription.status == "trialing"
        assert event.subscription.current_period_end == END


def test_subscription_without_user_metadata_is_malformed():
    sub = make_subscription("sub_1", user_id=None)
    event = decode_event(make_event("evt_4", "customer.subscription.updated", sub))
    assert isinstance(event, Malformed)


def test_deleted_and_trial_will_end_variants():
    trial_end = datetime(2026, 1, 4, tzinfo=timezone.utc)
    sub = make_subscription("sub_1", status="trialing", trial_end=trial_end)

    deleted = decode_event(make_event("evt_5", "customer.subscription.deleted", sub))
    ending = decode_event(make_event("evt_6", "customer.subscription.trial_will_end", sub))

    assert isinstance(deleted, SubscriptionDeleted)
    assert deleted.subscription_id == "sub_1"
    assert isinstance(ending, TrialWillEnd)
    assert ending.trial_end == trial_end


def test_payment_failed_reads_subscription_details_metadata():
    invoice = {
        "id": "in_1",
        "object": "invoice",
        "subscription_details": {"metadata": {"user_id": "user_bob"}},
    }
    event = decode_event(make_event("evt_7", "invoice.payment_failed", invoice))

    assert isinstance(event, PaymentFailed)
    assert event.user_id == "user_bob"
    assert event.invoice_id == "in_1"


def test_payment_failed_reads_parent_subscription_details():
    invoice = {
        "id": "in_2",
        "object": "invoice",
        "parent": {"subscription_details": {"metadata": {"user_id": "user_carol"}}},
    }
    event = decode_event(make_event("evt_8", "invoice.payment_failed", invoice))

    assert isinstance(event, PaymentFailed)
    assert event.user_id == "user_carol"


def test_unknown_type_is_unhandled():
    event = decode_event(make_event("evt_9", "customer.created", {"id": "cus_1"}))
    assert isinstance(event, Unhandled)
    assert event.event_type == "customer.created"


def test_period_bounds_fall_back_to_first_item():
    sub = make_subscription("sub_1")
    sub["items"]["data"][0].update({"current_period_start": ts(START), "current_period_end": ts(END)})

    snapshot = parse_subscription(sub)

    assert snapshot.current_period_start == START
    assert snapshot.current_period_end == END
    assert snapshot.price_id == "price_pro_monthly"


def test_checkout_free_tier_is_malformed():
    event = decode_event(make_event(
        "evt_10",
        "checkout.session.completed",
        _checkout_session(user_id="user_alice", tier="free", billing_period="monthly"),
    ))

    assert isinstance(event, Malformed)
    assert "tier" in event.reason


def test_free_metadata_tier_is_not_a_subscription_tier():
    snapshot = parse_subscription(make_subscription("sub_1", tier="free"))
    assert snapshot.metadata_tier is None


def test_non_object_data_is_malformed():
    for data in ("oops", None, ["object"], {"object": "sub_1"}, {"object": [1, 2]}):
        payload = {"id": "evt_11", "type": "customer.subscription.updated", "created": ts(START), "data": data}
        event = decode_event(payload)
        assert isinstance(event, Malformed)
        assert event.event_id == "evt_11"


def test_non_object_metadata_is_malformed():
    sub = make_subscription("sub_1")
    sub["metadata"] = ["user_id", "user_alice"]
    assert isinstance(decode_event(make_event("evt_12", "customer.subscription.updated", sub)), Malformed)

    session = _checkout_session()
    session["metadata"] = "user_id=user_alice"
    assert isinstance(decode_event(make_event("evt_13", "checkout.session.completed", session)), Malformed)


def test_oddly_shaped_items_decode_without_price():
    for items in ("si_1", {"data": "si_1"}, {"data": ["si_1"]}, {"data": [{"price": 42.5}]}):
        sub = make_subscription("sub_1")
        sub["items"] = items
        event = decode_event(make_event("evt_14", "customer.subscription.updated", sub))
        assert isinstance(event, SubscriptionUpdated)
        assert event.subscription.price_id is None


def test_non_string_status_decodes_as_unknown():
    sub = make_subscription("sub_1")
    sub["status"] = {"value": "active"}
    event = decode_event(make_event("evt_15", "customer.subscription.updated", sub))

    assert isinstance(event, SubscriptionUpdated)
    assert event.subscription.status == ""


def test_invoice_paid_decodes_payment_details():
    invoice = {
        "id": "in_3",
        "object": "invoice",
        "customer": "cus_1",
        "payment_intent": "pi_1",
        "amount_paid": 2900,
        "amount_due": 2900,
        "currency": "USD",
        "hosted_invoice_url": "https://invoice.stripe.test/in_3",
        "subscription_details": {"subscription": "sub_1", "metadata": {"user_id": "user_dan"}},
        "lines": {"data": [{"period": {"start": ts(START), "end": ts(END)}}]},
    }
    for event_type in ("invoice.paid", "invoice.payment_succeeded"):
        event = decode_event(make_event("evt_16", event_type, invoice))

        assert isinstance(event, PaymentSucceeded)
        assert event.user_id == "user_dan"
        assert event.invoice.invoice_id == "in_3"
        assert event.invoice.subscription_id == "sub_1"
        assert event.invoice.payment_intent_id == "pi_1"
        assert event.invoice.amount_paid == 2900
        assert event.invoice.currency == "usd"
        assert event.invoice.period_start == START
        assert event.invoice.period_end == END
        assert event.invoice.receipt_url == "https://invoice.stripe.test/in_3"


def test_invoice_with_odd_lines_keeps_defaults():
    snapshot = parse_invoice({"id": "in_4", "lines": "nope", "amount_paid": "lots", "currency": 7})

    assert snapshot.invoice_id == "in_4"
    assert snapshot.amount_paid == 0
    assert snapshot.currency == "usd"
    assert snapshot.period_start is None
