"""
Billing webhook endpoint: signature verification, ledger idempotency and
error mapping.
"""
import json
import time
from datetime import datetime, timedelta, timezone

from sqlalchemy import insert, select

from writerdesk.core.database import billing_events, get_db_session
from writerdesk.core.metrics import billing_webhook_events_total, billing_webhook_rejected_total
from writerdesk.features.entitlements.store import ensure_entitlement, get_entitlement
from writerdesk.tests.mocks import make_event, make_subscription, sign_payload, signed_body


CREATED = datetime(2026, 4, 1, 8, 0, tzinfo=timezone.utc)


def _ledger_rows():
    with get_db_session() as session:
        return [dict(r._mapping) for r in session.execute(select(billing_events)).fetchall()]


def _checkout_payload(event_id="evt_checkout"):
    return make_event(
        event_id,
        "checkout.session.completed",
        {
            "id": "cs_1",
            "customer": "cus_alice",
            "subscription": "sub_alice",
            "metadata": {"user_id": "user_alice", "tier": "pro", "billing_period": "monthly"},
        },
        created=CREATED,
    )


def _add_trialing_subscription(fake_provider):
    fake_provider.add_subscription(make_subscription(
        "sub_alice",
        customer="cus_alice",
        status="trialing",
        period_start=CREATED,
        period_end=CREATED + timedelta(days=3),
        trial_end=CREATED + timedelta(days=3),
    ))


def test_valid_webhook_is_applied(client, fake_provider):
    _add_trialing_subscription(fake_provider)
    body, headers = signed_body(_checkout_payload())

    resp = client.post("/api/billing/webhook", content=body, headers=headers)

    assert resp.status_code == 200
    assert resp.json() == {"received": True, "event_id": "evt_checkout", "outcome": "applied"}
    record = get_entitlement("user_alice")
    assert record.tier == "pro"
    assert record.status == "trial"

    rows = _ledger_rows()
    assert len(rows) == 1
    assert rows[0]["processed"] is True
    assert rows[0]["user_id"] == "user_alice"
    assert len(rows[0]["payload_hash"]) == 64


def test_invalid_signature_rejected_without_changes(client, fake_provider):
    _add_trialing_subscription(fake_provider)
    ensure_entitlement("user_alice")
    before = get_entitlement("user_alice")
    body = json.dumps(_checkout_payload()).encode("utf-8")
    headers = {"stripe-signature": sign_payload(body, "whsec_wrong"), "content-type": "application/json"}

    resp = client.post("/api/billing/webhook", content=body, headers=headers)

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "authentication_error"
    assert get_entitlement("user_alice") == before
    assert _ledger_rows() == []
    assert fake_provider.calls == []
    assert billing_webhook_rejected_total.value({"reason": "invalid_signature"}) == 1


def test_missing_signature_header_rejected(client):
    body = json.dumps(_checkout_payload()).encode("utf-8")

    resp = client.post("/api/billing/webhook", content=body, headers={"content-type": "application/json"})

    assert resp.status_code == 400
    assert _ledger_rows() == []


def test_stale_signature_timestamp_rejected(client):
    body = json.dumps(_checkout_payload()).encode("utf-8")
    stale = int(time.time()) - 3600
    headers = {"stripe-signature": sign_payload(body, "whsec_test", timestamp=stale)}

    resp = client.post("/api/billing/webhook", content=body, headers=headers)

    assert resp.status_code == 400


def test_tampered_body_rejected(client):
    body = json.dumps(_checkout_payload()).encode("utf-8")
    headers = {"stripe-signature": sign_payload(body, "whsec_test")}
    tampered = body.replace(b"user_alice", b"user_mallory")

    resp = client.post("/api/billing/webhook", content=tampered, headers=headers)

    assert resp.status_code == 400
    assert get_entitlement("user_mallory") is None


def test_signed_non_json_payload_rejected(client):
    body = b"not json at all"
    headers = {"stripe-signature": sign_payload(body, "whsec_test")}

    resp = client.post("/api/billing/webhook", content=body, headers=headers)

    assert resp.status_code == 400


def test_duplicate_delivery_is_skipped(client, fake_provider):
    _add_trialing_subscription(fake_provider)
    body, headers = signed_body(_checkout_payload())

    first = client.post("/api/billing/webhook", content=body, headers=headers)
    calls_after_first = list(fake_provider.calls)
    second = client.post("/api/billing/webhook", content=body, headers=headers)

    assert first.json()["outcome"] == "applied"
    assert second.status_code == 200
    assert second.json()["outcome"] == "duplicate"
    assert fake_provider.calls == calls_after_first
    assert len(_ledger_rows()) == 1
    assert billing_webhook_events_total.value(
        {"event_type": "checkout.session.completed", "outcome": "duplicate"}
    ) == 1


def test_failed_event_is_reprocessed_on_redelivery(client, fake_provider):
    _add_trialing_subscription(fake_provider)
    body, headers = signed_body(_checkout_payload())

    fake_provider.fail("Stripe timed out")
    failed = client.post("/api/billing/webhook", content=body, headers=headers)

    assert failed.status_code == 502
    assert failed.json()["error"]["code"] == "upstream_error"
    rows = _ledger_rows()
    assert rows[0]["processed"] is False
    assert "Stripe timed out" in rows[0]["error"]
    assert get_entitlement("user_alice") is None

    fake_provider.fail_with = None
    retried = client.post("/api/billing/webhook", content=body, headers=headers)

    assert retried.status_code == 200
    assert retried.json()["outcome"] == "applied"
    rows = _ledger_rows()
    assert len(rows) == 1
    assert rows[0]["processed"] is True
    assert rows[0]["error"] is None
    assert get_entitlement("user_alice").tier == "pro"


def test_malformed_event_is_acknowledged_and_dropped(client):
    payload = make_event(
        "evt_bad",
        "checkout.session.completed",
        {"id": "cs_1", "subscription": "sub_1", "metadata": {"tier": "pro"}},
    )
    body, headers = signed_body(payload)

    resp = client.post("/api/billing/webhook", content=body, headers=headers)

    assert resp.status_code == 200
    assert resp.json()["outcome"] == "dropped"
    assert _ledger_rows()[0]["processed"] is True


def test_unhandled_event_is_acknowledged(client):
    body, headers = signed_body(make_event("evt_other", "customer.created", {"id": "cus_1"}))

    resp = client.post("/api/billing/webhook", content=body, headers=headers)

    assert resp.status_code == 200
    assert resp.json()["outcome"] == "ignored"


def test_webhook_without_secret_is_configuration_error(client, test_settings):
    test_settings.STRIPE_WEBHOOK_SECRET = None
    body, headers = signed_body(make_event("evt_other", "customer.created", {"id": "cus_1"}))

    resp = client.post("/api/billing/webhook", content=body, headers=headers)

    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "configuration_error"


def test_redelivery_after_failure_counts_retries(client, fake_provider):
    _add_trialing_subscription(fake_provider)
    body, headers = signed_body(_checkout_payload())

    fake_provider.fail("Stripe timed out")
    client.post("/api/billing/webhook", content=body, headers=headers)
    assert _ledger_rows()[0]["retry_count"] == 0
    client.post("/api/billing/webhook", content=body, headers=headers)
    assert _ledger_rows()[0]["retry_count"] == 1

    fake_provider.fail_with = None
    client.post("/api/billing/webhook", content=body, headers=headers)

    rows = _ledger_rows()
    assert rows[0]["retry_count"] == 2
    assert rows[0]["processed"] is True


def _insert_unfinished_row(event_id, last_attempt_at):
    with get_db_session() as session:
        session.execute(insert(billing_events).values(
            stripe_event_id=event_id,
            event_type="checkout.session.completed",
            user_id="user_alice",
            payload_hash="0" * 64,
            processed=False,
            received_at=last_attempt_at,
            last_attempt_at=last_attempt_at,
        ))


def test_in_flight_delivery_is_reported_as_duplicate(client, fake_provider):
    _add_trialing_subscription(fake_provider)
    _insert_unfinished_row("evt_checkout", datetime.now(timezone.utc))
    body, headers = signed_body(_checkout_payload())

    resp = client.post("/api/billing/webhook", content=body, headers=headers)

    assert resp.status_code == 200
    assert resp.json()["outcome"] == "duplicate"
    assert get_entitlement("user_alice") is None
    assert _ledger_rows()[0]["retry_count"] == 0


def test_stale_unfinished_delivery_is_reclaimed(client, fake_provider):
    _add_trialing_subscription(fake_provider)
    _insert_unfinished_row("evt_checkout", datetime.now(timezone.utc) - timedelta(minutes=30))
    body, headers = signed_body(_checkout_payload())

    resp = client.post("/api/billing/webhook", content=body, headers=headers)

    assert resp.json()["outcome"] == "applied"
    rows = _ledger_rows()
    assert rows[0]["processed"] is True
    assert rows[0]["retry_count"] == 1
    assert get_entitlement("user_alice").tier == "pro"


def test_signed_payload_with_non_object_data_is_dropped(client):
    payload = {"id": "evt_odd", "object": "event", "type": "customer.subscription.updated", "data": "oops"}
    body, headers = signed_body(payload)

    resp = client.post("/api/billing/webhook", content=body, headers=headers)

    assert resp.status_code == 200
    assert resp.json() == {"received": True, "event_id": "evt_odd", "outcome": "dropped"}
    assert _ledger_rows()[0]["processed"] is True


def test_signed_subscription_with_list_metadata_is_dropped(client):
    ensure_entitlement("user_alice")
    before = get_entitlement("user_alice")
    sub = make_subscription("sub_alice")
    sub["metadata"] = ["user_id", "user_alice"]
    sub["items"] = "si_1"
    body, headers = signed_body(make_event("evt_list_meta", "customer.subscription.updated", sub))

    resp = client.post("/api/billing/webhook", content=body, headers=headers)

    assert resp.status_code == 200
    assert resp.json()["outcome"] == "dropped"
    assert get_entitlement("user_alice") == before
