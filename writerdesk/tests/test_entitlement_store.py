"""
Entitlement store: lazy creation, partial upserts and atomic metering.
"""
import threading
from datetime import datetime, timedelta, timezone

import pytest

from writerdesk.core.errors import NotFoundError, ValidationError
from writerdesk.features.entitlements.store import (
    ensure_entitlement,
    get_entitlement,
    increment_usage,
    upsert_entitlement,
)
from writerdesk.features.entitlements.tiers import FREE_TOKENS_LIMIT


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_get_entitlement_missing_returns_none():
    assert get_entitlement("user_nobody") is None


def test_ensure_entitlement_creates_free_defaults():
    record = ensure_entitlement("user_alice", now=NOW)

    assert record.tier == "free"
    assert record.status == "active"
    assert record.tokens_used_this_period == 0
    assert record.tokens_limit == FREE_TOKENS_LIMIT
    assert record.billing_subscription_ref is None
    assert record.trial_ends_at is None
    assert record.current_period_start == NOW
    assert record.current_period_end == NOW + timedelta(days=30)


def test_ensure_entitlement_is_idempotent():
    first = ensure_entitlement("user_alice", now=NOW)
    upsert_entitlement("user_alice", {"tokens_used_this_period": 10}, now=NOW)

    again = ensure_entitlement("user_alice", now=NOW + timedelta(days=1))

    assert again.created_at == first.created_at
    assert again.tokens_used_this_period == 10


def test_ensure_entitlement_with_signup_trial():
    record = ensure_entitlement("user_trial", now=NOW, signup_trial_days=7)

    assert record.status == "trial"
    assert record.trial_ends_at == NOW + timedelta(days=7)


def test_upsert_creates_missing_record_with_defaults():
    record = upsert_entitlement("user_new", {"tier": "pro", "tokens_limit": 1_000_000}, now=NOW)

    assert record.tier == "pro"
    assert record.status == "active"
    assert record.tokens_limit == 1_000_000
    assert record.created_at == NOW


def test_upsert_writes_only_named_fields():
    ensure_entitlement("user_alice", now=NOW)
    upsert_entitlement("user_alice", {"billing_customer_ref": "cus_1"}, now=NOW)
    upsert_entitlement("user_alice", {"status": "past_due"}, now=NOW)

    record = get_entitlement("user_alice")
    assert record.billing_customer_ref == "cus_1"
    assert record.status == "past_due"
    assert record.tier == "free"


def test_upsert_bumps_updated_at():
    ensure_entitlement("user_alice", now=NOW)
    later = NOW + timedelta(hours=2)

    record = upsert_entitlement("user_alice", {"cancel_at_period_end": True}, now=later)

    assert record.updated_at == later
    assert record.created_at == NOW


def test_upsert_rejects_unknown_fields():
    with pytest.raises(ValidationError):
        upsert_entitlement("user_alice", {"favorite_color": "blue"}, now=NOW)


def test_past_due_since_tracks_status_changes():
    ensure_entitlement("user_alice", now=NOW)
    first_failure = NOW + timedelta(days=1)
    upsert_entitlement("user_alice", {"status": "past_due"}, now=first_failure)

    # Repeated failure keeps the original start of the past-due window
    upsert_entitlement("user_alice", {"status": "past_due"}, now=first_failure + timedelta(days=2))
    assert get_entitlement("user_alice").past_due_since == first_failure

    upsert_entitlement("user_alice", {"status": "active"}, now=first_failure + timedelta(days=3))
    assert get_entitlement("user_alice").past_due_since is None


def test_increment_usage_allows_within_quota():
    ensure_entitlement("user_alice", now=NOW)

    outcome = increment_usage("user_alice", 1_000, now=NOW)

    assert outcome.allowed
    assert outcome.record.tokens_used_this_period == 1_000
    assert outcome.tokens_remaining == FREE_TOKENS_LIMIT - 1_000


def test_increment_usage_rejects_over_quota_without_incrementing():
    ensure_entitlement("user_alice", now=NOW)
    upsert_entitlement("user_alice", {"tokens_limit": 10_000, "tokens_used_this_period": 9_990}, now=NOW)

    outcome = increment_usage("user_alice", 20, now=NOW)

    assert not outcome.allowed
    assert outcome.tokens_remaining == 10
    assert "10" in outcome.reason
    assert get_entitlement("user_alice").tokens_used_this_period == 9_990


def test_increment_usage_exact_limit_is_allowed():
    ensure_entitlement("user_alice", now=NOW)
    upsert_entitlement("user_alice", {"tokens_limit": 100, "tokens_used_this_period": 60}, now=NOW)

    outcome = increment_usage("user_alice", 40, now=NOW)

    assert outcome.allowed
    assert outcome.record.tokens_used_this_period == 100
    assert outcome.tokens_remaining == 0


def test_increment_usage_unlimited_tier():
    upsert_entitlement("user_big", {"tier": "unlimited", "tokens_limit": -1}, now=NOW)

    outcome = increment_usage("user_big", 10_000_000, now=NOW)

    assert outcome.allowed
    assert outcome.tokens_remaining == -1


def test_increment_usage_requires_record():
    with pytest.raises(NotFoundError):
        increment_usage("user_nobody", 5, now=NOW)


@pytest.mark.parametrize("amount", [0, -5])
def test_increment_usage_rejects_non_positive_amounts(amount):
    ensure_entitlement("user_alice", now=NOW)
    with pytest.raises(ValidationError):
        increment_usage("user_alice", amount, now=NOW)


def test_free_period_rolls_over_on_next_metering_call():
    ensure_entitlement("user_alice", now=NOW)
    increment_usage("user_alice", 40_000, now=NOW)

    next_month = NOW + timedelta(days=31)
    outcome = increment_usage("user_alice", 20_000, now=next_month)

    assert outcome.allowed
    assert outcome.record.tokens_used_this_period == 20_000
    assert outcome.record.current_period_start == next_month
    assert outcome.record.current_period_end == next_month + timedelta(days=30)


def test_provider_period_change_resets_counter_on_next_metering_call():
    period_start = NOW
    upsert_entitlement(
        "user_pro",
        {
            "tier": "pro",
            "tokens_limit": 1_000_000,
            "billing_subscription_ref": "sub_1",
            "current_period_start": period_start,
            "current_period_end": period_start + timedelta(days=30),
            "usage_period_start": period_start,
            "tokens_used_this_period": 900_000,
        },
        now=NOW,
    )

    renewed = period_start + timedelta(days=30)
    record = upsert_entitlement(
        "user_pro",
        {"current_period_start": renewed, "current_period_end": renewed + timedelta(days=30)},
        now=renewed,
    )
    # Period update alone never touches the counter
    assert record.tokens_used_this_period == 900_000
    assert record.usage_at(renewed) == 0

    outcome = increment_usage("user_pro", 500_000, now=renewed + timedelta(hours=1))
    assert outcome.allowed
    assert outcome.record.tokens_used_this_period == 500_000
    assert outcome.record.usage_period_start == renewed


def test_concurrent_increments_cannot_both_exceed_quota():
    ensure_entitlement("user_alice", now=NOW)
    upsert_entitlement("user_alice", {"tokens_limit": 50, "tokens_used_this_period": 0}, now=NOW)

    results = []
    barrier = threading.Barrier(2)

    def worker():
        barrier.wait()
        results.append(increment_usage("user_alice", 30, now=NOW))

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(r.allowed for r in results) == [False, True]
    assert get_entitlement("user_alice").tokens_used_this_period == 30
