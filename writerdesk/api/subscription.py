"""
Subscription API endpoints: entitlement reads, gating checks, usage
metering, manual provider sync and billing history.
"""
from datetime import datetime
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, field_validator

from writerdesk.api.billing import get_billing
from writerdesk.core.config import Settings
from writerdesk.features.billing.history import get_payment_history, get_subscription_history
from writerdesk.features.billing.service import BillingServices
from writerdesk.features.entitlements.service import (
    can_perform,
    is_trial_expired,
    record_usage,
    tokens_remaining,
    trial_days_remaining,
)
from writerdesk.features.entitlements.store import ensure_entitlement, require_entitlement
from writerdesk.features.entitlements.tiers import get_policy
from writerdesk.models.entitlement import EntitlementRecord, utc_now

router = APIRouter(prefix="/subscription", tags=["subscription"])


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def _trimmed(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return value.strip() or None


class UserRequest(BaseModel):
    user_id: str

    @field_validator("user_id")
    @classmethod
    def _trim(cls, value: str) -> str:
        return _trimmed(value) or ""


class CheckRequest(BaseModel):
    user_id: str
    action: str
    estimated_cost: int = 0
    current_count: Optional[int] = None

    @field_validator("user_id", "action")
    @classmethod
    def _trim(cls, value: str) -> str:
        return _trimmed(value) or ""


class UsageRequest(BaseModel):
    user_id: str
    amount: int

    @field_validator("user_id")
    @classmethod
    def _trim(cls, value: str) -> str:
        return _trimmed(value) or ""


class SyncRequest(BaseModel):
    user_id: str
    contact_address: Optional[str] = None

    @field_validator("user_id", "contact_address")
    @classmethod
    def _trim(cls, value: Optional[str]) -> Optional[str]:
        return _trimmed(value)


def serialize_entitlement(record: EntitlementRecord, now: Optional[datetime] = None) -> Dict:
    """Record fields plus the derived values clients gate on."""
    now = now or utc_now()
    policy = get_policy(record.tier)
    payload = record.model_dump(mode="json")
    # Counter from a finished period reads as 0 until the next metering call
    payload["tokens_used_this_period"] = record.usage_at(now)
    payload.update(
        {
            "plan_name": policy.name,
            "max_agents": policy.max_agents,
            "max_tasks": policy.max_tasks,
            "tokens_remaining": tokens_remaining(record, now),
            "trial_days_remaining": trial_days_remaining(record, now),
            "is_trial_expired": is_trial_expired(record, now),
        }
    )
    return payload


@router.get("/{user_id}")
def get_subscription(user_id: str) -> Dict:
    """Current entitlement for a user (404 before first initialize)."""
    return serialize_entitlement(require_entitlement(user_id))


@router.post("/initialize")
def initialize_subscription(payload: UserRequest, settings: Settings = Depends(get_settings)) -> Dict:
    """Create the free-tier record on first login; returns the existing one otherwise."""
    record = ensure_entitlement(payload.user_id, signup_trial_days=settings.SIGNUP_TRIAL_DAYS)
    return serialize_entitlement(record)


@router.post("/check")
def check_entitlement(payload: CheckRequest, settings: Settings = Depends(get_settings)) -> Dict:
    decision = can_perform(
        payload.user_id,
        payload.action,
        estimated_cost=payload.estimated_cost,
        current_count=payload.current_count,
        grace_days=settings.PAST_DUE_GRACE_DAYS,
    )
    return {"allowed": decision.allowed, "reason": decision.reason}


@router.post("/usage")
def meter_usage(payload: UsageRequest) -> Dict:
    """Record tokens consumed by a generation; never pushes the counter past the limit."""
    outcome = record_usage(payload.user_id, payload.amount)
    return {
        "allowed": outcome.allowed,
        "reason": outcome.reason,
        "tokens_remaining": outcome.tokens_remaining,
    }


@router.post("/sync")
def sync_subscription(payload: SyncRequest, billing: BillingServices = Depends(get_billing)):
    """Pull subscription state directly from Stripe (for missed webhooks)."""
    result = billing.sync.sync_from_provider(payload.user_id, payload.contact_address)
    body = {"success": result.success, "message": result.message, "tier": result.tier}
    if not result.success:
        return JSONResponse(status_code=400, content=body)
    return body


@router.get("/{user_id}/history")
def subscription_history(user_id: str, limit: int = Query(20, ge=1, le=100)) -> Dict:
    """Tier/status transitions, newest first."""
    return {"user_id": user_id, "history": get_subscription_history(user_id, limit=limit)}


@router.get("/{user_id}/payments")
def payment_history(user_id: str, limit: int = Query(10, ge=1, le=100)) -> Dict:
    """Recorded invoice payments and failures, newest first."""
    return {"user_id": user_id, "payments": get_payment_history(user_id, limit=limit)}
