"""
Subscription models
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field


class PlanDescription(BaseModel):
    name: str
    price: float


class SubscriptionDetail(BaseModel):
    """Authoritative subscription state as reported by the processor"""
    id: Optional[str] = None
    status: Optional[str] = None
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    price_ids: List[str] = Field(default_factory=list)
    canceled_at: Optional[int] = None


class SubscriptionRecord(BaseModel):
    """Subscription record embedded in a user, as exposed to clients"""
    plan_id: Optional[str] = None
    plan_name: str
    plan_price: float
    status: Optional[str] = None
    stripe_subscription_id: str
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    canceled_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user) -> Optional["SubscriptionRecord"]:
        if not user.stripe_subscription_id:
            return None
        return cls(
            plan_id=user.plan_id,
            plan_name=user.plan_name or "Unknown Plan",
            plan_price=user.plan_price or 0,
            status=user.plan_status,
            stripe_subscription_id=user.stripe_subscription_id,
            start_date=user.plan_start_date,
            end_date=user.plan_end_date,
            canceled_at=user.plan_canceled_at,
        )


class ReconcileOutcome(BaseModel):
    """What the reconciler did with one event"""
    event_type: str
    action: str  # "applied", "ignored", "unmatched" or "stale"
    user_id: Optional[str] = None
    detail: Optional[str] = None


class CheckoutRequest(BaseModel):
    user_id: str
    price_id: str


class PortalRequest(BaseModel):
    user_id: str
