"""
Subscription records as served by the backend.

A user holds at most one current (active or free_plan) subscription and at
most one pending subscription alongside it. Status changes flow only
through the decision engine and the pending-payment reconciler.
"""
from datetime import datetime
from typing import Optional

from sqlmodel import SQLModel

from edu_billing.core.config import (
    CURRENT_SUBSCRIPTION_STATUSES,
    SUBSCRIPTION_TRANSITIONS,
    SubscriptionStatus,
)


class Subscription(SQLModel):
    """
    A user's subscription to one plan.
    
    `subscription_plan_id` is cleared when a stale pending record is reset
    to the free plan; `status_updated_at` drives the pending timeout.
    """
    id: str
    user_id: str
    subscription_plan_id: Optional[str] = None
    status: SubscriptionStatus
    payplus_subscription_uid: Optional[str] = None
    next_billing_date: Optional[datetime] = None
    status_updated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    
    @property
    def is_pending(self) -> bool:
        return self.status == SubscriptionStatus.PENDING
    
    @property
    def is_current(self) -> bool:
        """Active or free_plan: the plan the user is on right now."""
        return self.status in CURRENT_SUBSCRIPTION_STATUSES
    
    def can_transition_to(self, status: SubscriptionStatus) -> bool:
        return status in SUBSCRIPTION_TRANSITIONS[self.status]


class SubscriptionCreate(SQLModel):
    """Payload for creating a pending subscription."""
    user_id: str
    subscription_plan_id: str
    status: SubscriptionStatus = SubscriptionStatus.PENDING
    status_updated_at: Optional[datetime] = None


class SubscriptionUpdate(SQLModel):
    """Partial update; only explicitly set fields are sent."""
    subscription_plan_id: Optional[str] = None
    status: Optional[SubscriptionStatus] = None
    payplus_subscription_uid: Optional[str] = None
    next_billing_date: Optional[datetime] = None
    status_updated_at: Optional[datetime] = None
