"""
User account model, as far as billing is concerned.
"""
from datetime import datetime
from typing import Optional

from sqlmodel import SQLModel

from edu_billing.core.config import SubscriptionStatus


class UserAccount(SQLModel):
    """Authenticated user with the denormalized subscription pointer."""
    id: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    role: str = "user"
    current_subscription_plan_id: Optional[str] = None
    subscription_status: Optional[SubscriptionStatus] = None
    subscription_status_updated_at: Optional[datetime] = None
    payplus_subscription_uid: Optional[str] = None
    
    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class UserUpdate(SQLModel):
    """Partial update of the user's subscription pointer; send with exclude_unset."""
    current_subscription_plan_id: Optional[str] = None
    subscription_status: Optional[SubscriptionStatus] = None
    subscription_status_updated_at: Optional[datetime] = None
    payplus_subscription_uid: Optional[str] = None
