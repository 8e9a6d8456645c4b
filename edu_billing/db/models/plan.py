"""
Subscription plan catalog models.

Plans are catalog-owned and read-only here; a plan referenced by a live
subscription never changes shape under it.
"""
from decimal import Decimal
from typing import Optional

from sqlmodel import Field, SQLModel

from edu_billing.core.config import BillingPeriod


class GamesAccess(SQLModel):
    """Game access grant: disabled, capped per month, or unlimited."""
    enabled: bool = False
    unlimited: bool = False
    monthly_limit: Optional[int] = Field(default=None, ge=0)


class ClassroomManagement(SQLModel):
    """Classroom grant: disabled, capped, or unlimited."""
    enabled: bool = False
    unlimited_classrooms: bool = False
    max_classrooms: Optional[int] = Field(default=None, ge=0)


class PlanBenefits(SQLModel):
    """Structured capability grants attached to a plan."""
    games_access: GamesAccess = Field(default_factory=GamesAccess)
    classroom_management: ClassroomManagement = Field(default_factory=ClassroomManagement)
    reports_access: bool = False
    
    def game_limit(self) -> Optional[int]:
        """Monthly game limit; None means unlimited, 0 means no access."""
        if not self.games_access.enabled:
            return 0
        if self.games_access.unlimited:
            return None
        return self.games_access.monthly_limit or 0
    
    def classroom_limit(self) -> Optional[int]:
        """Classroom limit; None means unlimited, 0 means no access."""
        if not self.classroom_management.enabled:
            return 0
        if self.classroom_management.unlimited_classrooms:
            return None
        return self.classroom_management.max_classrooms or 0


class SubscriptionPlan(SQLModel):
    """A plan users can subscribe to."""
    id: str
    name: str
    description: Optional[str] = None
    price: Decimal = Field(default=Decimal("0"), ge=0)
    billing_period: Optional[BillingPeriod] = None
    benefits: PlanBenefits = Field(default_factory=PlanBenefits)
    is_active: bool = True
    
    @property
    def is_free(self) -> bool:
        return self.price == 0
