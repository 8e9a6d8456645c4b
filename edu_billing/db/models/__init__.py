"""
Billing data models.
"""
from edu_billing.db.models.coupon import Coupon, CouponApplication, PriceQuote
from edu_billing.db.models.plan import ClassroomManagement, GamesAccess, PlanBenefits, SubscriptionPlan
from edu_billing.db.models.platform_settings import PlatformSettings
from edu_billing.db.models.product import Product
from edu_billing.db.models.purchase import (
    CourseRef,
    FileRef,
    GameRef,
    Purchasable,
    Purchase,
    PurchaseCreate,
    ToolRef,
    WorkshopRef,
    purchasable_ref,
)
from edu_billing.db.models.subscription import Subscription, SubscriptionCreate, SubscriptionUpdate
from edu_billing.db.models.user import UserAccount, UserUpdate

__all__ = [
    "ClassroomManagement",
    "Coupon",
    "CouponApplication",
    "CourseRef",
    "FileRef",
    "GameRef",
    "GamesAccess",
    "PlanBenefits",
    "PlatformSettings",
    "PriceQuote",
    "Product",
    "Purchasable",
    "Purchase",
    "PurchaseCreate",
    "Subscription",
    "SubscriptionCreate",
    "SubscriptionPlan",
    "SubscriptionUpdate",
    "ToolRef",
    "UserAccount",
    "UserUpdate",
    "WorkshopRef",
    "purchasable_ref",
]
