"""
Billing constants and enums.
"""
from datetime import timedelta
from enum import Enum


class SubscriptionStatus(str, Enum):
    """Subscription record status."""
    PENDING = "pending"
    ACTIVE = "active"
    FREE_PLAN = "free_plan"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class PaymentStatus(str, Enum):
    """Purchase payment status."""
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class PurchasableType(str, Enum):
    """Catalog entity kinds a purchase can point at."""
    WORKSHOP = "workshop"
    COURSE = "course"
    FILE = "file"
    TOOL = "tool"
    GAME = "game"


class BillingPeriod(str, Enum):
    """Plan billing period (free plans have none)."""
    MONTHLY = "monthly"
    YEARLY = "yearly"


class DiscountType(str, Enum):
    """Coupon discount kinds."""
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class ActionType(str, Enum):
    """Outcome of the subscription decision engine."""
    NEW_SUBSCRIPTION = "new_subscription"
    RETRY_PAYMENT = "retry_payment"
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    LATERAL_MOVE = "lateral_move"
    REPLACE_PENDING = "replace_pending"
    CANCEL_PENDING_DOWNGRADE = "cancel_pending_downgrade"
    RECONCILE_PENDING = "reconcile_pending"
    NO_ACTION = "no_action"


class GatewayStatus(str, Enum):
    """Terminal status reported by the payment gateway."""
    SUCCESS = "success"
    FAILURE = "failure"


# Statuses that count as the user's current plan
CURRENT_SUBSCRIPTION_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.FREE_PLAN})

# Allowed status transitions; anything else is rejected
SUBSCRIPTION_TRANSITIONS = {
    SubscriptionStatus.PENDING: frozenset({
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.FREE_PLAN,
        SubscriptionStatus.CANCELLED,
        SubscriptionStatus.EXPIRED,
    }),
    SubscriptionStatus.ACTIVE: frozenset({SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED}),
    SubscriptionStatus.FREE_PLAN: frozenset({SubscriptionStatus.CANCELLED}),
    SubscriptionStatus.CANCELLED: frozenset(),
    SubscriptionStatus.EXPIRED: frozenset(),
}

PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.PAID, PaymentStatus.FAILED}),
    PaymentStatus.PAID: frozenset(),
    PaymentStatus.FAILED: frozenset(),
}

# Gateway message type posted by the hosted payment page
PAYPLUS_MESSAGE_TYPE = "payplus_payment_complete"

# Order numbers: EDU-<last 6 digits of ms timestamp><6 base-36 chars>
ORDER_NUMBER_PREFIX = "EDU-"
ORDER_NUMBER_TIMESTAMP_DIGITS = 6
ORDER_NUMBER_RANDOM_LENGTH = 6

DEFAULT_PENDING_TIMEOUT = timedelta(minutes=5)
