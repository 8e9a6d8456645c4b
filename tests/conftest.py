"""
Shared fixtures: catalog data, a fake backend, and wired services.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from edu_billing.api.services.catalog import CatalogReader
from edu_billing.api.services.checkout import CheckoutService
from edu_billing.api.services.coupons import CouponResolver
from edu_billing.api.services.payments import PaymentPageClient
from edu_billing.api.services.reconciler import PendingPaymentReconciler
from edu_billing.api.services.repository import BillingRepository
from edu_billing.core.api_client import user_client
from edu_billing.core.retry import RetryPolicy
from edu_billing.core.session import SessionContext
from edu_billing.db.models.plan import SubscriptionPlan
from edu_billing.db.models.subscription import Subscription
from edu_billing.db.models.user import UserAccount
from tests.mocks.backend import FakeBackend

# Fixed clock for deterministic timeout checks
NOW = datetime(2025, 3, 20, 8, 0, tzinfo=timezone.utc)

PLAN_ROWS = [
    {
        "id": "plan_basic",
        "name": "Basic",
        "price": "0",
        "billing_period": None,
        "benefits": {"reports_access": False},
    },
    {
        "id": "plan_pro",
        "name": "Pro",
        "price": "100",
        "billing_period": "monthly",
        "benefits": {
            "games_access": {"enabled": True, "unlimited": False, "monthly_limit": 20},
            "classroom_management": {"enabled": True, "unlimited_classrooms": False, "max_classrooms": 3},
            "reports_access": True,
        },
    },
    {
        "id": "plan_team",
        "name": "Team",
        "price": "100",
        "billing_period": "monthly",
        "benefits": {"reports_access": True},
    },
    {
        "id": "plan_premium",
        "name": "Premium",
        "price": "200",
        "billing_period": "yearly",
        "benefits": {
            "games_access": {"enabled": True, "unlimited": True},
            "classroom_management": {"enabled": True, "unlimited_classrooms": True},
            "reports_access": True,
        },
    },
]


class TestHelpers:
    """Builders for fixture records."""
    
    @staticmethod
    def subscription(plan_id, status, user_id="user_1", updated=None, **fields):
        return Subscription(
            id=fields.pop("id", f"sub_{plan_id}_{status}"),
            user_id=user_id,
            subscription_plan_id=plan_id,
            status=status,
            status_updated_at=updated,
            **fields
        )


@pytest.fixture
def plans():
    return [SubscriptionPlan.model_validate(row) for row in PLAN_ROWS]


@pytest.fixture
def plans_by_id(plans):
    return {plan.id: plan for plan in plans}


@pytest.fixture
def user():
    return UserAccount(id="user_1", email="instructor@example.com")


@pytest.fixture
def session_context():
    return SessionContext(token="user-token", user_id="user_1")


@pytest.fixture
def backend():
    fake = FakeBackend()
    fake.plans = [dict(row) for row in PLAN_ROWS]
    fake.platform_settings = {
        "default_recording_access_days": 30,
        "default_course_access_days": 365,
        "default_tool_access_days": 365,
    }
    fake.users["user_1"] = {
        "id": "user_1",
        "email": "instructor@example.com",
        "role": "user",
        "current_subscription_plan_id": None,
        "subscription_status": None,
    }
    return fake


@pytest.fixture
def api_client(backend, session_context):
    return user_client(session_context, transport=backend.transport())


@pytest.fixture
def fast_retry():
    return RetryPolicy(max_attempts=3, base_delay=0)


@pytest.fixture
def repository(api_client, fast_retry):
    return BillingRepository(api_client, retry_policy=fast_retry)


@pytest.fixture
def catalog(api_client, fast_retry):
    return CatalogReader(api_client, retry_policy=fast_retry)


@pytest.fixture
def reconciler(repository):
    return PendingPaymentReconciler(repository, timeout=timedelta(minutes=5), clock=lambda: NOW)


@pytest.fixture
def renewing_reconciler(repository, api_client):
    return PendingPaymentReconciler(
        repository,
        timeout=timedelta(minutes=5),
        clock=lambda: NOW,
        gateway=PaymentPageClient(api_client)
    )


@pytest.fixture
def checkout(repository, catalog, api_client, reconciler):
    return CheckoutService(
        repository=repository,
        catalog=catalog,
        coupons=CouponResolver(api_client),
        payment_pages=PaymentPageClient(api_client),
        reconciler=reconciler,
        clock=lambda: NOW
    )


@pytest.fixture
def course_product_row():
    return {
        "id": "prod_course",
        "title": "Fractions Course",
        "product_type": "course",
        "entity_id": "course_1",
        "price": "250",
        "category": "math",
        "is_lifetime_access": None,
        "access_days": None,
    }


def minutes_ago(minutes):
    return NOW - timedelta(minutes=minutes)


def money(value):
    return Decimal(str(value))
