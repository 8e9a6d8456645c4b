"""
Purchase/subscription repository facade.

Pure data access over the backend REST API: no decisions are made here.
Reads go through the retrying fetch primitive; writes are attempted once
so failures surface to the caller.
"""
import json
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog

from edu_billing.core.api_client import ApiClient
from edu_billing.core.config import PaymentStatus, SubscriptionStatus
from edu_billing.core.exceptions import ApiError, ConflictError, NotFoundError
from edu_billing.core.retry import RetryPolicy, fetch_with_retry
from edu_billing.db.models.purchase import Purchasable, Purchase, PurchaseCreate
from edu_billing.db.models.subscription import Subscription, SubscriptionCreate, SubscriptionUpdate
from edu_billing.db.models.user import UserAccount, UserUpdate

logger = structlog.get_logger(__name__)

# Precondition failures on conditional writes
CONFLICT_STATUSES = (409, 412)


def build_filter(any_of: Optional[List[Dict[str, Any]]] = None, **equals: Any) -> str:
    """
    Build the JSON filter accepted by list endpoints.
    
    Keyword arguments are field equalities; `any_of` adds an `$or` over
    alternative equality maps.
    
    Example:
        build_filter(buyer_user_id="u1", any_of=[{"payment_status": "paid"}, {"payment_status": "pending"}])
    """
    query: Dict[str, Any] = {}
    for field, value in equals.items():
        query[field] = value.value if hasattr(value, "value") else value
    if any_of:
        query["$or"] = any_of
    return json.dumps(query, sort_keys=True, default=str)


def _if_match(expected: Optional[datetime]) -> Optional[Dict[str, str]]:
    if expected is None:
        return None
    return {"If-Match": expected.isoformat()}


class BillingRepository:
    """Facade over purchase and subscription endpoints."""
    
    def __init__(self, client: ApiClient, retry_policy: Optional[RetryPolicy] = None):
        self.client = client
        self.retry_policy = retry_policy
    
    async def _read(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await fetch_with_retry(
            lambda: self.client.get(path, params),
            self.retry_policy,
            description=f"GET {path}"
        )
    
    async def _get_one(self, resource: str, path: str, identifier: str) -> Any:
        try:
            return await self._read(path)
        except ApiError as e:
            if e.upstream_status == 404:
                raise NotFoundError(resource, identifier)
            raise
    
    async def _conditional_put(
        self,
        resource: str,
        path: str,
        identifier: str,
        payload: Dict[str, Any],
        expected_status_updated_at: Optional[datetime]
    ) -> Any:
        try:
            return await self.client.put(path, payload, headers=_if_match(expected_status_updated_at))
        except ApiError as e:
            if e.upstream_status in CONFLICT_STATUSES:
                logger.info(
                    "Conditional write rejected",
                    resource=resource,
                    identifier=identifier,
                    upstream_status=e.upstream_status
                )
                raise ConflictError(resource, identifier)
            if e.upstream_status == 404:
                raise NotFoundError(resource, identifier)
            raise
    
    # Subscriptions
    
    async def list_subscriptions(self, user_id: str) -> List[Subscription]:
        rows = await self._read("/subscriptions", {"user_id": user_id})
        return [Subscription.model_validate(row) for row in rows or []]
    
    async def list_pending_subscriptions(self) -> List[Subscription]:
        """All pending subscriptions; requires a service client."""
        rows = await self._read("/subscriptions", {"status": SubscriptionStatus.PENDING.value})
        return [Subscription.model_validate(row) for row in rows or []]
    
    async def list_active_subscriptions(self) -> List[Subscription]:
        """All active subscriptions; requires a service client."""
        rows = await self._read("/subscriptions", {"status": SubscriptionStatus.ACTIVE.value})
        return [Subscription.model_validate(row) for row in rows or []]
    
    async def get_subscription(self, subscription_id: str) -> Subscription:
        row = await self._get_one("Subscription", f"/subscriptions/{subscription_id}", subscription_id)
        return Subscription.model_validate(row)
    
    async def create_subscription(self, data: SubscriptionCreate) -> Subscription:
        row = await self.client.post("/subscriptions", data.model_dump(mode="json"))
        subscription = Subscription.model_validate(row)
        logger.info(
            "Subscription created",
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            plan_id=subscription.subscription_plan_id
        )
        return subscription
    
    async def update_subscription(
        self,
        subscription_id: str,
        changes: SubscriptionUpdate,
        expected_status_updated_at: Optional[datetime] = None
    ) -> Subscription:
        """
        Partially update a subscription.
        
        With `expected_status_updated_at` the write is conditional and raises
        ConflictError when another writer got there first.
        """
        row = await self._conditional_put(
            "Subscription",
            f"/subscriptions/{subscription_id}",
            subscription_id,
            changes.model_dump(mode="json", exclude_unset=True),
            expected_status_updated_at
        )
        return Subscription.model_validate(row)
    
    async def change_plan(self, user_id: str, plan_id: str, subscription_id: Optional[str] = None) -> Subscription:
        """Direct plan change that needs no payment page."""
        row = await self.client.post("/subscriptions/change-plan", {
            "user_id": user_id,
            "subscription_plan_id": plan_id,
            "subscription_id": subscription_id,
        })
        return Subscription.model_validate(row)
    
    # Purchases
    
    async def list_purchases(self, filter_json: str) -> List[Purchase]:
        rows = await self._read("/purchases", {"filter": filter_json})
        return [Purchase.from_api(row) for row in rows or []]
    
    async def list_user_purchases(self, user_id: str) -> List[Purchase]:
        return await self.list_purchases(build_filter(buyer_user_id=user_id))
    
    async def find_purchases_for(self, user_id: str, purchasable: Purchasable) -> List[Purchase]:
        """Paid or pending purchases of one purchasable by one user."""
        return await self.list_purchases(build_filter(
            buyer_user_id=user_id,
            purchasable_type=purchasable.kind,
            purchasable_id=purchasable.id,
            any_of=[
                {"payment_status": PaymentStatus.PAID.value},
                {"payment_status": PaymentStatus.PENDING.value},
            ]
        ))
    
    async def list_pending_purchases(self) -> List[Purchase]:
        """All pending purchases; requires a service client."""
        return await self.list_purchases(build_filter(payment_status=PaymentStatus.PENDING))
    
    async def get_purchase(self, purchase_id: str) -> Purchase:
        row = await self._get_one("Purchase", f"/purchases/{purchase_id}", purchase_id)
        return Purchase.from_api(row)
    
    async def create_purchase(self, data: PurchaseCreate) -> Purchase:
        row = await self.client.post("/purchases", data.to_payload())
        purchase = Purchase.from_api(row)
        logger.info(
            "Purchase created",
            purchase_id=purchase.id,
            order_number=purchase.order_number,
            payment_status=purchase.payment_status.value
        )
        return purchase
    
    async def update_purchase(
        self,
        purchase_id: str,
        changes: Dict[str, Any],
        expected_status_updated_at: Optional[datetime] = None
    ) -> Purchase:
        payload = {
            key: value.isoformat() if isinstance(value, datetime) else getattr(value, "value", value)
            for key, value in changes.items()
        }
        row = await self._conditional_put(
            "Purchase",
            f"/purchases/{purchase_id}",
            purchase_id,
            payload,
            expected_status_updated_at
        )
        return Purchase.from_api(row)
    
    # Users
    
    async def get_user(self, user_id: str) -> UserAccount:
        row = await self._get_one("User", f"/users/{user_id}", user_id)
        return UserAccount.model_validate(row)
    
    async def update_user(self, user_id: str, changes: UserUpdate) -> UserAccount:
        """Write the user's denormalized subscription pointer."""
        try:
            row = await self.client.put(f"/users/{user_id}", changes.model_dump(mode="json", exclude_unset=True))
        except ApiError as e:
            if e.upstream_status == 404:
                raise NotFoundError("User", user_id)
            raise
        return UserAccount.model_validate(row)
