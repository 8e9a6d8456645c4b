"""
Plan and product catalog reader.

Read-only view over plans, products, and platform access defaults.
Plans are cached for the reader's lifetime since they do not change under
a live subscription.
"""
from typing import Iterable, List, Optional

import structlog

from edu_billing.core.api_client import ApiClient
from edu_billing.core.exceptions import ApiError, NotFoundError
from edu_billing.core.retry import RetryPolicy, fetch_with_retry
from edu_billing.db.models.plan import SubscriptionPlan
from edu_billing.db.models.platform_settings import PlatformSettings
from edu_billing.db.models.product import Product

logger = structlog.get_logger(__name__)


def find_plan(plans: Iterable[SubscriptionPlan], plan_id: Optional[str]) -> Optional[SubscriptionPlan]:
    if not plan_id:
        return None
    for plan in plans:
        if plan.id == plan_id:
            return plan
    return None


class CatalogReader:
    """Reads plan and product definitions from the backend."""
    
    def __init__(self, client: ApiClient, retry_policy: Optional[RetryPolicy] = None):
        self.client = client
        self.retry_policy = retry_policy
        self._plans: Optional[List[SubscriptionPlan]] = None
    
    async def _read(self, path: str, params=None):
        return await fetch_with_retry(
            lambda: self.client.get(path, params),
            self.retry_policy,
            description=f"GET {path}"
        )
    
    async def list_plans(self, include_inactive: bool = False) -> List[SubscriptionPlan]:
        if self._plans is None:
            rows = await self._read("/subscription-plans")
            self._plans = [SubscriptionPlan.model_validate(row) for row in rows or []]
            logger.debug("Loaded subscription plans", count=len(self._plans))
        
        if include_inactive:
            return list(self._plans)
        return [plan for plan in self._plans if plan.is_active]
    
    async def get_plan(self, plan_id: str) -> SubscriptionPlan:
        plan = find_plan(await self.list_plans(include_inactive=True), plan_id)
        if plan is None:
            raise NotFoundError("SubscriptionPlan", plan_id)
        return plan
    
    async def list_products(self, filter_json: Optional[str] = None) -> List[Product]:
        params = {"filter": filter_json} if filter_json else None
        rows = await self._read("/products", params)
        return [Product.model_validate(row) for row in rows or []]
    
    async def get_product(self, product_id: str) -> Product:
        try:
            row = await self._read(f"/products/{product_id}")
        except ApiError as e:
            if e.upstream_status == 404:
                raise NotFoundError("Product", product_id)
            raise
        return Product.model_validate(row)
    
    async def get_platform_settings(self) -> PlatformSettings:
        """Platform settings; the backend serves a one-element list or an object."""
        data = await self._read("/settings")
        if isinstance(data, list):
            data = data[0] if data else {}
        return PlatformSettings.model_validate(data or {})
    
    def invalidate(self) -> None:
        self._plans = None
