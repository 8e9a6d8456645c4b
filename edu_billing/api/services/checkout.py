"""
Checkout flows.

CheckoutService is the single gate for creating pending records: plan
selections are decided and executed under a per-user lock against a fresh
snapshot, so a retry can never race a duplicate "create new" for the same
user.
"""
import asyncio
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple

import structlog

from edu_billing.api.services.access_window import has_active_access, policy_expiry, resolve_access_policy
from edu_billing.api.services.catalog import CatalogReader
from edu_billing.api.services.coupons import CouponResolver
from edu_billing.api.services.decision_engine import ActionDecision, determine_action
from edu_billing.api.services.payments import PaymentPageClient, generate_order_number
from edu_billing.api.services.reconciler import PendingPaymentReconciler, ReconcileOutcome
from edu_billing.api.services.repository import BillingRepository
from edu_billing.core.config import ActionType, PaymentStatus
from edu_billing.core.exceptions import (
    NotFoundError,
    PaymentTimeoutError,
    ValidationError,
)
from edu_billing.core.settings import settings
from edu_billing.db.models.coupon import PriceQuote
from edu_billing.db.models.product import Product
from edu_billing.db.models.purchase import Purchase, PurchaseCreate
from edu_billing.db.models.subscription import Subscription, SubscriptionCreate
from edu_billing.db.models.user import UserAccount

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PurchaseCheckout:
    """Outcome of starting a product purchase."""
    purchase: Purchase
    quote: PriceQuote
    payment_url: Optional[str] = None
    reused_existing: bool = False
    
    @property
    def completed(self) -> bool:
        return self.purchase.is_paid


@dataclass(frozen=True)
class ActionResult:
    """Outcome of executing a subscription decision."""
    action_type: ActionType
    message: str
    subscription: Optional[Subscription] = None
    payment_url: Optional[str] = None
    cancelled_subscription_id: Optional[str] = None
    
    @property
    def requires_redirect(self) -> bool:
        return self.payment_url is not None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CheckoutService:
    """Runs product purchases and subscription plan changes."""
    
    def __init__(
        self,
        repository: BillingRepository,
        catalog: CatalogReader,
        coupons: CouponResolver,
        payment_pages: PaymentPageClient,
        reconciler: PendingPaymentReconciler,
        clock: Callable[[], datetime] = _utcnow
    ):
        self.repository = repository
        self.catalog = catalog
        self.coupons = coupons
        self.payment_pages = payment_pages
        self.reconciler = reconciler
        self.clock = clock
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
    
    # Product purchases
    
    async def start_purchase(
        self,
        user: UserAccount,
        product: Product,
        coupon_code: Optional[str] = None,
        environment: Optional[str] = None
    ) -> PurchaseCheckout:
        """
        Start checkout for a product.
        
        An existing fresh pending purchase of the same item is reused; an
        item the user still has access to cannot be bought again. Items
        that end up free after discounts are recorded as paid directly.
        """
        environment = environment or settings.payplus_environment
        
        async with self._locks[user.id]:
            now = self.clock()
            existing = await self.repository.find_purchases_for(user.id, product.purchasable)
            
            for purchase in existing:
                if has_active_access(purchase, now):
                    raise ValidationError(
                        "You already own this item",
                        details={"purchase_id": purchase.id}
                    )
            
            for purchase in existing:
                if not purchase.is_pending:
                    continue
                if self.reconciler.is_stale_purchase(purchase, now):
                    await self.reconciler.reconcile_purchase(purchase, now)
                    continue
                logger.info("Reusing pending purchase", purchase_id=purchase.id, user_id=user.id)
                payment_url = await self.payment_pages.create_page(
                    purchase_id=purchase.id, environment=environment
                )
                quote = PriceQuote(
                    original_price=purchase.original_price,
                    final_price=purchase.payment_amount,
                    discount_amount=purchase.discount_amount,
                    coupon_code=purchase.coupon_code
                )
                return PurchaseCheckout(purchase, quote, payment_url, reused_existing=True)
            
            quote = await self.coupons.quote(
                product.price, product.product_type.value, product.category, coupon_code
            )
            policy = resolve_access_policy(product, await self.catalog.get_platform_settings())
            is_free = quote.final_price == 0
            
            data = PurchaseCreate(
                order_number=generate_order_number(),
                buyer_user_id=user.id,
                purchasable_type=product.product_type,
                purchasable_id=product.entity_id or product.id,
                payment_amount=quote.final_price,
                original_price=quote.original_price,
                discount_amount=quote.discount_amount,
                coupon_code=quote.coupon_code if quote.coupon_applied else None,
                payment_status=PaymentStatus.PAID if is_free else PaymentStatus.PENDING,
                access_expires_at=policy_expiry(policy, now),
                purchase_metadata={
                    "environment": environment,
                    "product_title": product.title,
                    "access_days": policy.access_days,
                    "lifetime_access": policy.is_lifetime,
                }
            )
            purchase = await self.repository.create_purchase(data)
            
            if is_free:
                logger.info("Free purchase completed", purchase_id=purchase.id, user_id=user.id)
                return PurchaseCheckout(purchase, quote)
            
            payment_url = await self.payment_pages.create_page(purchase_id=purchase.id, environment=environment)
            return PurchaseCheckout(purchase, quote, payment_url)
    
    async def retry_purchase_payment(self, user: UserAccount, purchase_id: str) -> str:
        """
        New payment page for the same pending purchase.
        
        A timed-out purchase is reconciled first and PaymentTimeoutError is
        raised so the caller starts over with a fresh purchase.
        """
        async with self._locks[user.id]:
            purchase = await self.repository.get_purchase(purchase_id)
            if purchase.buyer_user_id != user.id:
                raise NotFoundError("Purchase", purchase_id)
            if not purchase.is_pending:
                raise ValidationError(
                    "Only pending purchases can be retried",
                    details={"payment_status": purchase.payment_status.value}
                )
            
            now = self.clock()
            if self.reconciler.is_stale_purchase(purchase, now):
                await self.reconciler.reconcile_purchase(purchase, now)
                raise PaymentTimeoutError(purchase.id, self.reconciler.minutes_pending(purchase.status_updated_at, now))
            
            return await self.payment_pages.create_page(purchase_id=purchase.id)
    
    # Subscriptions
    
    async def select_plan(self, user: UserAccount, target_plan_id: str) -> Tuple[ActionDecision, Optional[ActionResult]]:
        """
        Decide and execute a plan selection against a fresh snapshot.
        
        Returns the decision and, unless there was nothing to do, the
        execution result.
        """
        async with self._locks[user.id]:
            target_plan = await self.catalog.get_plan(target_plan_id)
            plans = await self.catalog.list_plans(include_inactive=True)
            subscriptions = await self.repository.list_subscriptions(user.id)
            purchases = await self.repository.list_user_purchases(user.id)
            
            decision = determine_action(
                user, target_plan, purchases, plans, subscriptions,
                now=self.clock(), timeout=self.reconciler.timeout
            )
            logger.info(
                "Plan selected",
                user_id=user.id,
                target_plan_id=target_plan.id,
                action_type=decision.action_type.value
            )
            
            if decision.action_type == ActionType.NO_ACTION:
                return decision, None
            return decision, await self._execute(user, decision)
    
    async def execute_action(self, user: UserAccount, decision: ActionDecision) -> ActionResult:
        """Execute a decision made by the caller from its own snapshot."""
        async with self._locks[user.id]:
            return await self._execute(user, decision)
    
    async def _execute(self, user: UserAccount, decision: ActionDecision) -> ActionResult:
        target = decision.target_plan
        
        if decision.action_type == ActionType.RECONCILE_PENDING:
            pending = decision.pending_subscription
            now = self.clock()
            await self.reconciler.reconcile_subscription(pending, now)
            raise PaymentTimeoutError(pending.id, self.reconciler.minutes_pending(pending.status_updated_at, now))
        
        if not decision.can_proceed:
            raise ValidationError(decision.message, details={"reason": decision.reason})
        
        if decision.action_type == ActionType.RETRY_PAYMENT:
            pending = decision.pending_subscription
            payment_url = await self.payment_pages.create_page(subscription_id=pending.id)
            return ActionResult(decision.action_type, "Redirecting to payment", pending, payment_url)
        
        cancelled_id = None
        if decision.action_type in (ActionType.REPLACE_PENDING, ActionType.CANCEL_PENDING_DOWNGRADE):
            result = await self.reconciler.cancel_pending(decision.pending_subscription.id)
            cancelled_id = result.record_id
            
            # Replacing a pending switch with the plan already held
            if decision.current_plan is not None and decision.current_plan.id == target.id:
                return ActionResult(
                    decision.action_type,
                    "Pending plan change cancelled",
                    decision.current_subscription,
                    cancelled_subscription_id=cancelled_id
                )
        
        if decision.needs_payment_page:
            subscription = await self.repository.create_subscription(SubscriptionCreate(
                user_id=user.id,
                subscription_plan_id=target.id,
                status_updated_at=self.clock()
            ))
            payment_url = await self.payment_pages.create_page(subscription_id=subscription.id)
            return ActionResult(
                decision.action_type,
                "Redirecting to payment",
                subscription,
                payment_url,
                cancelled_subscription_id=cancelled_id
            )
        
        current_id = decision.current_subscription.id if decision.current_subscription else None
        subscription = await self.repository.change_plan(user.id, target.id, current_id)
        logger.info(
            "Plan changed directly",
            user_id=user.id,
            subscription_id=subscription.id,
            plan_id=target.id,
            action_type=decision.action_type.value
        )
        return ActionResult(
            decision.action_type,
            "Plan changed",
            subscription,
            cancelled_subscription_id=cancelled_id
        )
    
    async def cancel_pending_subscription(self, user: UserAccount, subscription_id: str) -> bool:
        """
        Cancel one of the user's pending subscriptions.
        
        Returns True when this call cancelled it, False when it already was.
        """
        async with self._locks[user.id]:
            subscription = await self.repository.get_subscription(subscription_id)
            if subscription.user_id != user.id:
                raise NotFoundError("Subscription", subscription_id)
            result = await self.reconciler.cancel_pending(subscription_id)
            return result.outcome == ReconcileOutcome.CANCELLED
