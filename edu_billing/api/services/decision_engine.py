"""
Subscription decision engine.

Given a user, a target plan, and already-fetched history, decide the one
legal next action. Everything here is a pure projection over its inputs:
no network calls and no mutation, so it runs identically from any number
of concurrent callers.

Priority (first match wins):
- pending subscription for the target plan: retry it, or reconcile first
  when it has timed out
- no current plan and nothing pending: new subscription
- pending subscription for another plan: cancel it first
- current plan differs from target: upgrade, downgrade, or lateral move
- already on the target plan: no action
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Tuple

import structlog

from edu_billing.api.services.catalog import find_plan
from edu_billing.core.config import ActionType, SubscriptionStatus
from edu_billing.core.settings import settings
from edu_billing.db.models.plan import SubscriptionPlan
from edu_billing.db.models.purchase import Purchase
from edu_billing.db.models.subscription import Subscription
from edu_billing.db.models.user import UserAccount

logger = structlog.get_logger(__name__)


def as_utc(moment: datetime) -> datetime:
    """Backend timestamps without an offset are UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def is_pending_expired(pending_since: Optional[datetime], now: datetime, timeout: timedelta) -> bool:
    """
    True when a pending record has outlived the timeout window.
    
    An unknown start time never counts as expired; the backend decides.
    """
    if pending_since is None:
        return False
    return as_utc(now) - as_utc(pending_since) >= timeout


@dataclass(frozen=True)
class PlanComparison:
    action_type: ActionType
    requires_payment: bool
    price_change: Decimal
    message: str


@dataclass(frozen=True)
class ActionDecision:
    """The single legal next action for a plan selection."""
    action_type: ActionType
    target_plan: SubscriptionPlan
    reason: str
    message: str
    requires_payment: bool = False
    needs_payment_page: bool = False
    auto_execute: bool = False
    can_proceed: bool = True
    price_change: Decimal = Decimal("0")
    current_plan: Optional[SubscriptionPlan] = None
    current_subscription: Optional[Subscription] = None
    pending_subscription: Optional[Subscription] = None
    has_active_plus_pending: bool = False
    
    @property
    def existing_subscription_id(self) -> Optional[str]:
        """Pending subscription a retry must reuse."""
        if self.action_type == ActionType.RETRY_PAYMENT and self.pending_subscription:
            return self.pending_subscription.id
        return None


@dataclass(frozen=True)
class PendingSubscriptionDetail:
    subscription: Subscription
    plan: Optional[SubscriptionPlan]


@dataclass(frozen=True)
class SubscriptionSummary:
    """Display-oriented view of a user's plan state."""
    current_plan: Optional[SubscriptionPlan]
    current_subscription: Optional[Subscription]
    has_active_subscription: bool
    pending_subscriptions: Tuple[PendingSubscriptionDetail, ...]
    has_pending_subscriptions: bool
    has_active_plus_pending: bool
    pending_purchases: Tuple[Purchase, ...]
    can_change_plan: bool
    available_plans: Tuple[SubscriptionPlan, ...] = field(default_factory=tuple)


def compare_plans(current_plan: Optional[SubscriptionPlan], target_plan: SubscriptionPlan) -> PlanComparison:
    """Classify a move from current_plan to target_plan by price."""
    if current_plan is None:
        return PlanComparison(
            action_type=ActionType.NEW_SUBSCRIPTION,
            requires_payment=target_plan.price > 0,
            price_change=target_plan.price,
            message=f"Subscribe to {target_plan.name}"
        )
    
    if current_plan.id == target_plan.id:
        return PlanComparison(
            action_type=ActionType.NO_ACTION,
            requires_payment=False,
            price_change=Decimal("0"),
            message="This is your current plan"
        )
    
    price_diff = target_plan.price - current_plan.price
    if price_diff > 0:
        return PlanComparison(ActionType.UPGRADE, True, price_diff, f"Upgrade for an additional {price_diff}")
    if price_diff < 0:
        return PlanComparison(ActionType.DOWNGRADE, False, price_diff, f"Downgrade and save {abs(price_diff)}")
    return PlanComparison(ActionType.LATERAL_MOVE, False, Decimal("0"), "Switch to a plan at the same price")


def should_open_payment_page(comparison: PlanComparison, target_plan: SubscriptionPlan) -> bool:
    # Free targets never go through the gateway
    if target_plan.is_free:
        return False
    if comparison.action_type in (ActionType.UPGRADE, ActionType.NEW_SUBSCRIPTION):
        return comparison.requires_payment
    return False


def find_current_subscription(subscriptions: Iterable[Subscription]) -> Optional[Subscription]:
    """The user's active subscription, else their free_plan one."""
    current = [s for s in subscriptions if s.is_current]
    for subscription in current:
        if subscription.status == SubscriptionStatus.ACTIVE:
            return subscription
    return current[0] if current else None


def pending_subscriptions(subscriptions: Iterable[Subscription]) -> List[Subscription]:
    return [s for s in subscriptions if s.is_pending]


def has_active_plus_pending(subscriptions: Iterable[Subscription], plan_id: Optional[str] = None) -> bool:
    """Active subscription coexisting with a pending one (for plan_id when given)."""
    subscriptions = list(subscriptions)
    has_active = any(s.status == SubscriptionStatus.ACTIVE for s in subscriptions)
    pending = pending_subscriptions(subscriptions)
    if plan_id is not None:
        pending = [s for s in pending if s.subscription_plan_id == plan_id]
    return has_active and bool(pending)


def determine_action(
    user: UserAccount,
    target_plan: SubscriptionPlan,
    purchases: Sequence[Purchase],
    plans: Sequence[SubscriptionPlan],
    subscriptions: Sequence[Subscription],
    *,
    now: Optional[datetime] = None,
    timeout: Optional[timedelta] = None
) -> ActionDecision:
    """
    Decide what selecting target_plan should do for user.
    
    Subscriptions belonging to other users are ignored. `now` and `timeout`
    default to the wall clock and the configured pending timeout.
    """
    now = now or datetime.now(timezone.utc)
    timeout = timeout or settings.pending_payment_timeout
    
    own = [s for s in subscriptions if s.user_id == user.id]
    current_subscription = find_current_subscription(own)
    current_plan = find_plan(plans, current_subscription.subscription_plan_id) if current_subscription else None
    pending = pending_subscriptions(own)
    pending_same = next((s for s in pending if s.subscription_plan_id == target_plan.id), None)
    pending_other = next((s for s in pending if s.subscription_plan_id != target_plan.id), None)
    active_plus_pending = has_active_plus_pending(own, target_plan.id)
    
    context = dict(
        target_plan=target_plan,
        current_plan=current_plan,
        current_subscription=current_subscription,
        has_active_plus_pending=active_plus_pending,
    )
    
    if pending_same is not None:
        if is_pending_expired(pending_same.status_updated_at, now, timeout):
            decision = ActionDecision(
                action_type=ActionType.RECONCILE_PENDING,
                reason="pending_payment_timed_out",
                message=f"The pending payment for {target_plan.name} timed out. Refresh before trying again.",
                can_proceed=False,
                pending_subscription=pending_same,
                **context
            )
        else:
            decision = ActionDecision(
                action_type=ActionType.RETRY_PAYMENT,
                reason="pending_payment_same_plan",
                message=f"You have a pending payment for {target_plan.name}. Continue to complete it.",
                requires_payment=not target_plan.is_free,
                needs_payment_page=not target_plan.is_free,
                pending_subscription=pending_same,
                price_change=target_plan.price,
                **context
            )
        return _logged(decision, user, purchases)
    
    if current_plan is None and not pending:
        comparison = compare_plans(None, target_plan)
        needs_page = should_open_payment_page(comparison, target_plan)
        return _logged(ActionDecision(
            action_type=comparison.action_type,
            reason="no_current_plan",
            message=comparison.message,
            requires_payment=comparison.requires_payment,
            needs_payment_page=needs_page,
            auto_execute=not needs_page,
            price_change=comparison.price_change,
            **context
        ), user, purchases)
    
    if pending_other is not None:
        pending_plan = find_plan(plans, pending_other.subscription_plan_id)
        if target_plan.is_free and pending_plan is not None and not pending_plan.is_free:
            return _logged(ActionDecision(
                action_type=ActionType.CANCEL_PENDING_DOWNGRADE,
                reason="cancel_pending_downgrade_to_free",
                message="You have a pending payment for a paid plan. Cancel it and switch to the free plan?",
                pending_subscription=pending_other,
                **context
            ), user, purchases)
        
        comparison = compare_plans(current_plan, target_plan)
        return _logged(ActionDecision(
            action_type=ActionType.REPLACE_PENDING,
            reason="pending_switch_different",
            message=f"You have a pending plan change. Cancel it and switch to {target_plan.name}?",
            requires_payment=comparison.requires_payment,
            needs_payment_page=should_open_payment_page(comparison, target_plan),
            price_change=comparison.price_change,
            pending_subscription=pending_other,
            **context
        ), user, purchases)
    
    comparison = compare_plans(current_plan, target_plan)
    if comparison.action_type == ActionType.NO_ACTION:
        return _logged(ActionDecision(
            action_type=ActionType.NO_ACTION,
            reason="current_plan",
            message=comparison.message,
            can_proceed=False,
            **context
        ), user, purchases)
    
    needs_page = should_open_payment_page(comparison, target_plan)
    return _logged(ActionDecision(
        action_type=comparison.action_type,
        reason="plan_change",
        message=comparison.message,
        requires_payment=comparison.requires_payment,
        needs_payment_page=needs_page,
        auto_execute=not needs_page,
        price_change=comparison.price_change,
        **context
    ), user, purchases)


def _logged(decision: ActionDecision, user: UserAccount, purchases: Sequence[Purchase]) -> ActionDecision:
    logger.debug(
        "Subscription action determined",
        user_id=user.id,
        target_plan_id=decision.target_plan.id,
        action_type=decision.action_type.value,
        reason=decision.reason,
        has_active_plus_pending=decision.has_active_plus_pending,
        pending_purchases=sum(1 for p in purchases if p.is_pending)
    )
    return decision


def get_subscription_summary(
    purchases: Sequence[Purchase],
    plans: Sequence[SubscriptionPlan],
    subscriptions: Sequence[Subscription]
) -> SubscriptionSummary:
    """Summarize current and pending plan state for display."""
    current_subscription = find_current_subscription(subscriptions)
    current_plan = find_plan(plans, current_subscription.subscription_plan_id) if current_subscription else None
    pending = pending_subscriptions(subscriptions)
    
    return SubscriptionSummary(
        current_plan=current_plan,
        current_subscription=current_subscription,
        has_active_subscription=any(s.status == SubscriptionStatus.ACTIVE for s in subscriptions),
        pending_subscriptions=tuple(
            PendingSubscriptionDetail(s, find_plan(plans, s.subscription_plan_id)) for s in pending
        ),
        has_pending_subscriptions=bool(pending),
        has_active_plus_pending=has_active_plus_pending(subscriptions),
        pending_purchases=tuple(p for p in purchases if p.is_pending),
        can_change_plan=not pending,
        available_plans=tuple(plans)
    )
