"""
Pending-payment reconciler.

Moves pending subscriptions and purchases to terminal states, either on a
verified gateway confirmation or after the pending timeout, and re-checks
active subscriptions whose billing date has passed against the gateway.
Every write is conditional on the status_updated_at the decision was based
on, so clients racing on the same stale record converge without
double-processing.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, List, Optional, Sequence

import structlog

from edu_billing.api.services.decision_engine import as_utc, is_pending_expired
from edu_billing.api.services.payments import GatewayConfirmation, PaymentPageClient
from edu_billing.api.services.repository import BillingRepository
from edu_billing.core.config import GatewayStatus, PaymentStatus, SubscriptionStatus
from edu_billing.core.exceptions import (
    ApiError,
    ConflictError,
    GatewayError,
    InvalidTransitionError,
    NetworkError,
    NotFoundError,
)
from edu_billing.core.settings import settings
from edu_billing.db.models.purchase import Purchase
from edu_billing.db.models.subscription import Subscription, SubscriptionUpdate
from edu_billing.db.models.user import UserUpdate

logger = structlog.get_logger(__name__)


class ReconcileOutcome(str, Enum):
    RESET = "reset"
    EXPIRED = "expired"
    FAILED = "failed"
    ACTIVATED = "activated"
    PAID = "paid"
    CANCELLED = "cancelled"
    UNCHANGED = "unchanged"
    STILL_PENDING = "still_pending"
    ASSUMED_PENDING = "assumed_pending"
    CONVERGED = "converged"
    WOULD_RESET = "would_reset"
    RENEWED = "renewed"
    LAPSED = "lapsed"
    UNVERIFIED = "unverified"
    WOULD_CHECK = "would_check"


@dataclass(frozen=True)
class ReconcileResult:
    record_type: str
    record_id: str
    outcome: ReconcileOutcome
    status: str
    
    @property
    def changed(self) -> bool:
        return self.outcome in (
            ReconcileOutcome.RESET,
            ReconcileOutcome.EXPIRED,
            ReconcileOutcome.FAILED,
            ReconcileOutcome.ACTIVATED,
            ReconcileOutcome.PAID,
            ReconcileOutcome.CANCELLED,
            ReconcileOutcome.RENEWED,
            ReconcileOutcome.LAPSED,
        )


@dataclass
class SweepReport:
    results: List[ReconcileResult] = field(default_factory=list)
    
    def count(self, outcome: ReconcileOutcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)
    
    @property
    def changed(self) -> int:
        return sum(1 for r in self.results if r.changed)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PendingPaymentReconciler:
    """
    Applies the pending timeout, gateway confirmations and renewal checks.
    
    paid, failed, cancelled and expired are absorbing; a record already in
    the requested end state is left alone, which makes duplicate webhook
    deliveries and repeated sweeps no-ops.
    """
    
    def __init__(
        self,
        repository: BillingRepository,
        timeout: Optional[timedelta] = None,
        clock: Callable[[], datetime] = _utcnow,
        gateway: Optional[PaymentPageClient] = None
    ):
        self.repository = repository
        self.timeout = timeout or settings.pending_payment_timeout
        self.clock = clock
        self.gateway = gateway
    
    def minutes_pending(self, pending_since: Optional[datetime], now: Optional[datetime] = None) -> int:
        if pending_since is None:
            return 0
        elapsed = as_utc(now or self.clock()) - as_utc(pending_since)
        return max(0, int(elapsed.total_seconds() // 60))
    
    def is_stale_subscription(self, subscription: Subscription, now: Optional[datetime] = None) -> bool:
        return subscription.is_pending and is_pending_expired(
            subscription.status_updated_at, now or self.clock(), self.timeout
        )
    
    def is_renewal_due(self, subscription: Subscription, now: Optional[datetime] = None) -> bool:
        """Active with a gateway agreement whose billing date has passed."""
        if subscription.status != SubscriptionStatus.ACTIVE:
            return False
        if not subscription.payplus_subscription_uid or subscription.next_billing_date is None:
            return False
        return as_utc(subscription.next_billing_date) < as_utc(now or self.clock())
    
    def is_stale_purchase(self, purchase: Purchase, now: Optional[datetime] = None) -> bool:
        # Without a status stamp there is nothing to key the conditional write on
        return purchase.is_pending and is_pending_expired(
            purchase.status_updated_at, now or self.clock(), self.timeout
        )
    
    # Timeout path
    
    async def reconcile_subscription(self, subscription: Subscription, now: Optional[datetime] = None) -> ReconcileResult:
        """
        Retire a stale pending subscription.
        
        Without another current plan the record is reset to the free plan:
        plan and gateway agreement cleared, status_updated_at stamped, and
        the user's pointer moved to free_plan. When the user still holds an
        active or free_plan subscription (an upgrade that never completed)
        the record is expired instead, so only one current plan remains.
        Non-pending and still-fresh records are left untouched.
        """
        now = now or self.clock()
        
        if not subscription.is_pending:
            return self._result(subscription, ReconcileOutcome.UNCHANGED)
        if not self.is_stale_subscription(subscription, now):
            return self._result(subscription, ReconcileOutcome.STILL_PENDING)
        
        try:
            siblings = await self.repository.list_subscriptions(subscription.user_id)
        except NetworkError as e:
            logger.warning(
                "Reconcile failed, assuming still pending",
                subscription_id=subscription.id,
                error=e.message
            )
            return self._result(subscription, ReconcileOutcome.ASSUMED_PENDING)
        
        keeps_current_plan = any(s.id != subscription.id and s.is_current for s in siblings)
        if keeps_current_plan:
            outcome = ReconcileOutcome.EXPIRED
            changes = SubscriptionUpdate(
                status=SubscriptionStatus.EXPIRED,
                payplus_subscription_uid=None,
                status_updated_at=now
            )
        else:
            outcome = ReconcileOutcome.RESET
            changes = SubscriptionUpdate(
                subscription_plan_id=None,
                status=SubscriptionStatus.FREE_PLAN,
                payplus_subscription_uid=None,
                status_updated_at=now
            )
        
        try:
            updated = await self.repository.update_subscription(
                subscription.id, changes, expected_status_updated_at=subscription.status_updated_at
            )
        except ConflictError:
            return await self._converge_subscription(subscription.id)
        except NetworkError as e:
            logger.warning(
                "Reconcile failed, assuming still pending",
                subscription_id=subscription.id,
                error=e.message
            )
            return self._result(subscription, ReconcileOutcome.ASSUMED_PENDING)
        
        logger.info(
            "Stale pending subscription retired",
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            status=updated.status.value,
            minutes_pending=self.minutes_pending(subscription.status_updated_at, now)
        )
        
        if outcome == ReconcileOutcome.RESET:
            await self._sync_user(subscription.user_id, self._free_plan_pointer(now))
        return self._result(updated, outcome)
    
    async def reconcile_purchase(self, purchase: Purchase, now: Optional[datetime] = None) -> ReconcileResult:
        """Mark a stale pending purchase failed; everything else is untouched."""
        now = now or self.clock()
        
        if not purchase.is_pending:
            return self._purchase_result(purchase, ReconcileOutcome.UNCHANGED)
        if not self.is_stale_purchase(purchase, now):
            return self._purchase_result(purchase, ReconcileOutcome.STILL_PENDING)
        
        try:
            updated = await self.repository.update_purchase(
                purchase.id,
                {"payment_status": PaymentStatus.FAILED, "status_updated_at": now},
                expected_status_updated_at=purchase.status_updated_at
            )
        except ConflictError:
            fresh = await self.repository.get_purchase(purchase.id)
            return self._purchase_result(fresh, ReconcileOutcome.CONVERGED)
        except NetworkError as e:
            logger.warning(
                "Reconcile failed, assuming still pending",
                purchase_id=purchase.id,
                error=e.message
            )
            return self._purchase_result(purchase, ReconcileOutcome.ASSUMED_PENDING)
        
        logger.info(
            "Stale pending purchase marked failed",
            purchase_id=purchase.id,
            order_number=purchase.order_number,
            minutes_pending=self.minutes_pending(purchase.status_updated_at, now)
        )
        return self._purchase_result(updated, ReconcileOutcome.FAILED)
    
    async def reconcile_user(self, user_id: str, now: Optional[datetime] = None) -> List[ReconcileResult]:
        """
        Reconcile every pending record of one user.
        
        A failed fetch yields no results; the caller keeps treating the
        records as pending and checks again on the next load.
        """
        try:
            subscriptions = await self.repository.list_subscriptions(user_id)
            purchases = await self.repository.list_user_purchases(user_id)
        except NetworkError as e:
            logger.warning("Could not load pending records", user_id=user_id, error=e.message)
            return []
        
        renewals = subscriptions if self.gateway is not None else ()
        report = await self.sweep(subscriptions, purchases, now=now, renewals=renewals)
        return report.results
    
    async def sweep(
        self,
        subscriptions: Sequence[Subscription],
        purchases: Sequence[Purchase],
        now: Optional[datetime] = None,
        dry_run: bool = False,
        renewals: Sequence[Subscription] = ()
    ) -> SweepReport:
        """
        Apply the timeout rule to every pending record given.
        
        Subscriptions in `renewals` whose billing date has passed are checked
        against the gateway first, so a lapsed plan is retired before any
        stale pending record of the same user is.
        """
        now = now or self.clock()
        report = SweepReport()
        
        for subscription in renewals:
            if not self.is_renewal_due(subscription, now):
                continue
            if dry_run:
                report.results.append(self._result(subscription, ReconcileOutcome.WOULD_CHECK))
                continue
            report.results.append(await self.check_renewal(subscription, now))
        
        for subscription in subscriptions:
            if not subscription.is_pending:
                continue
            if dry_run:
                if self.is_stale_subscription(subscription, now):
                    report.results.append(self._result(subscription, ReconcileOutcome.WOULD_RESET))
                continue
            report.results.append(await self.reconcile_subscription(subscription, now))
        
        for purchase in purchases:
            if not purchase.is_pending:
                continue
            if dry_run:
                if self.is_stale_purchase(purchase, now):
                    report.results.append(self._purchase_result(purchase, ReconcileOutcome.WOULD_RESET))
                continue
            report.results.append(await self.reconcile_purchase(purchase, now))
        
        logger.info(
            "Pending sweep finished",
            dry_run=dry_run,
            examined=len(report.results),
            changed=report.changed
        )
        return report
    
    # Renewal path
    
    async def check_renewal(self, subscription: Subscription, now: Optional[datetime] = None) -> ReconcileResult:
        """
        Re-check an active subscription whose billing date has passed.
        
        The gateway decides: a still-charging agreement moves
        next_billing_date forward; any other status expires the subscription,
        clears the agreement and returns the user to the free plan. A gateway
        that cannot be reached leaves everything as is.
        """
        now = now or self.clock()
        if not self.is_renewal_due(subscription, now):
            return self._result(subscription, ReconcileOutcome.UNCHANGED)
        if self.gateway is None:
            raise ValueError("Renewal checks need a gateway client")
        
        try:
            recurring = await self.gateway.get_recurring_status(subscription.payplus_subscription_uid)
        except (GatewayError, NetworkError) as e:
            logger.warning(
                "Renewal check failed, keeping subscription active",
                subscription_id=subscription.id,
                error=e.message
            )
            return self._result(subscription, ReconcileOutcome.UNVERIFIED)
        
        if recurring.is_active:
            if recurring.next_charge_date is None:
                logger.info("Agreement active without next charge date", subscription_id=subscription.id)
                return self._result(subscription, ReconcileOutcome.UNCHANGED)
            outcome = ReconcileOutcome.RENEWED
            changes = SubscriptionUpdate(next_billing_date=recurring.next_charge_date, status_updated_at=now)
        else:
            outcome = ReconcileOutcome.LAPSED
            changes = SubscriptionUpdate(
                status=SubscriptionStatus.EXPIRED,
                payplus_subscription_uid=None,
                next_billing_date=None,
                status_updated_at=now
            )
        
        try:
            updated = await self.repository.update_subscription(
                subscription.id, changes, expected_status_updated_at=subscription.status_updated_at
            )
        except ConflictError:
            return await self._converge_subscription(subscription.id)
        except NetworkError as e:
            logger.warning("Renewal update failed", subscription_id=subscription.id, error=e.message)
            return self._result(subscription, ReconcileOutcome.UNVERIFIED)
        
        logger.info(
            "Renewal checked with gateway",
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            recurring_status=recurring.raw_status,
            outcome=outcome.value
        )
        
        if outcome == ReconcileOutcome.LAPSED:
            await self._sync_user(subscription.user_id, self._free_plan_pointer(now))
        return self._result(updated, outcome)
    
    # Confirmation path
    
    async def apply_gateway_confirmation(
        self,
        confirmation: GatewayConfirmation,
        now: Optional[datetime] = None
    ) -> ReconcileResult:
        """Apply a verified gateway terminal status to its pending record."""
        now = now or self.clock()
        logger.info(
            "Applying gateway confirmation",
            event_id=confirmation.event_id,
            status=confirmation.status.value,
            purchase_id=confirmation.purchase_id,
            subscription_id=confirmation.subscription_id
        )
        
        if confirmation.purchase_id:
            return await self._confirm_purchase(confirmation, now)
        return await self._confirm_subscription(confirmation, now)
    
    async def _confirm_purchase(self, confirmation: GatewayConfirmation, now: datetime) -> ReconcileResult:
        purchase = await self.repository.get_purchase(confirmation.purchase_id)
        if confirmation.status == GatewayStatus.SUCCESS:
            target, outcome = PaymentStatus.PAID, ReconcileOutcome.PAID
        else:
            target, outcome = PaymentStatus.FAILED, ReconcileOutcome.FAILED
        
        if purchase.payment_status == target:
            return self._purchase_result(purchase, ReconcileOutcome.UNCHANGED)
        if not purchase.can_transition_to(target):
            if confirmation.status == GatewayStatus.SUCCESS:
                logger.error(
                    "Payment confirmed for a purchase that is no longer pending",
                    event_id=confirmation.event_id,
                    purchase_id=purchase.id,
                    buyer_user_id=purchase.buyer_user_id,
                    payment_status=purchase.payment_status.value
                )
            raise InvalidTransitionError("Purchase", purchase.payment_status.value, target.value)
        
        try:
            updated = await self.repository.update_purchase(
                purchase.id,
                {"payment_status": target, "status_updated_at": now},
                expected_status_updated_at=purchase.status_updated_at
            )
        except ConflictError:
            fresh = await self.repository.get_purchase(purchase.id)
            if fresh.payment_status == target:
                return self._purchase_result(fresh, ReconcileOutcome.UNCHANGED)
            raise
        
        logger.info("Purchase confirmed by gateway", purchase_id=purchase.id, payment_status=target.value)
        return self._purchase_result(updated, outcome)
    
    async def _confirm_subscription(self, confirmation: GatewayConfirmation, now: datetime) -> ReconcileResult:
        subscription = await self.repository.get_subscription(confirmation.subscription_id)
        if confirmation.status == GatewayStatus.SUCCESS:
            target, outcome = SubscriptionStatus.ACTIVE, ReconcileOutcome.ACTIVATED
            changes = SubscriptionUpdate(
                status=target,
                payplus_subscription_uid=confirmation.payplus_subscription_uid or subscription.payplus_subscription_uid,
                next_billing_date=confirmation.next_billing_date,
                status_updated_at=now
            )
        else:
            target, outcome = SubscriptionStatus.CANCELLED, ReconcileOutcome.CANCELLED
            changes = SubscriptionUpdate(status=target, status_updated_at=now)
        
        if subscription.status == target:
            return self._result(subscription, ReconcileOutcome.UNCHANGED)
        if not subscription.can_transition_to(target):
            if confirmation.status == GatewayStatus.SUCCESS:
                # Paid after the timeout already retired the record
                logger.error(
                    "Payment confirmed for a subscription that is no longer pending",
                    event_id=confirmation.event_id,
                    subscription_id=subscription.id,
                    user_id=subscription.user_id,
                    plan_id=subscription.subscription_plan_id,
                    status=subscription.status.value
                )
            raise InvalidTransitionError("Subscription", subscription.status.value, target.value)
        
        try:
            updated = await self.repository.update_subscription(
                subscription.id, changes, expected_status_updated_at=subscription.status_updated_at
            )
        except ConflictError:
            fresh = await self.repository.get_subscription(subscription.id)
            if fresh.status == target:
                return self._result(fresh, ReconcileOutcome.UNCHANGED)
            raise
        
        logger.info(
            "Subscription confirmed by gateway",
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            status=target.value
        )
        
        if target == SubscriptionStatus.ACTIVE:
            await self._retire_previous_plans(updated, now)
            await self._sync_user(updated.user_id, UserUpdate(
                current_subscription_plan_id=updated.subscription_plan_id,
                subscription_status=SubscriptionStatus.ACTIVE,
                subscription_status_updated_at=now,
                payplus_subscription_uid=updated.payplus_subscription_uid
            ))
        return self._result(updated, outcome)
    
    async def _retire_previous_plans(self, activated: Subscription, now: datetime) -> None:
        """Cancel the plan an upgrade replaced so one current plan remains."""
        for other in await self.repository.list_subscriptions(activated.user_id):
            if other.id == activated.id or not other.is_current:
                continue
            try:
                await self.repository.update_subscription(
                    other.id,
                    SubscriptionUpdate(status=SubscriptionStatus.CANCELLED, status_updated_at=now),
                    expected_status_updated_at=other.status_updated_at
                )
            except ConflictError:
                logger.warning("Previous plan changed concurrently", subscription_id=other.id)
                continue
            logger.info(
                "Previous plan cancelled after upgrade",
                subscription_id=other.id,
                replaced_by=activated.id
            )
    
    # Cancellation
    
    async def cancel_pending(self, subscription_id: str, now: Optional[datetime] = None) -> ReconcileResult:
        """
        Cancel a pending subscription (pending -> cancelled).
        
        Safe to retry: an already-cancelled subscription is left as is.
        """
        now = now or self.clock()
        subscription = await self.repository.get_subscription(subscription_id)
        
        if subscription.status == SubscriptionStatus.CANCELLED:
            return self._result(subscription, ReconcileOutcome.UNCHANGED)
        if not subscription.is_pending:
            raise InvalidTransitionError(
                "Subscription", subscription.status.value, SubscriptionStatus.CANCELLED.value
            )
        
        try:
            updated = await self.repository.update_subscription(
                subscription.id,
                SubscriptionUpdate(status=SubscriptionStatus.CANCELLED, status_updated_at=now),
                expected_status_updated_at=subscription.status_updated_at
            )
        except ConflictError:
            fresh = await self.repository.get_subscription(subscription_id)
            if fresh.status == SubscriptionStatus.CANCELLED:
                return self._result(fresh, ReconcileOutcome.UNCHANGED)
            raise
        
        logger.info("Pending subscription cancelled", subscription_id=subscription_id, user_id=subscription.user_id)
        return self._result(updated, ReconcileOutcome.CANCELLED)
    
    # User pointer
    
    @staticmethod
    def _free_plan_pointer(now: datetime) -> UserUpdate:
        return UserUpdate(
            current_subscription_plan_id=None,
            subscription_status=SubscriptionStatus.FREE_PLAN,
            subscription_status_updated_at=now,
            payplus_subscription_uid=None
        )
    
    async def _sync_user(self, user_id: str, pointer: UserUpdate) -> None:
        """
        Mirror a subscription change onto the user record.
        
        The subscription record stays authoritative; a failed mirror is
        logged and repaired by the next reconcile of that user.
        """
        try:
            await self.repository.update_user(user_id, pointer)
        except (NetworkError, ApiError, NotFoundError) as e:
            logger.warning("User subscription pointer not updated", user_id=user_id, error=e.message)
            return
        logger.debug(
            "User subscription pointer updated",
            user_id=user_id,
            subscription_status=pointer.subscription_status.value
        )
    
    async def _converge_subscription(self, subscription_id: str) -> ReconcileResult:
        fresh = await self.repository.get_subscription(subscription_id)
        logger.info(
            "Subscription already reconciled elsewhere",
            subscription_id=subscription_id,
            status=fresh.status.value
        )
        return self._result(fresh, ReconcileOutcome.CONVERGED)
    
    @staticmethod
    def _result(subscription: Subscription, outcome: ReconcileOutcome) -> ReconcileResult:
        return ReconcileResult("subscription", subscription.id, outcome, subscription.status.value)
    
    @staticmethod
    def _purchase_result(purchase: Purchase, outcome: ReconcileOutcome) -> ReconcileResult:
        return ReconcileResult("purchase", purchase.id, outcome, purchase.payment_status.value)
