"""
Tests for the pending-payment reconciler against the fake backend.
"""

from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from edu_billing.api.services.payments import GatewayConfirmation
from edu_billing.api.services.reconciler import PendingPaymentReconciler, ReconcileOutcome
from edu_billing.core.config import GatewayStatus
from edu_billing.core.exceptions import InvalidTransitionError
from tests.conftest import NOW, minutes_ago


def iso(moment):
    return moment.isoformat()


def stamp(value):
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class TestTimeoutReset:
    """Stale pending subscriptions fall back to the free plan."""
    
    @pytest.mark.asyncio
    async def test_stale_pending_subscription_is_reset(self, backend, repository, reconciler):
        backend.add_subscription(
            id="sub_pro",
            user_id="user_1",
            subscription_plan_id="plan_pro",
            status="pending",
            payplus_subscription_uid="pp_uid_1",
            status_updated_at=iso(minutes_ago(10)),
        )
        subscription = await repository.get_subscription("sub_pro")
        
        result = await reconciler.reconcile_subscription(subscription)
        
        assert result.outcome == ReconcileOutcome.RESET
        stored = backend.subscriptions["sub_pro"]
        assert stored["status"] == "free_plan"
        assert stored["subscription_plan_id"] is None
        assert stored["payplus_subscription_uid"] is None
        assert stamp(stored["status_updated_at"]) == NOW
        
        put = backend.calls("PUT", "/subscriptions/sub_pro")[0]
        assert put.headers["If-Match"] == iso(minutes_ago(10))
    
    @pytest.mark.asyncio
    async def test_second_reconcile_is_noop(self, backend, repository, reconciler):
        backend.add_subscription(
            id="sub_pro",
            user_id="user_1",
            subscription_plan_id="plan_pro",
            status="pending",
            status_updated_at=iso(minutes_ago(10)),
        )
        await reconciler.reconcile_subscription(await repository.get_subscription("sub_pro"))
        stamped = backend.subscriptions["sub_pro"]["status_updated_at"]
        
        later = PendingPaymentReconciler(repository, clock=lambda: NOW + timedelta(hours=1))
        result = await later.reconcile_subscription(await repository.get_subscription("sub_pro"))
        
        assert result.outcome == ReconcileOutcome.UNCHANGED
        assert not result.changed
        assert backend.subscriptions["sub_pro"]["status_updated_at"] == stamped
        assert len(backend.calls("PUT", "/subscriptions/sub_pro")) == 1
    
    @pytest.mark.asyncio
    async def test_fresh_pending_is_left_alone(self, backend, repository, reconciler):
        backend.add_subscription(
            id="sub_pro", user_id="user_1", subscription_plan_id="plan_pro",
            status="pending", status_updated_at=iso(minutes_ago(4)),
        )
        result = await reconciler.reconcile_subscription(await repository.get_subscription("sub_pro"))
        
        assert result.outcome == ReconcileOutcome.STILL_PENDING
        assert backend.calls("PUT", "/subscriptions/sub_pro") == []
    
    @pytest.mark.asyncio
    async def test_exactly_five_minutes_is_stale(self, backend, repository, reconciler):
        backend.add_subscription(
            id="sub_pro", user_id="user_1", subscription_plan_id="plan_pro",
            status="pending", status_updated_at=iso(minutes_ago(5)),
        )
        result = await reconciler.reconcile_subscription(await repository.get_subscription("sub_pro"))
        assert result.outcome == ReconcileOutcome.RESET
    
    @pytest.mark.asyncio
    async def test_racing_clients_converge(self, backend, repository, reconciler):
        backend.add_subscription(
            id="sub_pro", user_id="user_1", subscription_plan_id="plan_pro",
            status="pending", status_updated_at=iso(minutes_ago(10)),
        )
        # Both clients read the same stale snapshot
        snapshot_a = await repository.get_subscription("sub_pro")
        snapshot_b = await repository.get_subscription("sub_pro")
        
        first = await reconciler.reconcile_subscription(snapshot_a)
        second = await reconciler.reconcile_subscription(snapshot_b)
        
        assert first.outcome == ReconcileOutcome.RESET
        assert second.outcome == ReconcileOutcome.CONVERGED
        assert second.status == "free_plan"
        assert stamp(backend.subscriptions["sub_pro"]["status_updated_at"]) == NOW
    
    @pytest.mark.asyncio
    async def test_network_failure_assumes_pending(self, backend, repository, reconciler):
        backend.add_subscription(
            id="sub_pro", user_id="user_1", subscription_plan_id="plan_pro",
            status="pending", status_updated_at=iso(minutes_ago(10)),
        )
        subscription = await repository.get_subscription("sub_pro")
        backend.fail_next("PUT", "/subscriptions/sub_pro", status_code=None)
        
        result = await reconciler.reconcile_subscription(subscription)
        
        assert result.outcome == ReconcileOutcome.ASSUMED_PENDING
        assert result.status == "pending"
        assert backend.subscriptions["sub_pro"]["status"] == "pending"
    
    @pytest.mark.asyncio
    async def test_stale_purchase_fails_and_paid_is_untouched(self, backend, repository, reconciler):
        backend.add_purchase(
            id="pur_stale", buyer_user_id="user_1", purchasable_type="course", purchasable_id="c1",
            payment_amount="100", original_price="100", payment_status="pending",
            status_updated_at=iso(minutes_ago(30)),
        )
        backend.add_purchase(
            id="pur_paid", buyer_user_id="user_1", purchasable_type="course", purchasable_id="c2",
            payment_amount="100", original_price="100", payment_status="paid",
            status_updated_at=iso(minutes_ago(300)),
        )
        
        results = await reconciler.reconcile_user("user_1")
        outcomes = {r.record_id: r.outcome for r in results}
        
        assert outcomes == {"pur_stale": ReconcileOutcome.FAILED}
        assert backend.purchases["pur_stale"]["payment_status"] == "failed"
        assert backend.purchases["pur_paid"]["payment_status"] == "paid"
    
    @pytest.mark.asyncio
    async def test_purchase_race_converges(self, backend, repository, reconciler):
        backend.add_purchase(
            id="pur_stale", buyer_user_id="user_1", purchasable_type="tool", purchasable_id="t1",
            payment_amount="40", original_price="40", payment_status="pending",
            status_updated_at=iso(minutes_ago(30)),
        )
        snapshot = await repository.get_purchase("pur_stale")
        # Another writer finished the purchase after our read
        await repository.update_purchase("pur_stale", {"payment_status": "paid", "status_updated_at": minutes_ago(1)})
        
        result = await reconciler.reconcile_purchase(snapshot)
        
        assert result.outcome == ReconcileOutcome.CONVERGED
        assert result.status == "paid"
        assert backend.purchases["pur_stale"]["payment_status"] == "paid"
        pending = await repository.list_purchases('{"payment_status": "pending"}')
        assert pending == []
    
    @pytest.mark.asyncio
    async def test_reconcile_user_tolerates_network_failure(self, backend, reconciler):
        backend.fail_next("GET", "/subscriptions", status_code=None, times=3)
        assert await reconciler.reconcile_user("user_1") == []
    
    @pytest.mark.asyncio
    async def test_dry_run_sweep_writes_nothing(self, backend, repository, reconciler):
        backend.add_subscription(
            id="sub_pro", user_id="user_1", subscription_plan_id="plan_pro",
            status="pending", status_updated_at=iso(minutes_ago(10)),
        )
        subscriptions = await repository.list_pending_subscriptions()
        
        report = await reconciler.sweep(subscriptions, [], dry_run=True)
        
        assert report.count(ReconcileOutcome.WOULD_RESET) == 1
        assert report.changed == 0
        assert backend.subscriptions["sub_pro"]["status"] == "pending"

    
    @pytest.mark.asyncio
    async def test_stale_upgrade_expires_when_current_plan_exists(self, backend, reconciler):
        backend.add_subscription(
            id="sub_basic", user_id="user_1", subscription_plan_id="plan_basic",
            status="active", status_updated_at=iso(minutes_ago(1000)),
        )
        backend.add_subscription(
            id="sub_pro", user_id="user_1", subscription_plan_id="plan_pro",
            status="pending", payplus_subscription_uid="pp_uid_1",
            status_updated_at=iso(minutes_ago(10)),
        )
        
        results = await reconciler.reconcile_user("user_1")
        
        assert {r.record_id: r.outcome for r in results} == {"sub_pro": ReconcileOutcome.EXPIRED}
        assert backend.subscriptions["sub_pro"]["status"] == "expired"
        assert backend.subscriptions["sub_pro"]["payplus_subscription_uid"] is None
        current = [s["id"] for s in backend.subscriptions.values() if s["status"] in ("active", "free_plan")]
        assert current == ["sub_basic"]
        # The user stays on the plan they already had
        assert backend.calls("PUT", "/users/user_1") == []
    
    @pytest.mark.asyncio
    async def test_reset_moves_user_pointer_to_free_plan(self, backend, reconciler):
        backend.users["user_1"].update({
            "current_subscription_plan_id": "plan_pro",
            "subscription_status": "pending",
        })
        backend.add_subscription(
            id="sub_pro", user_id="user_1", subscription_plan_id="plan_pro",
            status="pending", status_updated_at=iso(minutes_ago(10)),
        )
        
        await reconciler.reconcile_user("user_1")
        
        user = backend.users["user_1"]
        assert user["current_subscription_plan_id"] is None
        assert user["subscription_status"] == "free_plan"
        assert stamp(user["subscription_status_updated_at"]) == NOW
    
    @pytest.mark.asyncio
    async def test_reset_survives_missing_user_record(self, backend, reconciler):
        del backend.users["user_1"]
        backend.add_subscription(
            id="sub_pro", user_id="user_1", subscription_plan_id="plan_pro",
            status="pending", status_updated_at=iso(minutes_ago(10)),
        )
        
        results = await reconciler.reconcile_user("user_1")
        
        assert results[0].outcome == ReconcileOutcome.RESET
        assert backend.subscriptions["sub_pro"]["status"] == "free_plan"
    
    @pytest.mark.asyncio
    async def test_unstamped_purchase_is_never_reset(self, backend, reconciler):
        backend.add_purchase(
            id="pur_old", buyer_user_id="user_1", purchasable_type="course", purchasable_id="c1",
            payment_amount="100", original_price="100", payment_status="pending",
            created_at=iso(minutes_ago(10)),
        )
        
        results = await reconciler.reconcile_user("user_1")
        
        assert {r.record_id: r.outcome for r in results} == {"pur_old": ReconcileOutcome.STILL_PENDING}
        assert backend.calls("PUT", "/purchases/pur_old") == []
        assert backend.purchases["pur_old"]["payment_status"] == "pending"
    
    @pytest.mark.asyncio
    async def test_purchase_reset_is_conditional(self, backend, reconciler):
        backend.add_purchase(
            id="pur_stale", buyer_user_id="user_1", purchasable_type="course", purchasable_id="c1",
            payment_amount="100", original_price="100", payment_status="pending",
            created_at=iso(minutes_ago(40)), status_updated_at=iso(minutes_ago(30)),
        )
        
        await reconciler.reconcile_user("user_1")
        
        put = backend.calls("PUT", "/purchases/pur_stale")[0]
        assert put.headers["If-Match"] == iso(minutes_ago(30))

class TestGatewayConfirmation:
    """Verified gateway outcomes applied to pending records."""
    
    @pytest.mark.asyncio
    async def test_success_activates_and_retires_previous_plan(self, backend, reconciler):
        backend.add_subscription(
            id="sub_basic", user_id="user_1", subscription_plan_id="plan_basic",
            status="active", status_updated_at=iso(minutes_ago(1000)),
        )
        backend.add_subscription(
            id="sub_pro", user_id="user_1", subscription_plan_id="plan_pro",
            status="pending", status_updated_at=iso(minutes_ago(1)),
        )
        
        result = await reconciler.apply_gateway_confirmation(GatewayConfirmation(
            status=GatewayStatus.SUCCESS,
            subscription_id="sub_pro",
            payplus_subscription_uid="pp_uid_9",
        ))
        
        assert result.outcome == ReconcileOutcome.ACTIVATED
        assert backend.subscriptions["sub_pro"]["status"] == "active"
        assert backend.subscriptions["sub_pro"]["payplus_subscription_uid"] == "pp_uid_9"
        assert backend.subscriptions["sub_basic"]["status"] == "cancelled"
    
    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_noop(self, backend, reconciler):
        backend.add_purchase(
            id="pur_1", buyer_user_id="user_1", purchasable_type="course", purchasable_id="c1",
            payment_amount="100", original_price="100", payment_status="pending",
            status_updated_at=iso(minutes_ago(1)),
        )
        confirmation = GatewayConfirmation(status=GatewayStatus.SUCCESS, purchase_id="pur_1", event_id="evt_1")
        
        first = await reconciler.apply_gateway_confirmation(confirmation)
        second = await reconciler.apply_gateway_confirmation(confirmation)
        
        assert first.outcome == ReconcileOutcome.PAID
        assert second.outcome == ReconcileOutcome.UNCHANGED
        assert len(backend.calls("PUT", "/purchases/pur_1")) == 1
    
    @pytest.mark.asyncio
    async def test_paid_purchase_is_absorbing(self, backend, reconciler):
        backend.add_purchase(
            id="pur_1", buyer_user_id="user_1", purchasable_type="course", purchasable_id="c1",
            payment_amount="100", original_price="100", payment_status="paid",
        )
        
        with pytest.raises(InvalidTransitionError):
            await reconciler.apply_gateway_confirmation(
                GatewayConfirmation(status=GatewayStatus.FAILURE, purchase_id="pur_1")
            )
        assert backend.purchases["pur_1"]["payment_status"] == "paid"
    
    @pytest.mark.asyncio
    async def test_failure_cancels_pending_subscription(self, backend, reconciler):
        backend.add_subscription(
            id="sub_pro", user_id="user_1", subscription_plan_id="plan_pro",
            status="pending", status_updated_at=iso(minutes_ago(1)),
        )
        result = await reconciler.apply_gateway_confirmation(
            GatewayConfirmation(status=GatewayStatus.FAILURE, subscription_id="sub_pro")
        )
        assert result.outcome == ReconcileOutcome.CANCELLED
        assert backend.subscriptions["sub_pro"]["status"] == "cancelled"
    
    @pytest.mark.asyncio
    async def test_activation_points_user_at_new_plan(self, backend, reconciler):
        backend.add_subscription(
            id="sub_pro", user_id="user_1", subscription_plan_id="plan_pro",
            status="pending", status_updated_at=iso(minutes_ago(1)),
        )
        
        await reconciler.apply_gateway_confirmation(GatewayConfirmation(
            status=GatewayStatus.SUCCESS,
            subscription_id="sub_pro",
            payplus_subscription_uid="pp_uid_9",
        ))
        
        user = backend.users["user_1"]
        assert user["current_subscription_plan_id"] == "plan_pro"
        assert user["subscription_status"] == "active"
        assert user["payplus_subscription_uid"] == "pp_uid_9"
    
    @pytest.mark.asyncio
    async def test_late_success_on_reset_subscription_is_logged(self, backend, reconciler):
        backend.add_subscription(
            id="sub_pro", user_id="user_1", subscription_plan_id=None,
            status="free_plan", status_updated_at=iso(minutes_ago(3)),
        )
        
        with patch("edu_billing.api.services.reconciler.logger") as mock_logger:
            with pytest.raises(InvalidTransitionError):
                await reconciler.apply_gateway_confirmation(GatewayConfirmation(
                    status=GatewayStatus.SUCCESS,
                    subscription_id="sub_pro",
                    event_id="evt_late",
                ))
        
        mock_logger.error.assert_called_once()
        assert mock_logger.error.call_args.kwargs["event_id"] == "evt_late"
        assert mock_logger.error.call_args.kwargs["subscription_id"] == "sub_pro"
        assert backend.subscriptions["sub_pro"]["status"] == "free_plan"
    
    @pytest.mark.asyncio
    async def test_late_success_on_failed_purchase_is_logged(self, backend, reconciler):
        backend.add_purchase(
            id="pur_1", buyer_user_id="user_1", purchasable_type="course", purchasable_id="c1",
            payment_amount="100", original_price="100", payment_status="failed",
        )
        
        with patch("edu_billing.api.services.reconciler.logger") as mock_logger:
            with pytest.raises(InvalidTransitionError):
                await reconciler.apply_gateway_confirmation(
                    GatewayConfirmation(status=GatewayStatus.SUCCESS, purchase_id="pur_1", event_id="evt_7")
                )
        
        assert mock_logger.error.call_args.kwargs["event_id"] == "evt_7"
    
    @pytest.mark.asyncio
    async def test_late_failure_is_not_an_error(self, backend, reconciler):
        backend.add_purchase(
            id="pur_1", buyer_user_id="user_1", purchasable_type="course", purchasable_id="c1",
            payment_amount="100", original_price="100", payment_status="paid",
        )
        
        with patch("edu_billing.api.services.reconciler.logger") as mock_logger:
            with pytest.raises(InvalidTransitionError):
                await reconciler.apply_gateway_confirmation(
                    GatewayConfirmation(status=GatewayStatus.FAILURE, purchase_id="pur_1")
                )
        
        mock_logger.error.assert_not_called()


class TestCancelPending:
    
    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self, backend, reconciler):
        backend.add_subscription(
            id="sub_pro", user_id="user_1", subscription_plan_id="plan_pro",
            status="pending", status_updated_at=iso(minutes_ago(1)),
        )
        
        first = await reconciler.cancel_pending("sub_pro")
        second = await reconciler.cancel_pending("sub_pro")
        
        assert first.outcome == ReconcileOutcome.CANCELLED
        assert second.outcome == ReconcileOutcome.UNCHANGED
    
    @pytest.mark.asyncio
    async def test_cannot_cancel_active(self, backend, reconciler):
        backend.add_subscription(id="sub_pro", user_id="user_1", subscription_plan_id="plan_pro", status="active")
        with pytest.raises(InvalidTransitionError):
            await reconciler.cancel_pending("sub_pro")


class TestRenewalCheck:
    """Active subscriptions past their billing date are re-checked with the gateway."""
    
    def seed_overdue(self, backend):
        backend.add_subscription(
            id="sub_pro", user_id="user_1", subscription_plan_id="plan_pro",
            status="active", payplus_subscription_uid="pp_uid_1",
            next_billing_date=iso(NOW - timedelta(days=2)),
            status_updated_at=iso(minutes_ago(50000)),
        )
        backend.users["user_1"].update({
            "current_subscription_plan_id": "plan_pro",
            "subscription_status": "active",
            "payplus_subscription_uid": "pp_uid_1",
        })
    
    @pytest.mark.asyncio
    async def test_charging_agreement_extends_billing_date(self, backend, repository, renewing_reconciler):
        self.seed_overdue(backend)
        backend.recurring["pp_uid_1"] = {"recurring_status": "active", "next_charge_date": "2025-04-18T08:00:00Z"}
        
        result = await renewing_reconciler.check_renewal(await repository.get_subscription("sub_pro"))
        
        assert result.outcome == ReconcileOutcome.RENEWED
        stored = backend.subscriptions["sub_pro"]
        assert stored["status"] == "active"
        assert stamp(stored["next_billing_date"]) == NOW + timedelta(days=29)
        assert stored["payplus_subscription_uid"] == "pp_uid_1"
        
        put = backend.calls("PUT", "/subscriptions/sub_pro")[0]
        assert put.headers["If-Match"] == iso(minutes_ago(50000))
    
    @pytest.mark.asyncio
    async def test_lapsed_agreement_expires_and_resets_user(self, backend, renewing_reconciler):
        self.seed_overdue(backend)
        backend.recurring["pp_uid_1"] = {"status": "cancelled"}
        
        results = await renewing_reconciler.reconcile_user("user_1")
        
        assert {r.record_id: r.outcome for r in results} == {"sub_pro": ReconcileOutcome.LAPSED}
        stored = backend.subscriptions["sub_pro"]
        assert stored["status"] == "expired"
        assert stored["payplus_subscription_uid"] is None
        assert stored["next_billing_date"] is None
        
        user = backend.users["user_1"]
        assert user["current_subscription_plan_id"] is None
        assert user["subscription_status"] == "free_plan"
        assert user["payplus_subscription_uid"] is None
    
    @pytest.mark.asyncio
    async def test_unreachable_gateway_leaves_subscription_active(self, backend, repository, renewing_reconciler):
        self.seed_overdue(backend)
        backend.fail_next("POST", "/payments/recurring-status", status_code=503)
        
        result = await renewing_reconciler.check_renewal(await repository.get_subscription("sub_pro"))
        
        assert result.outcome == ReconcileOutcome.UNVERIFIED
        assert backend.subscriptions["sub_pro"]["status"] == "active"
        assert backend.calls("PUT", "/subscriptions/sub_pro") == []
    
    @pytest.mark.asyncio
    async def test_unknown_agreement_is_unverified(self, backend, repository, renewing_reconciler):
        self.seed_overdue(backend)
        
        result = await renewing_reconciler.check_renewal(await repository.get_subscription("sub_pro"))
        
        assert result.outcome == ReconcileOutcome.UNVERIFIED
        assert backend.subscriptions["sub_pro"]["status"] == "active"
    
    @pytest.mark.asyncio
    async def test_billing_date_in_future_is_not_checked(self, backend, repository, renewing_reconciler):
        self.seed_overdue(backend)
        backend.subscriptions["sub_pro"]["next_billing_date"] = iso(NOW + timedelta(days=3))
        
        result = await renewing_reconciler.check_renewal(await repository.get_subscription("sub_pro"))
        
        assert result.outcome == ReconcileOutcome.UNCHANGED
        assert backend.calls("POST", "/payments/recurring-status") == []
    
    @pytest.mark.asyncio
    async def test_reconcile_user_without_gateway_skips_renewals(self, backend, reconciler):
        self.seed_overdue(backend)
        
        assert await reconciler.reconcile_user("user_1") == []
        assert backend.calls("POST", "/payments/recurring-status") == []
    
    @pytest.mark.asyncio
    async def test_dry_run_lists_due_renewals(self, backend, repository, reconciler):
        self.seed_overdue(backend)
        active = await repository.list_active_subscriptions()
        
        report = await reconciler.sweep([], [], dry_run=True, renewals=active)
        
        assert report.count(ReconcileOutcome.WOULD_CHECK) == 1
        assert backend.calls("POST", "/payments/recurring-status") == []
