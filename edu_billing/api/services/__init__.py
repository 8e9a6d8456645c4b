"""
Services package for billing business logic.

Exposes the catalog reader, repository facade, coupon resolver, decision
engine, reconciler, and checkout flows.
"""

from .access_window import AccessPolicy, compute_access_expiry, has_active_access, resolve_access_policy
from .catalog import CatalogReader
from .checkout import ActionResult, CheckoutService, PurchaseCheckout
from .coupons import CouponResolver, calculate_discount
from .decision_engine import ActionDecision, SubscriptionSummary, determine_action, get_subscription_summary
from .payments import GatewayConfirmation, PaymentPageClient, generate_order_number, parse_gateway_message
from .reconciler import PendingPaymentReconciler, ReconcileOutcome, ReconcileResult
from .repository import BillingRepository, build_filter

__all__ = [
    'AccessPolicy',
    'ActionDecision',
    'ActionResult',
    'BillingRepository',
    'CatalogReader',
    'CheckoutService',
    'CouponResolver',
    'GatewayConfirmation',
    'PaymentPageClient',
    'PendingPaymentReconciler',
    'PurchaseCheckout',
    'ReconcileOutcome',
    'ReconcileResult',
    'SubscriptionSummary',
    'build_filter',
    'calculate_discount',
    'compute_access_expiry',
    'determine_action',
    'generate_order_number',
    'get_subscription_summary',
    'has_active_access',
    'parse_gateway_message',
    'resolve_access_policy',
]
