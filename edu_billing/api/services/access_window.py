"""
Access-window calculator.

Expiry is computed on read, never written back by status reconciliation.
Day arithmetic happens in the reference timezone so an N-day window ends
at the same wall-clock time N days later, across DST changes.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo
from typing import Optional

from edu_billing.core.settings import settings
from edu_billing.db.models.platform_settings import PlatformSettings
from edu_billing.db.models.product import Product
from edu_billing.db.models.purchase import Purchase


@dataclass(frozen=True)
class AccessPolicy:
    """Resolved access terms for a purchasable."""
    is_lifetime: bool
    access_days: Optional[int]
    
    @property
    def has_expiry(self) -> bool:
        return not self.is_lifetime and bool(self.access_days) and self.access_days > 0


def to_reference_time(moment: datetime, tz: Optional[tzinfo] = None) -> datetime:
    """Express a moment in the reference timezone; naive values are taken as local there."""
    tz = tz or settings.reference_tz
    if moment.tzinfo is None:
        return moment.replace(tzinfo=tz)
    return moment.astimezone(tz)


def compute_access_expiry(
    is_lifetime: bool,
    access_days: Optional[int],
    purchased_at: datetime,
    tz: Optional[tzinfo] = None
) -> Optional[datetime]:
    """
    Compute when access granted at `purchased_at` ends.
    
    Returns None (no expiry) for lifetime access or when `access_days` is
    missing or not positive. Deterministic for identical inputs.
    """
    if is_lifetime or access_days is None or access_days <= 0:
        return None
    
    local = to_reference_time(purchased_at, tz)
    # Aware arithmetic with a ZoneInfo keeps the wall-clock time
    return local + timedelta(days=access_days)


def resolve_access_policy(product: Product, platform_settings: PlatformSettings) -> AccessPolicy:
    """
    Resolve the access terms for a product.
    
    The product's own lifetime flag wins; without one the per-type
    platform defaults apply.
    """
    if product.is_lifetime_access is not None:
        if product.is_lifetime_access:
            return AccessPolicy(is_lifetime=True, access_days=None)
        return AccessPolicy(is_lifetime=False, access_days=product.access_days)
    
    is_lifetime, access_days = platform_settings.default_access_policy(product.product_type)
    return AccessPolicy(is_lifetime=is_lifetime, access_days=access_days)


def policy_expiry(policy: AccessPolicy, purchased_at: datetime, tz: Optional[tzinfo] = None) -> Optional[datetime]:
    return compute_access_expiry(policy.is_lifetime, policy.access_days, purchased_at, tz)


def has_active_access(purchase: Purchase, now: datetime) -> bool:
    """Paid and not past its expiry (None means lifetime)."""
    if not purchase.is_paid:
        return False
    if purchase.access_expires_at is None:
        return True
    return to_reference_time(now) < to_reference_time(purchase.access_expires_at)


def remaining_access_days(purchase: Purchase, now: datetime) -> Optional[int]:
    """Whole days of access left; None for lifetime."""
    if purchase.access_expires_at is None:
        return None
    if not has_active_access(purchase, now):
        return 0
    delta = to_reference_time(purchase.access_expires_at) - to_reference_time(now)
    return max(0, delta.days)
