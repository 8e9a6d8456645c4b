"""
Coupon resolver.

The local calculation drives checkout feedback only. The backend's
POST /coupons/apply answer is authoritative and wins on disagreement.
"""
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Tuple

import structlog

from edu_billing.core.api_client import ApiClient
from edu_billing.core.config import DiscountType
from edu_billing.core.exceptions import (
    ApiError,
    CouponNotApplicableError,
    InvalidCouponError,
    NetworkError,
    ValidationError,
)
from edu_billing.db.models.coupon import Coupon, CouponApplication, PriceQuote

logger = structlog.get_logger(__name__)

# Backend error code that separates "not applicable" from "invalid"
NOT_APPLICABLE_CODE = "not_applicable"

WHOLE_UNIT = Decimal("1")


def normalize_code(code: Optional[str]) -> str:
    normalized = (code or "").strip().upper()
    if not normalized:
        raise ValidationError("Coupon code is required", details={"field": "coupon_code"})
    return normalized


def calculate_discount(coupon: Coupon, original_price: Decimal) -> Tuple[Decimal, Decimal]:
    """
    Return (discount_amount, final_price) for a coupon on a price.
    
    Percentage discounts round half-up to whole currency units; every
    discount is clamped so the final price never drops below zero.
    """
    original_price = Decimal(original_price)
    if coupon.discount_type == DiscountType.PERCENTAGE:
        raw = original_price * coupon.discount_value / Decimal(100)
        discount = raw.quantize(WHOLE_UNIT, rounding=ROUND_HALF_UP)
    else:
        discount = coupon.discount_value
    
    discount = max(Decimal(0), min(discount, original_price))
    return discount, original_price - discount


def validate_coupon(
    coupon: Coupon,
    original_price: Decimal,
    product_type: str,
    category: Optional[str] = None,
    now: Optional[datetime] = None
) -> CouponApplication:
    """Apply an already-fetched coupon locally."""
    now = now or datetime.now(timezone.utc)
    
    reason = coupon.unusable_reason(now)
    if reason:
        raise InvalidCouponError(coupon.code, reason)
    if not coupon.applies_to(product_type, category):
        raise CouponNotApplicableError(coupon.code, product_type, category)
    
    discount, final_price = calculate_discount(coupon, original_price)
    return CouponApplication(
        coupon=coupon,
        original_price=Decimal(original_price),
        final_price=final_price,
        discount_amount=discount
    )


class CouponResolver:
    """Validates coupon codes against the backend."""
    
    def __init__(self, client: ApiClient):
        self.client = client
    
    async def apply_coupon(
        self,
        code: str,
        original_price: Decimal,
        product_type: str,
        category: Optional[str] = None
    ) -> CouponApplication:
        """
        Apply a coupon code via the backend.
        
        Raises ValidationError for an empty code without any network call,
        InvalidCouponError or CouponNotApplicableError for rejections.
        """
        code = normalize_code(code)
        
        try:
            data = await self.client.post("/coupons/apply", {
                "couponCode": code,
                "originalPrice": str(original_price),
                "productType": product_type,
                "category": category,
            })
        except ApiError as e:
            error = e.payload.get("error")
            error_code = error.get("code") if isinstance(error, dict) else None
            logger.info(
                "Coupon rejected",
                coupon_code=code,
                product_type=product_type,
                upstream_status=e.upstream_status,
                error_code=error_code
            )
            if error_code == NOT_APPLICABLE_CODE:
                raise CouponNotApplicableError(code, product_type, category)
            raise InvalidCouponError(code, error_code or "invalid")
        
        application = CouponApplication(
            coupon=Coupon.model_validate(data["coupon"]),
            original_price=Decimal(original_price),
            final_price=Decimal(str(data["finalPrice"])),
            discount_amount=Decimal(str(data["discountAmount"]))
        )
        
        logger.info(
            "Coupon applied",
            coupon_code=code,
            discount_amount=str(application.discount_amount),
            final_price=str(application.final_price)
        )
        return application
    
    async def quote(
        self,
        original_price: Decimal,
        product_type: str,
        category: Optional[str] = None,
        code: Optional[str] = None
    ) -> PriceQuote:
        """
        Price to show and charge.
        
        Never fails on coupon problems: the original price is kept and the
        reason is carried in `error_message`.
        """
        original_price = Decimal(original_price)
        if not code or not code.strip():
            return PriceQuote(original_price=original_price, final_price=original_price)
        
        try:
            application = await self.apply_coupon(code, original_price, product_type, category)
        except (InvalidCouponError, CouponNotApplicableError, NetworkError) as e:
            return PriceQuote(
                original_price=original_price,
                final_price=original_price,
                coupon_code=code.strip().upper(),
                error_message=e.message
            )
        
        return PriceQuote(
            original_price=original_price,
            final_price=application.final_price,
            discount_amount=application.discount_amount,
            coupon_code=application.coupon.code
        )
