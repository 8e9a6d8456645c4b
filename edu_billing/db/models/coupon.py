"""
Coupon models.
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import field_validator
from sqlmodel import Field, SQLModel

from edu_billing.core.config import DiscountType


class Coupon(SQLModel):
    """A discount code. Codes are canonicalized upper-case."""
    id: Optional[str] = None
    code: str
    discount_type: DiscountType
    discount_value: Decimal = Field(ge=0)
    # Empty filters mean the coupon applies everywhere
    applicable_product_types: List[str] = Field(default_factory=list)
    applicable_categories: List[str] = Field(default_factory=list)
    is_active: bool = True
    valid_until: Optional[datetime] = None
    usage_limit: Optional[int] = None
    usage_count: int = 0
    
    @field_validator("code")
    def canonicalize_code(cls, v):
        return v.strip().upper()
    
    def applies_to(self, product_type: str, category: Optional[str] = None) -> bool:
        """Check the product-type and category filters."""
        if self.applicable_product_types and product_type not in self.applicable_product_types:
            return False
        if self.applicable_categories and category not in self.applicable_categories:
            return False
        return True
    
    def unusable_reason(self, now: datetime) -> Optional[str]:
        """Why the coupon cannot be used right now, or None if it can."""
        if not self.is_active:
            return "inactive"
        if self.valid_until is not None and now >= self.valid_until:
            return "expired"
        if self.usage_limit is not None and self.usage_count >= self.usage_limit:
            return "exhausted"
        return None


class CouponApplication(SQLModel):
    """Result of applying a coupon to a price."""
    coupon: Coupon
    original_price: Decimal
    final_price: Decimal
    discount_amount: Decimal


class PriceQuote(SQLModel):
    """
    Price shown at checkout.
    
    Always carries a usable final price; when the coupon is rejected the
    original price is kept and `error_message` explains why.
    """
    original_price: Decimal
    final_price: Decimal
    discount_amount: Decimal = Decimal("0")
    coupon_code: Optional[str] = None
    error_message: Optional[str] = None
    
    @property
    def coupon_applied(self) -> bool:
        return self.coupon_code is not None and self.error_message is None
