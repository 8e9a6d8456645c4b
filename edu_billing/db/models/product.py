"""
Catalog product model (the access-policy carrier for purchases).
"""
from decimal import Decimal
from typing import Optional

from sqlmodel import Field, SQLModel

from edu_billing.core.config import PurchasableType
from edu_billing.db.models.purchase import Purchasable, purchasable_ref


class Product(SQLModel):
    """
    A sellable catalog entry.
    
    `entity_id` points at the workshop/course/file/tool/game row when it
    differs from the product id. `is_lifetime_access` of None defers to the
    platform defaults for the product type.
    """
    id: str
    title: str
    product_type: PurchasableType
    entity_id: Optional[str] = None
    price: Decimal = Field(default=Decimal("0"), ge=0)
    category: Optional[str] = None
    is_lifetime_access: Optional[bool] = None
    access_days: Optional[int] = None
    is_published: bool = True
    
    @property
    def purchasable(self) -> Purchasable:
        return purchasable_ref(self.product_type, self.entity_id or self.id)
