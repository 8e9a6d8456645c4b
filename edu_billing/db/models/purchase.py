"""
Purchase records and the polymorphic purchasable reference.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, ClassVar, Dict, Optional, Union

from sqlmodel import Field, SQLModel

from edu_billing.core.config import PAYMENT_TRANSITIONS, PaymentStatus, PurchasableType


@dataclass(frozen=True)
class WorkshopRef:
    id: str
    kind: ClassVar[PurchasableType] = PurchasableType.WORKSHOP


@dataclass(frozen=True)
class CourseRef:
    id: str
    kind: ClassVar[PurchasableType] = PurchasableType.COURSE


@dataclass(frozen=True)
class FileRef:
    id: str
    kind: ClassVar[PurchasableType] = PurchasableType.FILE


@dataclass(frozen=True)
class ToolRef:
    id: str
    kind: ClassVar[PurchasableType] = PurchasableType.TOOL


@dataclass(frozen=True)
class GameRef:
    id: str
    kind: ClassVar[PurchasableType] = PurchasableType.GAME


Purchasable = Union[WorkshopRef, CourseRef, FileRef, ToolRef, GameRef]

PURCHASABLE_REFS = {
    PurchasableType.WORKSHOP: WorkshopRef,
    PurchasableType.COURSE: CourseRef,
    PurchasableType.FILE: FileRef,
    PurchasableType.TOOL: ToolRef,
    PurchasableType.GAME: GameRef,
}


def purchasable_ref(purchasable_type: Union[PurchasableType, str], purchasable_id: str) -> Purchasable:
    """Build the typed reference for a (type, id) pair from the backend."""
    try:
        kind = PurchasableType(purchasable_type)
    except ValueError:
        raise ValueError(f"Unknown purchasable type: {purchasable_type}")
    return PURCHASABLE_REFS[kind](purchasable_id)


class PurchaseBase(SQLModel):
    """Fields shared by stored purchases and creation payloads."""
    order_number: str
    buyer_user_id: str
    purchasable_type: PurchasableType
    purchasable_id: str
    payment_amount: Decimal = Field(ge=0)
    original_price: Decimal = Field(ge=0)
    discount_amount: Decimal = Field(default=Decimal("0"), ge=0)
    coupon_code: Optional[str] = None
    payment_status: PaymentStatus = PaymentStatus.PENDING
    access_expires_at: Optional[datetime] = None
    # Sent and received as "metadata"
    purchase_metadata: Dict[str, Any] = Field(default_factory=dict)
    
    @property
    def purchasable(self) -> Purchasable:
        return purchasable_ref(self.purchasable_type, self.purchasable_id)
    
    def to_payload(self) -> Dict[str, Any]:
        payload = self.model_dump(mode="json", exclude={"purchase_metadata"})
        payload["metadata"] = self.purchase_metadata
        return payload


class Purchase(PurchaseBase):
    """A stored purchase; immutable once paid."""
    id: str
    status_updated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    
    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Purchase":
        data = dict(data)
        data["purchase_metadata"] = data.pop("metadata", None) or {}
        return cls.model_validate(data)
    
    @property
    def is_pending(self) -> bool:
        return self.payment_status == PaymentStatus.PENDING
    
    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.PAID
    
    def can_transition_to(self, status: PaymentStatus) -> bool:
        return status in PAYMENT_TRANSITIONS[self.payment_status]


class PurchaseCreate(PurchaseBase):
    """Payload for POST /purchases."""
    pass
