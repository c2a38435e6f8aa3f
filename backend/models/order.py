from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class CollectionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FulfillmentStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class DisbursementStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class PayoutStatus(str, Enum):
    INITIATED = "initiated"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"


class DeliveryMethod(str, Enum):
    SELF = "self_delivery"
    PICKUP_POINT = "pickup_point"


TERMINAL_COLLECTION_STATUSES = {
    CollectionStatus.COMPLETED.value,
    CollectionStatus.FAILED.value,
}

TERMINAL_PAYOUT_STATUSES = {
    PayoutStatus.COMPLETED.value,
    PayoutStatus.FAILED.value,
    PayoutStatus.TIMEOUT.value,
}

# Item disbursement states that may be claimed for a new payout attempt.
# None covers items written before the field existed.
CLAIMABLE_DISBURSEMENT_STATUSES = [
    None,
    DisbursementStatus.NONE.value,
    DisbursementStatus.PENDING.value,
    DisbursementStatus.FAILED.value,
]


# -------------------------------------------------
# REQUEST SCHEMAS
# -------------------------------------------------

class CheckoutItem(BaseModel):
    product_id: str
    quantity: int = Field(1, gt=0)


class DeliveryInfo(BaseModel):
    method: DeliveryMethod = DeliveryMethod.SELF
    pickup_point_id: Optional[str] = None
    recipient_name: Optional[str] = None
    notes: Optional[str] = None


class CheckoutRequest(BaseModel):
    items: List[CheckoutItem] = Field(..., min_length=1)
    phone_number: str
    delivery: DeliveryInfo = DeliveryInfo()
    idempotency_key: str = Field(..., min_length=8, max_length=128)


class StkPushRequest(BaseModel):
    order_id: str
    phone_number: str


class ItemStatusUpdate(BaseModel):
    status: FulfillmentStatus


class ConfirmDelivery(BaseModel):
    rating: Optional[int] = Field(None, ge=1, le=5)
    review: Optional[str] = Field(None, max_length=2000)


class RatingUpdate(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    review: Optional[str] = Field(None, max_length=2000)


class CommissionQuery(BaseModel):
    price_per_unit: float = Field(..., gt=0)
    quantity: int = Field(1, gt=0)


class ReportQuery(BaseModel):
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
