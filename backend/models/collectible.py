from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from utils.clock import parse_timestamp


class CollectionStatus(str, Enum):
    PENDING = "pending"
    COLLECTED = "collected"
    RECONCILED = "reconciled"
    DISPUTED = "disputed"
    RTO = "rto"
    PAID = "paid"


class CollectionSource(str, Enum):
    PUSH = "push"
    POLL = "poll"
    FILE = "file"


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    RTO = "rto"


class CollectionReport(BaseModel):
    """
    Canonical collection report. Push events, poll responses and MIS file
    rows all normalize into this shape before reconciliation.
    """
    collectible_ref: str = Field(..., min_length=1)
    reported_amount: Optional[int] = Field(default=None, ge=0)
    reported_at: datetime
    source: CollectionSource
    delivery_status: DeliveryStatus = DeliveryStatus.DELIVERED
    carrier: Optional[str] = None
    external_id: Optional[str] = None

    @field_validator("collectible_ref")
    @classmethod
    def _strip_ref(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("collectible_ref is blank")
        return value

    @field_validator("reported_at", mode="before")
    @classmethod
    def _aware_timestamp(cls, value):
        return parse_timestamp(value)

    @property
    def fingerprint(self) -> str:
        return ":".join([
            self.source.value,
            self.collectible_ref,
            self.delivery_status.value,
            str(self.reported_amount),
            self.reported_at.isoformat(),
        ])


class CollectibleCreate(BaseModel):
    shipment_ref: str = Field(..., min_length=1)
    account_id: str
    carrier: str
    order_id: Optional[str] = None
    expected_base: int = Field(..., ge=0)
    expected_handling: int = Field(default=0, ge=0)
    shipping_cost: int = Field(default=0, ge=0)
    risk_score: Optional[int] = Field(default=None, ge=0, le=100)
    customer_phone: Optional[str] = None
    pincode: Optional[str] = None
