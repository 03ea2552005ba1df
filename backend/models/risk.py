from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Recommendation(str, Enum):
    ALLOW = "allow"
    REQUIRE_VERIFICATION = "require_verification"
    DISABLE_COD = "disable_cod"
    BLOCK = "block"


class AddressIn(BaseModel):
    house: Optional[str] = None
    street: Optional[str] = None
    locality: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None
    line: Optional[str] = None   # free text as typed by the customer


class CodCheckRequest(BaseModel):
    order_id: str
    account_id: str
    phone: str
    email: Optional[str] = None
    device_fingerprint: Optional[str] = None
    order_value: int = Field(..., ge=0)   # paise
    address: AddressIn
    placed_at: Optional[datetime] = None


class VerificationResult(BaseModel):
    request_id: str
    verified: bool


class BlacklistRequest(BaseModel):
    phone: str
    reason: str
    expires_in_days: Optional[int] = Field(default=None, gt=0)
