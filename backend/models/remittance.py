from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class BatchStatus(str, Enum):
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    PAYOUT_INITIATED = "payout_initiated"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PayoutTier(str, Enum):
    STANDARD = "standard"
    T_PLUS_3 = "t_plus_3"
    T_PLUS_2 = "t_plus_2"
    T_PLUS_1 = "t_plus_1"


class Adjustment(BaseModel):
    label: str
    amount: int = Field(..., ge=0)


class BatchCreateRequest(BaseModel):
    account_id: str
    tier: PayoutTier = PayoutTier.STANDARD
    adjustments: List[Adjustment] = []


class BatchCancelRequest(BaseModel):
    reason: Optional[str] = None


class PayoutTargetIn(BaseModel):
    account_holder_name: str = Field(..., min_length=1)
    ifsc_code: str = Field(..., pattern=r"^[A-Z]{4}0[A-Z0-9]{6}$")
    bank_account_number: str = Field(..., min_length=6, max_length=20)
    email: Optional[str] = None
    phone: Optional[str] = None
