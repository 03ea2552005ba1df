from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class DiscrepancyClassification(str, Enum):
    AMOUNT_MISMATCH = "amount_mismatch"
    MISSING_SHIPMENT = "missing_shipment"
    DUPLICATE_ENTRY = "duplicate_entry"
    TIMING_ISSUE = "timing_issue"
    PARTIAL_COLLECTION = "partial_collection"
    OVERPAYMENT = "overpayment"


class Severity(str, Enum):
    MINOR = "minor"
    MEDIUM = "medium"
    MAJOR = "major"
    CRITICAL = "critical"


class DiscrepancyStatus(str, Enum):
    DETECTED = "detected"
    UNDER_REVIEW = "under_review"
    COURIER_QUERIED = "courier_queried"
    DISPUTED = "disputed"
    RESOLVED = "resolved"
    ACCEPTED = "accepted"
    TIMEOUT = "timeout"
    ESCALATED = "escalated"


UNRESOLVED_STATUSES = {
    DiscrepancyStatus.DETECTED.value,
    DiscrepancyStatus.UNDER_REVIEW.value,
    DiscrepancyStatus.COURIER_QUERIED.value,
    DiscrepancyStatus.DISPUTED.value,
}

# Statuses that settle the collectible's final amount.
CLOSING_STATUSES = {
    DiscrepancyStatus.RESOLVED.value,
    DiscrepancyStatus.ACCEPTED.value,
    DiscrepancyStatus.TIMEOUT.value,
}


class CorrectionRequest(BaseModel):
    corrected_amount: int = Field(..., ge=0)
    note: Optional[str] = None


class DiscrepancyNote(BaseModel):
    note: Optional[str] = None


class EvidenceCreate(BaseModel):
    kind: str = Field(..., min_length=1)       # pod | mis_extract | courier_mail | other
    reference: str = Field(..., min_length=1)  # opaque storage reference
    note: Optional[str] = None
