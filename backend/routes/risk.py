from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from config.env import VERIFICATION_TIMEOUT_SECONDS
from database import get_db
from models.risk import CodCheckRequest
from utils.errors import NotFoundError
from utils.notifications import await_verification_result, verify_code
from utils.risk_gate import evaluate_cod_order

router = APIRouter(prefix="/api/risk", tags=["Risk"])


# =========================
# COD CHECK (ORDER ACCEPTANCE)
# =========================
@router.post("/cod-check")
async def cod_check(data: CodCheckRequest, db=Depends(get_db)):
    """
    Called by the order service before offering cash on delivery.
    Blocked orders get a generic 403; the score stays internal.
    """
    decision = await evaluate_cod_order(db, data.model_dump())
    return {
        "order_id": decision["order_id"],
        "cod_allowed": decision["cod_allowed"],
        "verification_required": decision["verification_required"],
        "verification_request_id": decision["verification_request_id"],
    }


class OtpSubmission(BaseModel):
    request_id: str
    code: str = Field(..., min_length=4, max_length=8)


# =========================
# OTP SUBMISSION
# =========================
@router.post("/verification/submit")
async def submit_verification_code(data: OtpSubmission, db=Depends(get_db)):
    result = await verify_code(db, request_id=data.request_id, code=data.code)
    return {"request_id": data.request_id, "status": result["status"]}


# =========================
# WAIT FOR VERIFICATION RESULT
# =========================
@router.get("/verification/{request_id}")
async def verification_status(
    request_id: str,
    wait: float = Query(default=0, ge=0, le=VERIFICATION_TIMEOUT_SECONDS),
    db=Depends(get_db),
):
    """With `wait`, blocks until the result lands or the wait runs out (504)."""
    if wait:
        verified = await await_verification_result(db, request_id=request_id, timeout=wait)
        return {"request_id": request_id, "status": "verified" if verified else "failed"}

    request = await db.verification_requests.find_one({"_id": request_id}, {"status": 1})
    if not request:
        raise NotFoundError(f"Verification request {request_id} not found")
    return {"request_id": request_id, "status": request["status"]}
