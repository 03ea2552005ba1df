from fastapi import APIRouter, Depends, Request, HTTPException
import json
import logging

from config.env import CARRIER_WEBHOOK_SECRET, VERIFICATION_WEBHOOK_SECRET
from database import get_db
from utils.errors import NotFoundError
from utils.guards import verify_hmac_signature
from utils.idempotency import (
    reserve_idempotency_key,
    complete_idempotency_key,
    clear_idempotency_key,
)
from utils.ingest import normalize_push_event
from utils.notifications import record_verification_result
from utils.payout_coordinator import apply_settlement
from utils.payouts import settlement_status, verify_razorpayx_webhook_signature
from utils.reconciliation import reconcile_report

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["Webhooks"])


async def _json_body(raw_body: bytes) -> dict:
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except Exception:
        raise HTTPException(400, "Invalid JSON payload")
    if not isinstance(payload, dict):
        raise HTTPException(400, "Invalid JSON payload")
    return payload


# =========================================================
# CARRIER COLLECTION EVENTS (PUSH)
# =========================================================

@router.post("/carrier")
async def carrier_webhook(request: Request, db=Depends(get_db)):
    """
    Carrier delivery / COD collection event.

    Guarantees:
    - Signature verified
    - Idempotent per event id
    - Unknown shipments are queued, never dropped
    """
    raw_body = await request.body()
    verify_hmac_signature(
        CARRIER_WEBHOOK_SECRET,
        raw_body,
        request.headers.get("X-Carrier-Signature"),
    )
    payload = await _json_body(raw_body)

    carrier = request.headers.get("X-Carrier") or payload.get("carrier")
    report = normalize_push_event(payload, carrier=carrier)
    if report is None:
        return {"ok": True, "ignored": True}

    idempotency_key = payload.get("event_id") or report.fingerprint
    existing = await reserve_idempotency_key(
        db=db,
        key=str(idempotency_key),
        scope="carrier_webhook",
    )
    if existing:
        return existing

    try:
        outcome = await reconcile_report(db, report)
    except Exception:
        # Release the key so the carrier redelivery is processed again.
        await clear_idempotency_key(db=db, key=str(idempotency_key), scope="carrier_webhook")
        raise

    response = {"ok": True, **outcome}
    await complete_idempotency_key(
        db=db,
        key=str(idempotency_key),
        scope="carrier_webhook",
        response=response,
    )
    return response


# =========================================================
# PAYOUT SETTLEMENT (RAZORPAYX)
# =========================================================

@router.post("/payouts")
async def payout_webhook(request: Request, db=Depends(get_db)):
    signature = request.headers.get("X-Razorpay-Signature")
    if not signature:
        raise HTTPException(401, "Missing RazorpayX signature")

    raw_body = await request.body()
    if not verify_razorpayx_webhook_signature(raw_body=raw_body, received_signature=signature):
        raise HTTPException(401, "Invalid RazorpayX signature")

    payload = await _json_body(raw_body)
    event = payload.get("event")
    payout_entity = (
        payload.get("payload", {})
        .get("payout", {})
        .get("entity", {})
    )

    provider_reference = payout_entity.get("id")
    provider_status = payout_entity.get("status")
    final_status = settlement_status(provider_status)

    if not provider_reference or not final_status:
        return {"ok": True, "ignored": True, "event": event}

    token = request.headers.get("X-Razorpay-Event-Id") or f"{event}:{provider_reference}"
    failure_reason = (payout_entity.get("status_details") or {}).get("description")

    try:
        batch = await apply_settlement(
            db,
            provider_reference=provider_reference,
            settlement_token=token,
            final_status=final_status,
            failure_reason=failure_reason,
        )
    except NotFoundError:
        logger.warning("PAYOUT_WEBHOOK_UNKNOWN_REFERENCE reference=%s event=%s", provider_reference, event)
        return {"ok": True, "batch": "not_found"}

    return {
        "ok": True,
        "batch_id": batch["_id"],
        "status": batch["status"],
    }


# =========================================================
# COD VERIFICATION RESULT
# =========================================================

@router.post("/verification")
async def verification_webhook(request: Request, db=Depends(get_db)):
    raw_body = await request.body()
    verify_hmac_signature(
        VERIFICATION_WEBHOOK_SECRET,
        raw_body,
        request.headers.get("X-Verification-Signature"),
    )
    payload = await _json_body(raw_body)

    request_id = payload.get("request_id")
    verified = payload.get("verified")
    if not request_id or not isinstance(verified, bool):
        raise HTTPException(400, "request_id and verified are required")

    result = await record_verification_result(db, request_id=request_id, verified=verified)
    return {"ok": True, "request_id": request_id, "status": result["status"]}
