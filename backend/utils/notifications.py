import asyncio
import logging
import uuid

from config.env import VERIFICATION_TIMEOUT_SECONDS
from utils.clock import as_utc, utc_now
from utils.errors import ExternalTimeoutError, NotFoundError, ValidationError
from utils.otp import generate_otp, hash_otp, otp_expiry, verify_hash

logger = logging.getLogger(__name__)

VERIFICATION_POLL_INTERVAL_SECONDS = 1.0

# =========================================================
# OUTBOX (fire-and-forget; delivery services consume it)
# =========================================================


async def emit_notification(db, *, channel: str, kind: str, payload: dict) -> str:
    notification_id = f"NTF-{uuid.uuid4().hex[:16].upper()}"
    await db.notification_outbox.insert_one({
        "_id": notification_id,
        "channel": channel,
        "kind": kind,
        "payload": payload,
        "status": "queued",
        "created_at": utc_now(),
    })
    logger.info("NOTIFICATION_QUEUED id=%s kind=%s channel=%s", notification_id, kind, channel)
    return notification_id


async def emit_discrepancy_alert(db, discrepancy: dict) -> str:
    return await emit_notification(
        db,
        channel="finance",
        kind="discrepancy_alert",
        payload={
            "discrepancy_id": discrepancy["_id"],
            "collectible_id": discrepancy.get("collectible_id"),
            "shipment_ref": discrepancy.get("shipment_ref"),
            "account_id": discrepancy.get("account_id"),
            "classification": discrepancy.get("classification"),
            "severity": discrepancy.get("severity"),
            "difference": discrepancy.get("difference"),
            "deadline_at": discrepancy.get("deadline_at"),
        },
    )


# =========================================================
# COD VERIFICATION (OTP GATING)
# =========================================================


async def emit_verification_request(db, *, phone: str, order_id: str) -> str:
    request_id = f"VRF-{uuid.uuid4().hex[:16].upper()}"
    code = generate_otp()

    await db.verification_requests.insert_one({
        "_id": request_id,
        "order_id": order_id,
        "phone": phone,
        "code_hash": hash_otp(code, request_id),
        "status": "pending",
        "expires_at": otp_expiry(),
        "created_at": utc_now(),
    })

    await emit_notification(
        db,
        channel="sms",
        kind="cod_verification",
        payload={
            "request_id": request_id,
            "phone": phone,
            "order_id": order_id,
            "code": code,
        },
    )
    return request_id


async def _drop_queued_code(db, request_id: str):
    # The SMS payload is the only place the plain code lives; it goes once the request settles.
    await db.notification_outbox.update_many(
        {"kind": "cod_verification", "payload.request_id": request_id},
        {"$unset": {"payload.code": ""}},
    )


async def record_verification_result(db, *, request_id: str, verified: bool) -> dict:
    """Result callback. Re-delivery of the same result is a no-op."""
    request = await db.verification_requests.find_one({"_id": request_id})
    if not request:
        raise NotFoundError(f"Verification request {request_id} not found")

    if request["status"] != "pending":
        return request

    status = "verified" if verified else "failed"
    await db.verification_requests.update_one(
        {"_id": request_id, "status": "pending"},
        {"$set": {"status": status, "resolved_at": utc_now()}},
    )
    await _drop_queued_code(db, request_id)
    logger.info("COD_VERIFICATION_RESULT request=%s status=%s", request_id, status)
    return await db.verification_requests.find_one({"_id": request_id})


async def verify_code(db, *, request_id: str, code: str) -> dict:
    request = await db.verification_requests.find_one({"_id": request_id})
    if not request:
        raise NotFoundError(f"Verification request {request_id} not found")
    if as_utc(request["expires_at"]) < utc_now():
        await _drop_queued_code(db, request_id)
        raise ValidationError("Verification code expired", code="OTP_EXPIRED")

    verified = verify_hash(code, request["code_hash"], request_id)
    return await record_verification_result(db, request_id=request_id, verified=verified)


async def await_verification_result(
    db,
    *,
    request_id: str,
    timeout: float = VERIFICATION_TIMEOUT_SECONDS,
    poll_interval: float = VERIFICATION_POLL_INTERVAL_SECONDS,
) -> bool:
    """
    Block the order flow until the verification result arrives.
    Raises ExternalTimeoutError when no result lands before `timeout`.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout

    while True:
        request = await db.verification_requests.find_one({"_id": request_id})
        if not request:
            raise NotFoundError(f"Verification request {request_id} not found")
        if request["status"] != "pending":
            return request["status"] == "verified"
        if loop.time() >= deadline:
            raise ExternalTimeoutError(f"Verification {request_id} not completed within {timeout}s")
        await asyncio.sleep(poll_interval)
