from datetime import timedelta

import pytest

from utils.clock import utc_now
from utils.errors import ValidationError
from utils.notifications import emit_verification_request, record_verification_result, verify_code
from utils.otp import hash_otp

PHONE = "+919876543210"


async def queued_sms(db, request_id):
    return await db.notification_outbox.find_one({"kind": "cod_verification", "payload.request_id": request_id})


@pytest.mark.asyncio
async def test_request_keeps_only_the_code_hash(db):
    request_id = await emit_verification_request(db, phone=PHONE, order_id="ORD-1")

    request = await db.verification_requests.find_one({"_id": request_id})
    sms = await queued_sms(db, request_id)

    assert "code" not in request
    assert request["code_hash"] == hash_otp(sms["payload"]["code"], request_id)


@pytest.mark.asyncio
async def test_code_leaves_the_outbox_once_verified(db):
    request_id = await emit_verification_request(db, phone=PHONE, order_id="ORD-1")
    code = (await queued_sms(db, request_id))["payload"]["code"]

    result = await verify_code(db, request_id=request_id, code=code)

    assert result["status"] == "verified"
    sms = await queued_sms(db, request_id)
    assert "code" not in sms["payload"]
    assert sms["payload"]["order_id"] == "ORD-1"


@pytest.mark.asyncio
async def test_code_leaves_the_outbox_on_failed_or_callback_result(db):
    wrong = await emit_verification_request(db, phone=PHONE, order_id="ORD-1")
    by_callback = await emit_verification_request(db, phone=PHONE, order_id="ORD-2")

    assert (await verify_code(db, request_id=wrong, code="000000"))["status"] == "failed"
    await record_verification_result(db, request_id=by_callback, verified=True)

    for request_id in (wrong, by_callback):
        assert "code" not in (await queued_sms(db, request_id))["payload"]


@pytest.mark.asyncio
async def test_expired_code_is_rejected_and_dropped(db):
    request_id = await emit_verification_request(db, phone=PHONE, order_id="ORD-1")
    code = (await queued_sms(db, request_id))["payload"]["code"]
    await db.verification_requests.update_one(
        {"_id": request_id},
        {"$set": {"expires_at": utc_now() - timedelta(minutes=1)}},
    )

    with pytest.raises(ValidationError) as exc:
        await verify_code(db, request_id=request_id, code=code)

    assert exc.value.code == "OTP_EXPIRED"
    assert "code" not in (await queued_sms(db, request_id))["payload"]
