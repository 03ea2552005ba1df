from datetime import timedelta

import pytest

from utils.errors import CodUnavailable, NotFoundError
from utils.risk_gate import evaluate_cod_order
from utils.risk_ledger import (
    blacklist_customer,
    get_profile,
    is_blacklisted,
    lift_blacklist,
    order_velocity,
    pincode_rto_rate,
    record_order,
    record_outcome,
)

PHONE = "+91 98765 43210"


def _order(order_id, **overrides):
    order = {
        "order_id": order_id,
        "account_id": "ACC-1",
        "phone": PHONE,
        "order_value": 1300_00,
        "address": {
            "house": "12B",
            "street": "MG Road",
            "locality": "Indiranagar",
            "city": "Bengaluru",
            "state": "Karnataka",
            "pincode": "560038",
        },
    }
    order.update(overrides)
    return order


@pytest.mark.asyncio
async def test_record_order_counts_each_order_once(db, now):
    assert await record_order(db, phone=PHONE, order_id="ORD-1", account_id="ACC-1", now=now)
    assert not await record_order(db, phone=PHONE, order_id="ORD-1", account_id="ACC-1", now=now)

    profile = await get_profile(db, "9876543210")
    assert profile["lifetime_order_count"] == 1
    assert profile["cash_order_count"] == 1


@pytest.mark.asyncio
async def test_outcome_applies_once_and_rescores(db, now):
    await record_order(db, phone=PHONE, order_id="ORD-1", account_id="ACC-1", now=now)

    assert await record_outcome(db, order_id="ORD-1", outcome="rto", now=now)
    assert not await record_outcome(db, order_id="ORD-1", outcome="rto", now=now)

    profile = await get_profile(db, PHONE)
    assert profile["rto_count"] == 1
    assert profile["risk_score"] == 100
    assert profile["risk_level"] == "critical"


@pytest.mark.asyncio
async def test_unknown_outcome_is_rejected(db):
    with pytest.raises(ValueError):
        await record_outcome(db, order_id="ORD-1", outcome="lost")


@pytest.mark.asyncio
async def test_velocity_windows(db, now):
    await record_order(db, phone=PHONE, order_id="ORD-1", account_id="ACC-1", now=now - timedelta(days=3))
    await record_order(db, phone=PHONE, order_id="ORD-2", account_id="ACC-1", now=now - timedelta(hours=5))
    await record_order(db, phone=PHONE, order_id="ORD-3", account_id="ACC-1", now=now - timedelta(minutes=10))

    profile = await get_profile(db, PHONE)
    velocity = await order_velocity(db, profile["_id"], now)

    assert velocity == {"1h": 1, "24h": 2, "7d": 3}


@pytest.mark.asyncio
async def test_pincode_rto_rate(db, now):
    assert await pincode_rto_rate(db, "560038", now) is None

    await record_order(db, phone=PHONE, order_id="ORD-1", account_id="ACC-1", pincode="560038", now=now)
    await record_order(db, phone="9123456780", order_id="ORD-2", account_id="ACC-1", pincode="560038", now=now)
    await record_outcome(db, order_id="ORD-1", outcome="rto", now=now)
    await record_outcome(db, order_id="ORD-2", outcome="delivered", now=now)

    assert await pincode_rto_rate(db, "560038", now) == 50.0


@pytest.mark.asyncio
async def test_blacklist_and_lift(db, now):
    await blacklist_customer(db, phone=PHONE, reason="fake orders", actor="ops@acme")

    profile = await get_profile(db, PHONE)
    assert is_blacklisted(profile)
    assert profile["risk_score"] == 100

    await lift_blacklist(db, phone=PHONE, actor="ops@acme")
    profile = await get_profile(db, PHONE)
    assert not is_blacklisted(profile)
    assert profile["blacklist"]["lifted_by"] == "ops@acme"

    with pytest.raises(NotFoundError):
        await lift_blacklist(db, phone=PHONE, actor="ops@acme")

    actions = [a["action"] async for a in db.audit_logs.find({})]
    assert actions == ["CUSTOMER_BLACKLISTED", "CUSTOMER_BLACKLIST_LIFTED"]


def test_expired_blacklist_no_longer_applies(now):
    profile = {"blacklist": {"active": True, "expires_at": now - timedelta(days=1)}}
    assert not is_blacklisted(profile, now)

    profile["blacklist"]["expires_at"] = now + timedelta(days=1)
    assert is_blacklisted(profile, now)


@pytest.mark.asyncio
async def test_gate_asks_new_customer_for_verification(db, now):
    decision = await evaluate_cod_order(db, _order("ORD-1"), now=now)

    assert decision["cod_allowed"]
    assert decision["verification_required"]
    assert decision["verification_request_id"].startswith("VRF-")

    sms = await db.notification_outbox.find_one({"kind": "cod_verification"})
    assert sms["payload"]["order_id"] == "ORD-1"

    assessment = await db.risk_assessments.find_one({"order_id": "ORD-1"})
    assert assessment["level"] == "medium"
    assert (await get_profile(db, PHONE))["lifetime_order_count"] == 1


@pytest.mark.asyncio
async def test_gate_blocks_blacklisted_customer_without_reasons(db, now):
    await blacklist_customer(db, phone=PHONE, reason="chargeback ring", actor="ops@acme")

    with pytest.raises(CodUnavailable) as exc:
        await evaluate_cod_order(db, _order("ORD-2"), now=now)

    body = exc.value.to_dict()
    assert body["detail"] == CodUnavailable.PUBLIC_MESSAGE
    assert "chargeback" not in str(body)
